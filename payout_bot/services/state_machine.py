from payout_bot.schemas.session import TransferStep

VALID_TRANSITIONS = {
    TransferStep.RECIPIENT: [TransferStep.AMOUNT],
    TransferStep.ADDRESS: [TransferStep.AMOUNT],
    TransferStep.AMOUNT: [TransferStep.BANK_DETAILS],
    TransferStep.BANK_DETAILS: [TransferStep.CUSTOMER_DETAILS],
    TransferStep.CUSTOMER_DETAILS: [TransferStep.CUSTOMER_EMAIL],
    TransferStep.CUSTOMER_EMAIL: [TransferStep.CUSTOMER_COUNTRY],
    TransferStep.CUSTOMER_COUNTRY: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_step: TransferStep, to_step: TransferStep):
        self.from_step = from_step
        self.to_step = to_step
        super().__init__(f"Invalid transition: {from_step.value} -> {to_step.value}")


def can_transition(from_step: TransferStep, to_step: TransferStep) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_step, [])
    return to_step in allowed


def transition(from_step: TransferStep, to_step: TransferStep) -> TransferStep:
    """Perform step transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_step, to_step):
        raise InvalidTransitionError(from_step, to_step)
    return to_step
