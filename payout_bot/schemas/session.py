"""Conversation state stored in ``bot_sessions.session_data``.

The active flow is a discriminated union, so a session can only ever be in one
flow at a time: idle, waiting for an email, waiting for a one-time code, in a
transfer, or in a deposit. Authentication fields live beside the flow and are
only cleared by :meth:`SessionData.clear`.
"""

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field


class TransferType(str, Enum):
    EMAIL = "email"
    WALLET = "wallet"
    BANK = "bank"


class CommandType(str, Enum):
    SEND = "send"
    WITHDRAW = "withdraw"


class TransferStep(str, Enum):
    RECIPIENT = "recipient"
    ADDRESS = "address"
    AMOUNT = "amount"
    BANK_DETAILS = "bank_details"
    CUSTOMER_DETAILS = "customer_details"
    CUSTOMER_EMAIL = "customer_email"
    CUSTOMER_COUNTRY = "customer_country"


class Idle(BaseModel):
    kind: Literal["idle"] = "idle"


class AwaitingEmail(BaseModel):
    kind: Literal["awaiting_email"] = "awaiting_email"


class AwaitingOtp(BaseModel):
    kind: Literal["awaiting_otp"] = "awaiting_otp"
    email: str
    sid: str


class Transferring(BaseModel):
    kind: Literal["transferring"] = "transferring"
    transfer_type: Optional[TransferType] = None
    command_type: Optional[CommandType] = None
    step: Optional[TransferStep] = None
    recipient: Optional[str] = None
    address: Optional[str] = None
    network: Optional[str] = None
    amount: Optional[str] = None  # smallest units
    source_of_funds: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_country: Optional[str] = None


class Depositing(BaseModel):
    kind: Literal["depositing"] = "depositing"
    step: Optional[Literal["amount"]] = None
    source_of_funds: Optional[str] = None


FlowState = Annotated[
    Union[Idle, AwaitingEmail, AwaitingOtp, Transferring, Depositing],
    Field(discriminator="kind"),
]


class SessionData(BaseModel):
    auth_token: Optional[str] = None
    organization_id: Optional[str] = None
    email: Optional[str] = None
    flow: FlowState = Field(default_factory=Idle)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.auth_token)

    @property
    def can_subscribe(self) -> bool:
        return bool(self.auth_token and self.organization_id)

    def is_empty(self) -> bool:
        return (
            not self.auth_token
            and not self.organization_id
            and not self.email
            and isinstance(self.flow, Idle)
        )

    def clear(self) -> None:
        """Drop everything, including authentication."""
        self.auth_token = None
        self.organization_id = None
        self.email = None
        self.flow = Idle()

    def reset_flow(self) -> None:
        """Leave the active flow, keep authentication."""
        self.flow = Idle()

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_document(cls, document: Optional[dict]) -> "SessionData":
        return cls.model_validate(document or {})
