import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from payout_bot.services.result import Result

SMALLEST_UNIT_SCALE = Decimal(10) ** 8

MIN_DEPOSIT_AMOUNT = Decimal("1")
MIN_TRANSFER_AMOUNT = Decimal("100")

OTP_PATTERN = re.compile(r"^\d{6}$", re.ASCII)


def to_smallest_unit(amount: Decimal) -> str:
    """1.5 -> "150000000"."""
    scaled = (amount * SMALLEST_UNIT_SCALE).to_integral_value(rounding=ROUND_HALF_UP)
    return str(int(scaled))


def from_smallest_unit(value: Union[str, int, float, Decimal]) -> Decimal:
    return Decimal(str(value)) / SMALLEST_UNIT_SCALE


def format_amount(amount: Decimal) -> str:
    return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def is_email_shaped(text: str) -> bool:
    return "@" in text and "." in text


def validate_email(text: str) -> Result[str]:
    email = text.strip()
    if not is_email_shaped(email):
        return Result.failure("Please enter a valid email address.", "invalid_email")
    return Result.success(email)


def validate_otp(text: str) -> Result[str]:
    otp = text.strip()
    if not OTP_PATTERN.match(otp):
        return Result.failure("Please enter a valid 6-digit OTP.", "invalid_otp")
    return Result.success(otp)


def validate_evm_address(text: str, network: str) -> Result[str]:
    address = text.strip()
    if not (address.startswith("0x") and len(address) == 42):
        return Result.failure(
            f"Please enter a valid {network} wallet address "
            "(must start with 0x and be 42 characters long).",
            "invalid_address",
        )
    return Result.success(address)


def parse_amount(text: str, minimum: Decimal, label: str) -> Result[Decimal]:
    """Parse a human amount and enforce the flow minimum.

    ``label`` names the flow in the below-minimum reply ("deposit",
    "withdrawal").
    """
    try:
        amount = Decimal(text.strip())
    except InvalidOperation:
        return Result.failure("Please enter a valid amount greater than 0.", "invalid_amount")

    if not amount.is_finite() or amount <= 0:
        return Result.failure("Please enter a valid amount greater than 0.", "invalid_amount")

    if amount < minimum:
        return Result.failure(
            f"Minimum {label} amount is {minimum} USDC. Please enter a larger amount.",
            "below_minimum",
        )

    return Result.success(amount)
