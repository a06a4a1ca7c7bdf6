from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RealtimeEventType(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    SUBSCRIPTION_SUCCEEDED = "subscription_succeeded"
    SUBSCRIPTION_ERROR = "subscription_error"
    CHANNEL_EVENT = "channel_event"


class RealtimeEvent(BaseModel):
    """Typed event pushed by RealtimeClient onto its queue."""

    type: RealtimeEventType
    channel: Optional[str] = None
    name: Optional[str] = None  # channel event name, e.g. "deposit"
    data: Any = None
    error: Optional[str] = None


class DepositNotification(BaseModel):
    amount: str  # smallest units
    network: str
    status: str
    transaction_id: str = Field(alias="transactionId")
    timestamp: datetime

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("amount", mode="before")
    @classmethod
    def amount_is_numeric(cls, value: Any) -> str:
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Invalid amount received: {value}")
        if not parsed.is_finite():
            raise ValueError(f"Invalid amount received: {value}")
        return str(value)
