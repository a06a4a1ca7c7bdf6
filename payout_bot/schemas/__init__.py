from payout_bot.schemas.notification import DepositNotification, RealtimeEvent, RealtimeEventType
from payout_bot.schemas.session import SessionData
from payout_bot.schemas.telegram import TelegramUpdate, TelegramWebhookResponse

__all__ = [
    "DepositNotification",
    "RealtimeEvent",
    "RealtimeEventType",
    "SessionData",
    "TelegramUpdate",
    "TelegramWebhookResponse",
]
