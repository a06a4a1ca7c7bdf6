from payout_bot.services.conversation_service import ChatContext, ConversationRouter
from payout_bot.services.notification_service import SubscriptionRegistry, channel_name
from payout_bot.services.payments_client import PaymentsAPIError, PaymentsClient
from payout_bot.services.session_service import (
    list_authenticated_sessions,
    load_session,
    persist_session,
    run_with_session,
)
from payout_bot.services.state_machine import (
    InvalidTransitionError,
    can_transition,
    transition,
)
from payout_bot.services.telegram_service import TelegramService
