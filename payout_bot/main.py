import asyncio
import os

from fastapi import FastAPI

from payout_bot.config import settings
from payout_bot.database import SessionLocal, init_db
from payout_bot.logging_config import get_logger, setup_logging
from payout_bot.routers import telegram_webhook
from payout_bot.services.conversation_service import ConversationRouter
from payout_bot.services.notification_service import SubscriptionRegistry
from payout_bot.services.payments_client import PaymentsClient
from payout_bot.services.telegram_service import TelegramService

setup_logging("DEBUG" if settings.debug else "INFO")

logger = get_logger("main")

app = FastAPI(
    title="Payout Bot",
    description="Telegram front-end for the payments API",
    version="0.1.0",
)

app.include_router(telegram_webhook.router)

telegram = TelegramService(settings.bot_token, timeout=settings.http_timeout_seconds)
payments = PaymentsClient(settings.payments_api_url, timeout=settings.http_timeout_seconds)
relay = SubscriptionRegistry(
    telegram,
    payments,
    pusher_key=settings.pusher_key,
    pusher_cluster=settings.pusher_cluster,
    reconnect_delay=settings.reconnect_delay_seconds,
    resubscribe_delay=settings.resubscribe_delay_seconds,
    delivery_retry_delay=settings.delivery_retry_delay_seconds,
)

_replay_task: asyncio.Task | None = None


def _relay_configured() -> bool:
    return settings.relay_enabled and bool(settings.pusher_key)


def _is_relay_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _relay_configured()


def build_conversation_router() -> ConversationRouter:
    """Without push-service credentials logins never open realtime channels."""
    return ConversationRouter(
        payments,
        telegram,
        relay=relay if _relay_configured() else None,
        deposit_chain_id=settings.deposit_chain_id,
    )


app.state.relay = relay
app.state.conversation_router = build_conversation_router()


async def _replay_subscriptions() -> None:
    db = SessionLocal()
    try:
        restored = await relay.replay_persisted_sessions(db)
        logger.info(f"Restored {restored} notification subscriptions")
    except Exception as exc:
        logger.error(
            "Subscription replay failed",
            extra={"context": {"error": str(exc)}},
        )
    finally:
        db.close()


@app.on_event("startup")
async def startup() -> None:
    global _replay_task
    init_db()
    logger.info("Database initialized")
    if not _is_relay_enabled():
        logger.info("Notification relay disabled")
        return
    _replay_task = asyncio.create_task(_replay_subscriptions())


@app.on_event("shutdown")
async def shutdown() -> None:
    global _replay_task
    if _replay_task is not None and not _replay_task.done():
        _replay_task.cancel()
        try:
            await _replay_task
        except asyncio.CancelledError:
            pass
    _replay_task = None
    await relay.shutdown_all()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/subscriptions")
async def subscriptions():
    return {"status": "ok", "active_channels": sorted(relay.active_channels)}
