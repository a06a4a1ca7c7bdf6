import json
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from payout_bot.database import get_db
from payout_bot.logging_config import get_logger
from payout_bot.schemas.session import SessionData
from payout_bot.schemas.telegram import TelegramUpdate, TelegramWebhookResponse
from payout_bot.services.conversation_service import ChatContext, ConversationRouter
from payout_bot.services.session_service import run_with_session

logger = get_logger("telegram_webhook")

router = APIRouter()


def get_conversation_router(request: Request) -> ConversationRouter:
    return request.app.state.conversation_router


async def parse_telegram_update(request: Request) -> Optional[dict]:
    """
    Parse Telegram update with tolerant decoding to avoid utf-8 crashes.
    Returns dict or None.
    """
    try:
        return await request.json()
    except Exception as e:
        logger.warning(f"Standard request.json() failed: {e}, fallback decoding")

    raw = await request.body()
    for enc in ("utf-8", "latin-1"):
        try:
            decoded = raw.decode(enc, errors="replace")
            return json.loads(decoded)
        except ValueError:
            continue

    logger.error("Failed to decode Telegram webhook payload after fallbacks")
    return None


@router.post("/telegram-webhook", response_model=TelegramWebhookResponse)
async def handle_telegram_webhook(
    request: Request,
    db: Session = Depends(get_db),
    conversation: ConversationRouter = Depends(get_conversation_router),
):
    """
    Handle Telegram webhook updates from bot users:
    - Commands and free text -> conversation router
    - Callback queries (button clicks) -> conversation router
    The session is loaded before and persisted after each update.
    """
    try:
        body = await parse_telegram_update(request)
        if body is None:
            return TelegramWebhookResponse(success=False, message="Invalid telegram payload")

        update = TelegramUpdate(**body)
        return await process_update(update, db, conversation)

    except Exception as e:
        logger.error(f"Telegram webhook error: {e}", exc_info=True)
        return TelegramWebhookResponse(success=False, message=str(e))


async def process_update(update: TelegramUpdate, db: Session, conversation: ConversationRouter) -> TelegramWebhookResponse:
    user_id = update.sender_id
    chat_id = update.chat_id
    if user_id is None or chat_id is None:
        return TelegramWebhookResponse(success=True, message="No sender")

    callback = update.callback_query
    message = update.message

    if callback and callback.data:
        content = callback.data
    elif message and message.text:
        content = message.text
    else:
        return TelegramWebhookResponse(success=True, message="No actionable content")

    logger.info(
        "Update received",
        extra={
            "context": {
                "update_id": update.update_id,
                "user_id": user_id,
                "chat_id": chat_id,
                "type": "callback_query" if callback else "message",
                "content": content[:50],
            }
        },
    )

    async def handle(session: SessionData) -> None:
        ctx = ChatContext(user_id=user_id, chat_id=chat_id, session=session)
        try:
            if callback and callback.data:
                ctx.callback_query_id = callback.id
                ctx.message_id = callback.message.message_id if callback.message else None
                await conversation.handle_callback(ctx, callback.data)
            elif message.command:
                await conversation.handle_command(ctx, message.command)
            elif not message.text.startswith("/"):
                await conversation.handle_text(ctx, message.text)
        finally:
            # After the handler, so /logout and 401s never open a channel they then close
            await conversation.ensure_subscription(ctx)

    await run_with_session(db, user_id, chat_id, handle)
    return TelegramWebhookResponse(success=True, message="Processed")
