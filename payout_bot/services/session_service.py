import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payout_bot.logging_config import get_logger
from payout_bot.models import BotSession
from payout_bot.schemas.session import SessionData

logger = get_logger("session_service")

SessionHandler = Callable[[SessionData], Awaitable[None]]


def _get_record(db: Session, user_id: int) -> Optional[BotSession]:
    return db.query(BotSession).filter(BotSession.user_id == user_id).first()


def _to_session(record: Optional[BotSession], user_id: int) -> SessionData:
    if not record:
        return SessionData()

    try:
        return SessionData.from_document(record.session_data)
    except ValidationError as e:
        logger.warning(
            "Stored session is unreadable, starting empty",
            extra={"context": {"user_id": user_id, "error": str(e)}},
        )
        return SessionData()


def load_session(db: Session, user_id: int) -> SessionData:
    """Load a user's session; empty session if none is stored."""
    return _to_session(_get_record(db, user_id), user_id)


def persist_session(db: Session, user_id: int, chat_id: int, session: SessionData) -> None:
    """Delete the row for an empty session, upsert it otherwise."""
    record = _get_record(db, user_id)
    now = datetime.now(timezone.utc)

    if session.is_empty():
        if record:
            db.delete(record)
            logger.info(f"Deleted empty session for user {user_id}")
        db.commit()
        return

    document = session.to_document()
    if record:
        record.chat_id = chat_id
        record.session_data = document
        record.updated_at = now
    else:
        db.add(
            BotSession(
                user_id=user_id,
                chat_id=chat_id,
                session_data=document,
                created_at=now,
                updated_at=now,
            )
        )
    db.commit()


def list_authenticated_sessions(db: Session) -> list[BotSession]:
    """Rows whose session has both an auth token and an organization id."""
    rows = db.query(BotSession).all()
    result = []
    for row in rows:
        data = row.session_data or {}
        if data.get("auth_token") and data.get("organization_id"):
            result.append(row)
    return result


async def run_with_session(db: Session, user_id: int, chat_id: int, handler: SessionHandler) -> SessionData:
    """Load the session, run ``handler`` on it, then persist whatever it left behind.

    A failing handler does not stop persistence. A failing store resets the
    session to empty and the handler still runs.
    """
    try:
        record = await asyncio.to_thread(_get_record, db, user_id)
        session = _to_session(record, user_id)
        has_record = record is not None
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Session load failed, continuing with empty session",
            extra={"context": {"user_id": user_id, "error": str(e)}},
        )
        session = SessionData()
        has_record = False

    original = session.to_document()

    try:
        await handler(session)
    except Exception as e:
        logger.error(
            "Session handler failed",
            extra={"context": {"user_id": user_id, "error": str(e)}},
            exc_info=True,
        )

    changed = session.to_document() != original
    if not changed and not (has_record and session.is_empty()):
        return session

    try:
        await asyncio.to_thread(persist_session, db, user_id, chat_id, session)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Session persist failed",
            extra={"context": {"user_id": user_id, "error": str(e)}},
        )

    return session
