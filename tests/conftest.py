import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BOT_TOKEN", "test-bot-token")
os.environ.setdefault("PUSHER_KEY", "test-key")

from unittest.mock import AsyncMock, Mock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from payout_bot.database import Base  # noqa: E402
from payout_bot.schemas.session import SessionData  # noqa: E402
from payout_bot.services.conversation_service import ChatContext, ConversationRouter  # noqa: E402


@pytest.fixture
def db_session():
    """In-memory SQLite session with the bot_sessions table."""
    import payout_bot.models  # noqa: F401

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def payments():
    """Mock payments client."""
    return Mock()


@pytest.fixture
def telegram():
    mock = Mock()
    mock.send_message.return_value = {"ok": True}
    mock.edit_message.return_value = {"ok": True}
    mock.answer_callback_query.return_value = {"ok": True}
    return mock


@pytest.fixture
def relay():
    mock = Mock()
    mock.subscribe = AsyncMock()
    mock.unsubscribe = AsyncMock()
    mock.is_subscribed.return_value = False
    return mock


@pytest.fixture
def router(payments, telegram, relay):
    return ConversationRouter(payments, telegram, relay=relay)


@pytest.fixture
def make_ctx():
    def _make(session: SessionData = None, **kwargs) -> ChatContext:
        return ChatContext(user_id=42, chat_id=4242, session=session or SessionData(), **kwargs)

    return _make


@pytest.fixture
def logged_in():
    return SessionData(auth_token="token-abc", organization_id="org-1", email="me@example.com")
