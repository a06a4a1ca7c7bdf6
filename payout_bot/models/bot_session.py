from sqlalchemy import JSON, BigInteger, Column
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.sql import func

from payout_bot.database import Base


class BotSession(Base):
    __tablename__ = "bot_sessions"

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    chat_id = Column(BigInteger, nullable=False)
    session_data = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
