from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from passbot.db.base import Base


class ChatSession(Base):
    """Dialogue position of one Telegram user inside one bot."""

    __tablename__ = "chat_sessions"

    bot_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(32), primary_key=True)

    step: Mapped[str] = mapped_column(String(32), server_default="START", nullable=False)
    player_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    promo_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pending_tx_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    pix_code: Mapped[str | None] = mapped_column(String(512), nullable=True)
    chat_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
