from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, String, false, func
from sqlalchemy.orm import Mapped, mapped_column

from passbot.core.time import utcnow
from passbot.db.base import Base


class Bot(Base):
    __tablename__ = "bots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    token: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # desired state, reconciled by BotManager.sync()
    status: Mapped[str] = mapped_column(String(16), server_default="inactive", nullable=False)
    use_webhooks: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false(), nullable=False)
    webhook_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # chat ids (as strings) the bot answers in; empty = answers everywhere
    allowed_groups: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    # per-bot overrides of app_settings keys (texts, images, pass_price, ...)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
