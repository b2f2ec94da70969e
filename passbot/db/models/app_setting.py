from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from passbot.core.time import utcnow
from passbot.db.base import Base


class AppSetting(Base):
    """Small KV storage for runtime-tunable settings (texts, price, gateway credentials)."""

    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def touch(self) -> None:
        self.updated_at = utcnow()
