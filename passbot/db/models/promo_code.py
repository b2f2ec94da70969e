from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String, func, true
from sqlalchemy.orm import Mapped, mapped_column, validates

from passbot.core.time import utcnow
from passbot.db.base import Base


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


class PromoCode(Base):
    __tablename__ = "promo_codes"

    # stored normalized, see _normalize()
    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true(), nullable=False)
    # NULL = unlimited
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    @validates("code")
    def _normalize(self, key: str, code: str) -> str:
        return normalize_code(code)
