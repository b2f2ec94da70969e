from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, BigInteger, DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from passbot.core.time import utcnow
from passbot.db.base import Base


class OrderStatus:
    PENDING = "pending"
    PAID = "paid"
    DELIVERED = "delivered"
    FAILED = "failed"


class Order(Base):
    """One purchase attempt: a gateway charge and its fulfillment.

    Status only moves forward (pending -> paid -> delivered); every move is a
    conditional UPDATE in `passbot.repo.transition_order_status`.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    bot_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(32), index=True, nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), server_default=OrderStatus.PENDING, nullable=False, index=True)

    # gateway that issued the charge (syncpay | mercadopago)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    external_tx_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    promo_code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # delivery target and chat bookkeeping
    player_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    chat_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payment_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # fulfillment result
    nick: Mapped[str | None] = mapped_column(String(128), nullable=True)
    delivery_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
