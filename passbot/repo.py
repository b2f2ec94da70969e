from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from passbot.core.time import utcnow
from passbot.db.models import AppSetting, Bot, BotLog, ChatSession, Order, OrderStatus, PromoCode

log = logging.getLogger(__name__)

# fields a chat session patch may touch
SESSION_FIELDS = ("step", "player_id", "promo_code", "pending_tx_id", "pix_code", "chat_id")


def _insert_for(session: AsyncSession):
    if session.bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


# ---- Orders -------------------------------------------------------------------
async def get_order(session: AsyncSession, order_id: str) -> Order | None:
    return await session.get(Order, order_id, populate_existing=True)


async def get_order_by_tx(session: AsyncSession, external_tx_id: str) -> Order | None:
    q = select(Order).where(Order.external_tx_id == str(external_tx_id)).limit(1)
    res = await session.execute(q.execution_options(populate_existing=True))
    return res.scalar_one_or_none()


async def latest_pending_order(session: AsyncSession, *, bot_id: str, user_id: str) -> Order | None:
    q = (
        select(Order)
        .where(Order.bot_id == bot_id, Order.user_id == user_id, Order.status == OrderStatus.PENDING)
        .order_by(Order.created_at.desc())
        .limit(1)
    )
    res = await session.execute(q)
    return res.scalar_one_or_none()


async def create_order(
    session: AsyncSession,
    *,
    bot_id: str,
    user_id: str,
    amount: Decimal,
    provider: str,
    external_tx_id: str,
    player_id: str | None,
    chat_id: int | None,
    promo_code: str | None = None,
) -> Order:
    order = Order(
        bot_id=bot_id,
        user_id=user_id,
        amount=amount,
        status=OrderStatus.PENDING,
        provider=provider,
        external_tx_id=str(external_tx_id),
        player_id=player_id,
        chat_id=chat_id,
        promo_code=promo_code,
        updated_at=utcnow(),
    )
    session.add(order)
    await session.flush()
    return order


async def set_order_payment_message(session: AsyncSession, order_id: str, *, message_id: int, chat_id: int) -> None:
    stmt = (
        update(Order)
        .where(Order.id == order_id)
        .values(payment_message_id=message_id, chat_id=chat_id, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


async def transition_order_status(
    session: AsyncSession,
    order_id: str,
    *,
    from_status: str | Iterable[str],
    to_status: str,
    expected_attempts: int | None = None,
    **values: Any,
) -> bool:
    """Single conditional UPDATE: move the order only if it is still in `from_status`.

    Returns True for exactly one of any number of concurrent callers.
    `expected_attempts` additionally pins delivery_attempts (used to claim a retry
    on an order that stays in the same status).
    """
    statuses = [from_status] if isinstance(from_status, str) else list(from_status)
    conds = [Order.id == order_id, Order.status.in_(statuses)]
    if expected_attempts is not None:
        conds.append(Order.delivery_attempts == expected_attempts)
    stmt = (
        update(Order)
        .where(*conds)
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


# ---- Chat sessions ------------------------------------------------------------
async def get_chat_session(session: AsyncSession, *, bot_id: str, user_id: str) -> ChatSession | None:
    q = select(ChatSession).where(ChatSession.bot_id == bot_id, ChatSession.user_id == user_id)
    res = await session.execute(q.execution_options(populate_existing=True))
    return res.scalar_one_or_none()


async def upsert_chat_session(session: AsyncSession, *, bot_id: str, user_id: str, **patch: Any) -> None:
    """Atomic insert-or-update of the given fields only (last write wins per field)."""
    unknown = set(patch) - set(SESSION_FIELDS)
    if unknown:
        raise ValueError(f"unknown session fields: {sorted(unknown)}")
    values = dict(patch, updated_at=utcnow())
    insert = _insert_for(session)
    stmt = insert(ChatSession).values(bot_id=bot_id, user_id=user_id, **values)
    stmt = stmt.on_conflict_do_update(index_elements=["bot_id", "user_id"], set_=values)
    await session.execute(stmt)


# ---- Promo codes --------------------------------------------------------------
async def get_promo_code(session: AsyncSession, code: str) -> PromoCode | None:
    return await session.get(PromoCode, code, populate_existing=True)


async def increment_promo_usage(session: AsyncSession, code: str) -> bool:
    """used_count += 1 iff the code is usable right now. One statement, no read before."""
    now = utcnow()
    stmt = (
        update(PromoCode)
        .where(
            PromoCode.code == code,
            PromoCode.is_active.is_(True),
            or_(PromoCode.expires_at.is_(None), PromoCode.expires_at > now),
            or_(PromoCode.max_uses.is_(None), PromoCode.used_count < PromoCode.max_uses),
        )
        .values(used_count=PromoCode.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


# ---- Bots ---------------------------------------------------------------------
async def get_bot(session: AsyncSession, bot_id: str) -> Bot | None:
    return await session.get(Bot, bot_id, populate_existing=True)


async def list_active_bots(session: AsyncSession) -> list[Bot]:
    res = await session.execute(select(Bot).where(Bot.status == "active").order_by(Bot.created_at.asc()))
    return list(res.scalars().all())


async def set_bot_status(session: AsyncSession, bot_id: str, status: str, *, seen: bool = False) -> None:
    values: dict[str, Any] = {"status": status}
    if seen:
        values["last_seen"] = utcnow()
    stmt = update(Bot).where(Bot.id == bot_id).values(**values).execution_options(synchronize_session=False)
    await session.execute(stmt)


async def touch_bot_last_seen(session: AsyncSession, bot_id: str) -> None:
    stmt = update(Bot).where(Bot.id == bot_id).values(last_seen=utcnow()).execution_options(synchronize_session=False)
    await session.execute(stmt)


# ---- Settings & logs ----------------------------------------------------------
async def get_app_setting(session: AsyncSession, key: str) -> str | None:
    row = await session.get(AppSetting, key)
    return None if row is None else row.value


async def set_app_setting(session: AsyncSession, key: str, value: str | None) -> None:
    row = await session.get(AppSetting, key)
    if row is None:
        row = AppSetting(key=key, value=value)
        session.add(row)
    else:
        row.value = value
    row.touch()
    await session.flush()


async def add_bot_log(
    session: AsyncSession,
    bot_id: str,
    message: str,
    *,
    level: str = "info",
    user_id: str | int | None = None,
    chat_id: str | int | None = None,
) -> None:
    session.add(
        BotLog(
            bot_id=bot_id,
            message=message,
            level=level,
            user_id=None if user_id is None else str(user_id),
            chat_id=None if chat_id is None else str(chat_id),
        )
    )
    await session.flush()
