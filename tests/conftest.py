from __future__ import annotations

import asyncio
import os
from decimal import Decimal
from typing import Any

# settings are loaded at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest

from passbot.db import models  # noqa: F401
from passbot.db.base import Base
from passbot.db.models import Bot, ChatSession, Order, OrderStatus, PromoCode
from passbot.db.session import dispose_engine, get_engine, init_engine, session_scope
from passbot.repo import get_chat_session, get_order, get_order_by_tx, set_app_setting
from passbot.services.delivery import DeliveryOutcome
from passbot.services.payments import GatewayRegistry
from passbot.services.payments.base import Charge, ChargeStatus


@pytest.fixture
async def db(tmp_path):
    await dispose_engine()
    init_engine(f"sqlite+aiosqlite:///{tmp_path / 'passbot.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await dispose_engine()


# ---- fakes ------------------------------------------------------------------------
class FakeChannel:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.deleted: list[tuple[int, int]] = []
        self.edited: list[dict[str, Any]] = []
        self._next_id = 1000

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def send_text(self, chat_id, text, *, buttons=None, html=False):
        mid = self._id()
        self.sent.append({"kind": "text", "chat_id": chat_id, "text": text, "buttons": buttons, "html": html, "id": mid})
        return mid

    async def send_photo(self, chat_id, photo, *, caption=None, buttons=None, html=False):
        mid = self._id()
        self.sent.append(
            {"kind": "photo", "chat_id": chat_id, "photo": photo, "text": caption, "buttons": buttons, "html": html, "id": mid}
        )
        return mid

    async def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))

    async def edit_message_text(self, chat_id, message_id, text, *, html=False):
        self.edited.append({"chat_id": chat_id, "message_id": message_id, "text": text})

    @property
    def texts(self) -> list[str]:
        return [m["text"] for m in self.sent] + [m["text"] for m in self.edited]

    @property
    def activity(self) -> int:
        return len(self.sent) + len(self.deleted) + len(self.edited)


class FakeGateway:
    def __init__(self, name: str = "syncpay") -> None:
        self.name = name
        self.charges: list[tuple[Decimal, str]] = []
        self.paid: dict[str, bool] = {}
        self.status_calls: list[str] = []
        self.error: Exception | None = None
        self.qr_image: bytes | None = None

    async def create_charge(self, amount, description):
        if self.error is not None:
            raise self.error
        self.charges.append((amount, description))
        tx_id = f"tx-{len(self.charges)}"
        return Charge(tx_id=tx_id, pay_code=f"00020126PIX{tx_id}", qr_image=self.qr_image)

    async def check_status(self, tx_id):
        self.status_calls.append(tx_id)
        if self.error is not None:
            raise self.error
        paid = self.paid.get(tx_id, False)
        return ChargeStatus(tx_id=tx_id, paid=paid, raw_status="PAID" if paid else "PENDING")


class FakeDelivery:
    def __init__(self, outcome: DeliveryOutcome | None = None, *, delay: float = 0.0) -> None:
        self.outcome = outcome or DeliveryOutcome(success=True, nick="Booyah", message="Enviado com sucesso", payload={"error": False})
        self.delay = delay
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def send_pass(self, player_id):
        self.calls.append(player_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.outcome


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateways(gateway) -> GatewayRegistry:
    return GatewayRegistry({gateway.name: gateway}, default=gateway.name)


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()


# ---- data helpers -----------------------------------------------------------------
async def add_bot(bot_id: str = "bot-1", **kw) -> str:
    values = dict(name="Loja", token="123:abc", status="active", allowed_groups=[], config={})
    values.update(kw)
    async with session_scope() as session:
        session.add(Bot(id=bot_id, **values))
        await session.commit()
    return bot_id


async def add_promo(code: str, discount: str = "2.00", **kw) -> None:
    async with session_scope() as session:
        session.add(PromoCode(code=code, discount_amount=Decimal(discount), **kw))
        await session.commit()


async def add_order(tx_id: str = "tx-1", **kw) -> str:
    values = dict(
        bot_id="bot-1",
        user_id="42",
        amount=Decimal("8.00"),
        status=OrderStatus.PENDING,
        provider="syncpay",
        player_id="12345",
        chat_id=42,
    )
    values.update(kw)
    async with session_scope() as session:
        order = Order(external_tx_id=tx_id, **values)
        session.add(order)
        await session.commit()
        return order.id


async def setting(key: str, value: str) -> None:
    async with session_scope() as session:
        await set_app_setting(session, key, value)
        await session.commit()


async def load_order(order_id: str | None = None, *, tx_id: str | None = None) -> Order | None:
    async with session_scope() as session:
        if tx_id is not None:
            return await get_order_by_tx(session, tx_id)
        return await get_order(session, order_id)


async def load_session(bot_id: str = "bot-1", user_id: str = "42") -> ChatSession | None:
    async with session_scope() as session:
        return await get_chat_session(session, bot_id=bot_id, user_id=user_id)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

