import asyncio

import pytest

from conftest import FakeDelivery, add_order, load_order, load_session
from passbot.core.errors import ConfigurationError, DeliveryError, GatewayError
from passbot.db.models import OrderStatus
from passbot.flow.engine import ReconcileResult, Step
from passbot.services.delivery import DeliveryOutcome
from passbot.services.orchestrator import IN_PROGRESS_TEXT, Orchestrator


@pytest.fixture
def orchestrator(gateways, delivery, channel):
    async def channels(bot_id):
        return channel

    return Orchestrator(gateways=gateways, delivery=delivery, channels=channels)


async def test_paid_webhook_delivers_once(db, orchestrator, delivery, channel):
    order_id = await add_order("tx-1", payment_message_id=7)

    result = await orchestrator.reconcile("tx-1", paid=True)

    assert result == ReconcileResult.DELIVERED
    assert delivery.calls == ["12345"]
    order = await load_order(order_id)
    assert order.status == OrderStatus.DELIVERED
    assert order.nick == "Booyah"
    assert order.delivery_attempts == 1
    assert order.paid_at is not None and order.delivered_at is not None
    assert channel.deleted == [(42, 7)]
    assert channel.sent[0]["text"] == IN_PROGRESS_TEXT
    assert "Booyah" in channel.edited[0]["text"]


async def test_delivery_marks_chat_session_completed(db, orchestrator):
    await add_order("tx-1")
    await orchestrator.reconcile("tx-1", paid=True)

    row = await load_session("bot-1", "42")
    assert row.step == Step.COMPLETED.value
    assert row.pending_tx_id is None
    assert row.pix_code is None


async def test_second_confirmation_is_silent(db, orchestrator, delivery, channel):
    await add_order("tx-1")
    await orchestrator.reconcile("tx-1", paid=True)
    before = channel.activity

    assert await orchestrator.reconcile("tx-1", paid=True) == ReconcileResult.ALREADY_PROCESSED
    assert await orchestrator.reconcile("tx-1", source="poll") == ReconcileResult.ALREADY_PROCESSED
    assert len(delivery.calls) == 1
    assert channel.activity == before


async def test_concurrent_confirmations_deliver_exactly_once(db, gateways, channel):
    delivery = FakeDelivery(delay=0.05)

    async def channels(bot_id):
        return channel

    orchestrator = Orchestrator(gateways=gateways, delivery=delivery, channels=channels)
    await add_order("tx-1")

    results = await asyncio.gather(*(orchestrator.reconcile("tx-1", paid=True) for _ in range(5)))

    assert results.count(ReconcileResult.DELIVERED) == 1
    assert results.count(ReconcileResult.ALREADY_PROCESSED) == 4
    assert delivery.calls == ["12345"]
    assert channel.texts.count(IN_PROGRESS_TEXT) == 1


async def test_webhook_and_poll_racing_deliver_exactly_once(db, gateways, gateway, channel):
    delivery = FakeDelivery(delay=0.05)

    async def channels(bot_id):
        return channel

    orchestrator = Orchestrator(gateways=gateways, delivery=delivery, channels=channels)
    order_id = await add_order("tx-1")
    gateway.paid["tx-1"] = True

    results = await asyncio.gather(
        orchestrator.reconcile("tx-1", paid=True, source="webhook"),
        orchestrator.reconcile("tx-1", source="poll"),
        orchestrator.reconcile("tx-1", paid=True, source="webhook"),
        orchestrator.reconcile("tx-1", source="poll"),
    )

    assert results.count(ReconcileResult.DELIVERED) == 1
    assert results.count(ReconcileResult.ALREADY_PROCESSED) == 3
    assert delivery.calls == ["12345"]
    assert (await load_order(order_id)).status == OrderStatus.DELIVERED


async def test_unknown_tx_is_not_found(db, orchestrator, delivery):
    assert await orchestrator.reconcile("nope", paid=True) == ReconcileResult.NOT_FOUND
    assert delivery.calls == []


async def test_poll_not_paid_leaves_order_pending(db, orchestrator, gateway, channel):
    order_id = await add_order("tx-1")

    assert await orchestrator.reconcile("tx-1", source="poll") == ReconcileResult.NOT_PAID
    assert gateway.status_calls == ["tx-1"]
    assert (await load_order(order_id)).status == OrderStatus.PENDING
    assert channel.activity == 0


async def test_poll_paid_delivers(db, orchestrator, gateway, delivery):
    await add_order("tx-1")
    gateway.paid["tx-1"] = True

    assert await orchestrator.reconcile("tx-1", source="poll") == ReconcileResult.DELIVERED
    assert delivery.calls == ["12345"]


@pytest.mark.parametrize("error", [GatewayError("HTTP 500"), ConfigurationError("no creds")])
async def test_gateway_error_on_poll(db, orchestrator, gateway, error):
    order_id = await add_order("tx-1")
    gateway.error = error

    assert await orchestrator.reconcile("tx-1", source="poll") == ReconcileResult.GATEWAY_ERROR
    assert (await load_order(order_id)).status == OrderStatus.PENDING


async def test_rejected_delivery_keeps_order_paid(db, orchestrator, delivery, channel):
    delivery.outcome = DeliveryOutcome(success=False, message="ID inválido", payload={"error": True, "msg": "ID inválido"})
    order_id = await add_order("tx-1")

    assert await orchestrator.reconcile("tx-1", paid=True) == ReconcileResult.DELIVERY_FAILED
    order = await load_order(order_id)
    assert order.status == OrderStatus.PAID
    assert order.failure_reason == "ID inválido"
    assert order.delivery_response == {"error": True, "msg": "ID inválido"}
    assert "ID inválido" in channel.edited[0]["text"]


async def test_delivery_transport_error_keeps_order_paid(db, orchestrator, delivery):
    delivery.error = DeliveryError("LikesFF request failed: ClientConnectorError")
    order_id = await add_order("tx-1")

    assert await orchestrator.reconcile("tx-1", paid=True) == ReconcileResult.DELIVERY_FAILED
    assert (await load_order(order_id)).status == OrderStatus.PAID


async def test_delivery_not_configured_is_config_error(db, orchestrator, delivery):
    delivery.error = ConfigurationError("LikesFF API key not configured")
    order_id = await add_order("tx-1")

    assert await orchestrator.reconcile("tx-1", paid=True) == ReconcileResult.CONFIG_ERROR
    order = await load_order(order_id)
    assert order.status == OrderStatus.PAID
    assert "not configured" in order.failure_reason


async def test_missing_player_id_skips_delivery(db, orchestrator, delivery, channel):
    order_id = await add_order("tx-1", player_id=None)

    assert await orchestrator.reconcile("tx-1", paid=True) == ReconcileResult.CONFIG_ERROR
    assert delivery.calls == []
    assert (await load_order(order_id)).status == OrderStatus.PAID
    assert any("ID do jogador" in t for t in channel.texts)


async def test_nick_defaults_when_provider_omits_it(db, orchestrator, delivery):
    delivery.outcome = DeliveryOutcome(success=True, payload={"status": "success"})
    order_id = await add_order("tx-1")

    await orchestrator.reconcile("tx-1", paid=True)
    assert (await load_order(order_id)).nick == "Jogador"


async def test_approve_pending_order(db, orchestrator, delivery):
    order_id = await add_order("tx-1")

    assert await orchestrator.approve(order_id) == ReconcileResult.DELIVERED
    assert delivery.calls == ["12345"]


async def test_approve_retries_delivery_of_paid_order(db, orchestrator, delivery):
    delivery.error = DeliveryError("boom")
    order_id = await add_order("tx-1")
    assert await orchestrator.reconcile("tx-1", paid=True) == ReconcileResult.DELIVERY_FAILED

    delivery.error = None
    assert await orchestrator.approve(order_id) == ReconcileResult.DELIVERED
    order = await load_order(order_id)
    assert order.status == OrderStatus.DELIVERED
    assert order.delivery_attempts == 2
    assert order.failure_reason is None


async def test_approve_delivered_or_unknown_order(db, orchestrator):
    order_id = await add_order("tx-1")
    await orchestrator.reconcile("tx-1", paid=True)

    assert await orchestrator.approve(order_id) == ReconcileResult.ALREADY_PROCESSED
    assert await orchestrator.approve("missing") == ReconcileResult.NOT_FOUND


async def test_fail_only_moves_open_orders(db, orchestrator):
    pending = await add_order("tx-1")
    delivered = await add_order("tx-2", status=OrderStatus.DELIVERED)

    assert await orchestrator.fail(pending, "refunded") is True
    assert await orchestrator.fail(delivered, "refunded") is False
    order = await load_order(pending)
    assert order.status == OrderStatus.FAILED
    assert order.failure_reason == "refunded"


async def test_failed_order_ignores_late_payment(db, orchestrator, delivery):
    order_id = await add_order("tx-1")
    await orchestrator.fail(order_id, "expired")

    assert await orchestrator.reconcile("tx-1", paid=True) == ReconcileResult.ALREADY_PROCESSED
    assert delivery.calls == []


async def test_channel_failures_do_not_block_delivery(db, gateways, delivery):
    class BrokenChannel:
        async def send_text(self, *a, **kw):
            raise RuntimeError("bot blocked")

        async def delete_message(self, *a, **kw):
            raise RuntimeError("gone")

        async def edit_message_text(self, *a, **kw):
            raise RuntimeError("gone")

    async def channels(bot_id):
        return BrokenChannel()

    orchestrator = Orchestrator(gateways=gateways, delivery=delivery, channels=channels)
    order_id = await add_order("tx-1", payment_message_id=3)

    assert await orchestrator.reconcile("tx-1", paid=True) == ReconcileResult.DELIVERED
    assert (await load_order(order_id)).status == OrderStatus.DELIVERED


async def test_delivery_without_channel(db, gateways, delivery):
    orchestrator = Orchestrator(gateways=gateways, delivery=delivery)
    await add_order("tx-1")

    assert await orchestrator.reconcile("tx-1", paid=True) == ReconcileResult.DELIVERED
