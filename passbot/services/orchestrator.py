from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from html import escape
from typing import Awaitable, Callable, Optional

from passbot.bot.channel import Channel
from passbot.core.errors import ConfigurationError, DeliveryError, GatewayError
from passbot.core.time import utcnow
from passbot.db.models import Order, OrderStatus
from passbot.db.session import session_scope
from passbot.flow.engine import ReconcileResult, Step
from passbot.repo import get_order, get_order_by_tx, transition_order_status, upsert_chat_session
from passbot.services.bot_log import BotActivityLog
from passbot.services.delivery import DeliveryOutcome, DeliveryProvider
from passbot.services.payments import GatewayRegistry

log = logging.getLogger(__name__)

# async (bot_id) -> channel able to message that bot's users, or None
ChannelSource = Callable[[str], Awaitable[Optional[Channel]]]

IN_PROGRESS_TEXT = "⌛ Pagamento confirmado! <b>Enviando passe booyah!...</b>"
MISSING_PLAYER_TEXT = (
    "⚠️ Pagamento confirmado, mas não encontramos o ID do jogador deste pedido.\n\n"
    "Por favor, contate o suporte."
)
DELIVERY_CONFIG_TEXT = (
    "⚠️ Pagamento confirmado, mas o envio automático está indisponível no momento.\n\n"
    "Por favor, contate o suporte."
)


def delivered_text(nick: str, player_id: str) -> str:
    return (
        "✅ <b>Passe Booyah! Enviado!</b>\n\n"
        f"Jogador: <b>{escape(nick)}</b>\n"
        f"ID: <code>{player_id}</code>\n\n"
        "<i>Lembre-se: Cada conta Free Fire só pode receber 1 passe por mês.</i>"
    )


def delivery_failed_text(reason: str) -> str:
    return (
        f"⚠️ Pagamento confirmado, mas houve um erro no envio automático: {escape(reason)}\n\n"
        "Por favor, contate o suporte."
    )


@dataclass(frozen=True)
class _OrderView:
    """Values read from the order row before any await on external services."""

    id: str
    bot_id: str
    user_id: str
    tx_id: str
    provider: str
    amount: Decimal
    player_id: str | None
    chat_id: int | None
    payment_message_id: int | None

    @classmethod
    def of(cls, order: Order) -> "_OrderView":
        return cls(
            id=order.id,
            bot_id=order.bot_id,
            user_id=order.user_id,
            tx_id=order.external_tx_id,
            provider=order.provider,
            amount=order.amount,
            player_id=order.player_id,
            chat_id=order.chat_id,
            payment_message_id=order.payment_message_id,
        )


class Orchestrator:
    """Confirms payments and delivers the pass at most once per claim.

    Webhook, "check payment" button and operator actions all end up here.
    The only guard against double delivery is the conditional
    pending -> paid update; whoever loses it returns ALREADY_PROCESSED
    without messaging anyone.
    """

    def __init__(
        self,
        *,
        gateways: GatewayRegistry,
        delivery: DeliveryProvider,
        channels: ChannelSource | None = None,
        activity: BotActivityLog | None = None,
    ) -> None:
        self.gateways = gateways
        self.delivery = delivery
        self.channels = channels
        self.activity = activity

    # ---- entry points --------------------------------------------------------
    async def reconcile(
        self,
        tx_id: str,
        *,
        paid: bool | None = None,
        source: str = "webhook",
        channel: Channel | None = None,
    ) -> ReconcileResult:
        """`paid=None` means "ask the gateway"; True/False is a trusted confirmation."""
        ctx = {"tx_id": tx_id, "source": source}

        async with session_scope() as session:
            order = await get_order_by_tx(session, tx_id)
            if order is None:
                log.warning("reconcile_order_not_found", extra=ctx)
                return ReconcileResult.NOT_FOUND
            if order.status != OrderStatus.PENDING:
                log.info("reconcile_already_processed status=%s", order.status, extra=ctx)
                return ReconcileResult.ALREADY_PROCESSED
            view = _OrderView.of(order)

        if paid is None:
            try:
                status = await self.gateways.get(view.provider).check_status(view.tx_id)
            except (GatewayError, ConfigurationError):
                log.exception("reconcile_status_check_failed", extra=ctx)
                return ReconcileResult.GATEWAY_ERROR
            paid = status.paid
            log.info("reconcile_status raw=%s paid=%s", status.raw_status, status.paid, extra=ctx)

        if not paid:
            return ReconcileResult.NOT_PAID

        async with session_scope() as session:
            won = await transition_order_status(
                session,
                view.id,
                from_status=OrderStatus.PENDING,
                to_status=OrderStatus.PAID,
                paid_at=utcnow(),
                delivery_attempts=1,
            )
            await session.commit()
        if not won:
            log.info("reconcile_claim_lost", extra=ctx)
            return ReconcileResult.ALREADY_PROCESSED

        log.info("order_paid order=%s amount=%s", view.id, view.amount, extra=ctx)
        self._record(view, f"Pagamento confirmado ({source}) TX: {view.tx_id}", "success")
        return await self._fulfil(view, channel=channel, source=source)

    async def approve(self, order_id: str) -> ReconcileResult:
        """Operator action: confirm a pending order, or retry delivery of a paid one."""
        async with session_scope() as session:
            order = await get_order(session, order_id)
            if order is None:
                return ReconcileResult.NOT_FOUND
            status, attempts = order.status, order.delivery_attempts
            view = _OrderView.of(order)

        if status == OrderStatus.PENDING:
            return await self.reconcile(view.tx_id, paid=True, source="operator")
        if status != OrderStatus.PAID:
            return ReconcileResult.ALREADY_PROCESSED

        async with session_scope() as session:
            won = await transition_order_status(
                session,
                view.id,
                from_status=OrderStatus.PAID,
                to_status=OrderStatus.PAID,
                expected_attempts=attempts,
                delivery_attempts=attempts + 1,
            )
            await session.commit()
        if not won:
            return ReconcileResult.ALREADY_PROCESSED

        log.info("order_delivery_retry attempt=%s", attempts + 1, extra={"order_id": view.id, "tx_id": view.tx_id})
        return await self._fulfil(view, channel=None, source="operator")

    async def fail(self, order_id: str, reason: str) -> bool:
        async with session_scope() as session:
            done = await transition_order_status(
                session,
                order_id,
                from_status=(OrderStatus.PENDING, OrderStatus.PAID),
                to_status=OrderStatus.FAILED,
                failure_reason=reason,
            )
            await session.commit()
        log.info("order_marked_failed done=%s reason=%s", done, reason, extra={"order_id": order_id})
        return done

    # ---- fulfilment ----------------------------------------------------------
    async def _fulfil(self, view: _OrderView, *, channel: Channel | None, source: str) -> ReconcileResult:
        ctx = {"order_id": view.id, "tx_id": view.tx_id, "bot_id": view.bot_id, "source": source}
        if channel is None:
            channel = await self._channel_for(view.bot_id)

        if view.payment_message_id is not None:
            await self._safe_delete(channel, view.chat_id, view.payment_message_id)
        status_msg_id = await self._safe_send(channel, view.chat_id, IN_PROGRESS_TEXT)

        if not view.player_id:
            log.error("delivery_missing_player_id", extra=ctx)
            await self._keep_paid(view.id, "missing player id")
            await self._notify(channel, view.chat_id, status_msg_id, MISSING_PLAYER_TEXT)
            self._record(view, "Erro na entrega: ID do jogador ausente", "error")
            return ReconcileResult.CONFIG_ERROR

        try:
            outcome: DeliveryOutcome = await self.delivery.send_pass(view.player_id)
        except ConfigurationError as e:
            log.error("delivery_not_configured err=%s", e, extra=ctx)
            await self._keep_paid(view.id, str(e))
            await self._notify(channel, view.chat_id, status_msg_id, DELIVERY_CONFIG_TEXT)
            self._record(view, f"Erro na entrega: {e}", "error")
            return ReconcileResult.CONFIG_ERROR
        except DeliveryError as e:
            log.warning("delivery_failed err=%s", e, extra=ctx)
            await self._keep_paid(view.id, str(e))
            await self._notify(channel, view.chat_id, status_msg_id, delivery_failed_text("falha de comunicação"))
            self._record(view, f"Erro na entrega: {e}", "error")
            return ReconcileResult.DELIVERY_FAILED

        if not outcome.success:
            reason = outcome.message or "Erro na entrega"
            log.warning("delivery_rejected msg=%s", reason, extra=ctx)
            await self._keep_paid(view.id, reason, response=outcome.payload)
            await self._notify(channel, view.chat_id, status_msg_id, delivery_failed_text(reason))
            self._record(view, f"Erro na entrega: {reason}", "error")
            return ReconcileResult.DELIVERY_FAILED

        nick = outcome.nick or "Jogador"
        async with session_scope() as session:
            done = await transition_order_status(
                session,
                view.id,
                from_status=OrderStatus.PAID,
                to_status=OrderStatus.DELIVERED,
                nick=nick,
                delivery_response=outcome.payload,
                delivered_at=utcnow(),
                failure_reason=None,
            )
            await upsert_chat_session(
                session,
                bot_id=view.bot_id,
                user_id=view.user_id,
                step=Step.COMPLETED.value,
                pending_tx_id=None,
                pix_code=None,
            )
            await session.commit()
        if not done:
            # order was marked failed by an operator while the provider call was in flight
            log.warning("order_delivered_after_state_change", extra=ctx)

        log.info("order_delivered nick=%s player=%s", nick, view.player_id, extra=ctx)
        self._record(view, f"Passe enviado com sucesso para {nick} ({view.player_id})", "success")
        await self._notify(channel, view.chat_id, status_msg_id, delivered_text(nick, view.player_id))
        return ReconcileResult.DELIVERED

    async def _keep_paid(self, order_id: str, reason: str, *, response: dict | None = None) -> None:
        values: dict = {"failure_reason": reason[:500]}
        if response is not None:
            values["delivery_response"] = response
        async with session_scope() as session:
            await transition_order_status(
                session, order_id, from_status=OrderStatus.PAID, to_status=OrderStatus.PAID, **values
            )
            await session.commit()

    # ---- messaging (best-effort) ---------------------------------------------
    async def _channel_for(self, bot_id: str) -> Channel | None:
        if self.channels is None:
            return None
        try:
            return await self.channels(bot_id)
        except Exception:
            log.exception("channel_unavailable", extra={"bot_id": bot_id})
            return None

    async def _safe_send(self, channel: Channel | None, chat_id: int | None, text: str) -> int | None:
        if channel is None or chat_id is None:
            return None
        try:
            return await channel.send_text(chat_id, text, html=True)
        except Exception:
            log.warning("channel_send_failed", extra={"chat_id": chat_id}, exc_info=True)
            return None

    async def _safe_delete(self, channel: Channel | None, chat_id: int | None, message_id: int) -> None:
        if channel is None or chat_id is None:
            return
        try:
            await channel.delete_message(chat_id, message_id)
        except Exception:
            log.info("channel_delete_failed", extra={"chat_id": chat_id})

    async def _notify(self, channel: Channel | None, chat_id: int | None, message_id: int | None, text: str) -> None:
        """Edit the in-progress message, or send a new one if that fails."""
        if channel is None or chat_id is None:
            return
        if message_id is not None:
            try:
                await channel.edit_message_text(chat_id, message_id, text, html=True)
                return
            except Exception:
                log.info("channel_edit_failed", extra={"chat_id": chat_id})
        await self._safe_send(channel, chat_id, text)

    def _record(self, view: _OrderView, message: str, level: str) -> None:
        if self.activity is not None:
            self.activity.record(view.bot_id, message, level=level, user_id=view.user_id, chat_id=view.chat_id)
