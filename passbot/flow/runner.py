from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from passbot.bot.channel import Channel
from passbot.bot.keyboards import ButtonRows
from passbot.core.config import settings
from passbot.core.errors import ConfigurationError, GatewayError, PromoRejected
from passbot.db.session import session_scope
from passbot.flow.engine import (
    ButtonSpec,
    ChargeCreated,
    ChargeFailed,
    CheckPayment,
    CreateCharge,
    DeleteMessage,
    Effect,
    Event,
    FlowContext,
    FlowSession,
    PaymentChecked,
    PromoAccepted,
    PromoDeclined,
    ReconcileResult,
    RedeemPromo,
    SendPaymentRequest,
    SendStep,
    SendText,
    payment_caption,
    transition,
)
from passbot.repo import (
    create_order,
    get_chat_session,
    latest_pending_order,
    set_order_payment_message,
    upsert_chat_session,
)
from passbot.services.bot_log import BotActivityLog
from passbot.services.orchestrator import Orchestrator
from passbot.services.payments import GatewayRegistry
from passbot.services.promo import PromoLedger
from passbot.services.settings_cache import BotSnapshot, SettingsCache

log = logging.getLogger(__name__)

CHECK_PAYMENT_LABEL = "✅ Confirmar Pagamento"


def is_visible(snapshot: BotSnapshot | None, chat_id: int | str | None, chat_type: str | None) -> bool:
    """Restricted bots only talk inside their allowed groups, never in private chats."""
    if snapshot is None or not snapshot.restricted:
        return True
    if chat_type == "private" or chat_id is None:
        return False
    return str(chat_id) in snapshot.allowed_groups


@dataclass(frozen=True)
class Turn:
    """Who an event came from."""

    channel: Channel
    bot_id: str
    user_id: str
    chat_id: int
    chat_type: str | None = None


class FlowRunner:
    def __init__(
        self,
        *,
        cache: SettingsCache,
        gateways: GatewayRegistry,
        orchestrator: Orchestrator,
        promos: PromoLedger,
        activity: BotActivityLog | None = None,
    ) -> None:
        self.cache = cache
        self.gateways = gateways
        self.orchestrator = orchestrator
        self.promos = promos
        self.activity = activity

    async def handle(self, turn: Turn, event: Event) -> None:
        snap = await self.cache.bot(turn.bot_id)
        if not is_visible(snap, turn.chat_id, turn.chat_type):
            log.debug("flow_event_dropped chat_type=%s", turn.chat_type, extra={"bot_id": turn.bot_id, "chat_id": turn.chat_id})
            return

        ctx = FlowContext(base_price=await self.base_price(turn.bot_id))
        queue: list[Event] = [event]
        while queue:
            ev = queue.pop(0)
            # fresh read per event: follow-ups may arrive after other writes for this user
            async with session_scope() as session:
                row = await get_chat_session(session, bot_id=turn.bot_id, user_id=turn.user_id)
            current = FlowSession.from_row(row)

            result = transition(current, ev, ctx)
            patch = current.changes(result.session)
            if row is None or patch or row.chat_id != turn.chat_id:
                async with session_scope() as session:
                    await upsert_chat_session(session, bot_id=turn.bot_id, user_id=turn.user_id, chat_id=turn.chat_id, **patch)
                    await session.commit()
            if patch.get("step"):
                log.info("flow_step %s -> %s", current.step.value, patch["step"], extra={"bot_id": turn.bot_id, "tg_id": turn.user_id})

            for effect in result.effects:
                follow_up = await self._apply(turn, effect)
                if follow_up is not None:
                    queue.append(follow_up)

    async def base_price(self, bot_id: str) -> Decimal:
        raw = await self.cache.get(bot_id, "pass_price", settings.default_pass_price)
        try:
            return Decimal(str(raw).strip().replace(",", "."))
        except InvalidOperation:
            log.warning("pass_price_invalid value=%r", raw, extra={"bot_id": bot_id})
            return Decimal(settings.default_pass_price)

    # ---- effects -------------------------------------------------------------
    async def _apply(self, turn: Turn, effect: Effect) -> Event | None:
        if isinstance(effect, SendStep):
            await self._send_step(turn, effect)
        elif isinstance(effect, SendText):
            await turn.channel.send_text(
                turn.chat_id, effect.text, buttons=await self._buttons(turn.bot_id, effect.buttons), html=effect.html
            )
        elif isinstance(effect, RedeemPromo):
            return await self._redeem(turn, effect)
        elif isinstance(effect, CreateCharge):
            return await self._create_charge(turn, effect)
        elif isinstance(effect, SendPaymentRequest):
            await self._send_payment_request(turn, effect)
        elif isinstance(effect, CheckPayment):
            return await self._check_payment(turn, effect)
        elif isinstance(effect, DeleteMessage):
            try:
                await turn.channel.delete_message(turn.chat_id, effect.message_id)
            except Exception:
                log.info("flow_delete_failed", extra={"chat_id": turn.chat_id})
        else:
            raise TypeError(f"unknown effect: {effect!r}")
        return None

    async def _buttons(self, bot_id: str, rows: tuple[tuple[ButtonSpec, ...], ...]) -> ButtonRows | None:
        if not rows:
            return None
        out = []
        for row in rows:
            resolved = []
            for spec in row:
                label = await self.cache.get(bot_id, spec.label_key, spec.label_fallback)
                resolved.append((label + spec.suffix, spec.data))
            out.append(resolved)
        return out

    async def _send_step(self, turn: Turn, step: SendStep) -> None:
        text = await self.cache.get(turn.bot_id, step.text_key, step.text_fallback)
        for name, value in step.params.items():
            text = text.replace("{" + name + "}", value)
        image_url = await self.cache.get(turn.bot_id, step.image_key)
        mode = await self.cache.get(turn.bot_id, step.mode_key, "IMAGE")
        buttons = await self._buttons(turn.bot_id, step.buttons)

        if mode.strip().upper() == "IMAGE" and image_url:
            await turn.channel.send_photo(turn.chat_id, image_url, caption=text, buttons=buttons)
        else:
            await turn.channel.send_text(turn.chat_id, text, buttons=buttons)

    async def _redeem(self, turn: Turn, effect: RedeemPromo) -> Event:
        self._record(turn, f"Código promo usado: {effect.code}")
        try:
            discount = await self.promos.redeem(effect.code)
        except PromoRejected as e:
            self._record(turn, f"Promo recusada ({e.reason.value}): {effect.code}", "warning")
            return PromoDeclined(code=e.code, reason=e.reason)
        self._record(turn, f"Promo validada! Desconto: {discount}", "success")
        return PromoAccepted(code=effect.code, discount=discount)

    async def _create_charge(self, turn: Turn, effect: CreateCharge) -> Event:
        try:
            gateway = await self.gateways.active()
            charge = await gateway.create_charge(effect.amount, f"Pass Booyah - ID: {effect.player_id}")
        except (GatewayError, ConfigurationError) as e:
            log.warning("charge_failed err=%s", e, extra={"bot_id": turn.bot_id, "tg_id": turn.user_id})
            self._record(turn, f"Erro ao gerar pagamento: {e}", "error")
            return ChargeFailed(error=str(e))

        async with session_scope() as session:
            order = await create_order(
                session,
                bot_id=turn.bot_id,
                user_id=turn.user_id,
                amount=effect.amount,
                provider=gateway.name,
                external_tx_id=charge.tx_id,
                player_id=effect.player_id,
                chat_id=turn.chat_id,
                promo_code=effect.promo_code,
            )
            await session.commit()
        log.info(
            "order_created order=%s amount=%s provider=%s",
            order.id,
            effect.amount,
            gateway.name,
            extra={"bot_id": turn.bot_id, "tg_id": turn.user_id, "tx_id": charge.tx_id},
        )
        self._record(turn, f"Gerado Pix de R$ {effect.amount} para ID FF: {effect.player_id}")
        return ChargeCreated(
            tx_id=charge.tx_id,
            pay_code=charge.pay_code,
            amount=effect.amount,
            qr_image=charge.qr_image,
            order_id=order.id,
        )

    async def _send_payment_request(self, turn: Turn, effect: SendPaymentRequest) -> None:
        caption = payment_caption(effect.amount, effect.pay_code)
        buttons = [[(CHECK_PAYMENT_LABEL, "check_payment")]]
        if effect.qr_image:
            message_id = await turn.channel.send_photo(
                turn.chat_id, effect.qr_image, caption=caption, buttons=buttons, html=True
            )
        else:
            message_id = await turn.channel.send_text(turn.chat_id, caption, buttons=buttons, html=True)

        if effect.order_id:
            async with session_scope() as session:
                await set_order_payment_message(session, effect.order_id, message_id=message_id, chat_id=turn.chat_id)
                await session.commit()

    async def _check_payment(self, turn: Turn, effect: CheckPayment) -> Event:
        tx_id = effect.tx_id
        if not tx_id:
            async with session_scope() as session:
                order = await latest_pending_order(session, bot_id=turn.bot_id, user_id=turn.user_id)
                tx_id = order.external_tx_id if order is not None else None
        if not tx_id:
            return PaymentChecked(ReconcileResult.NOT_FOUND, effect.message_id)

        result = await self.orchestrator.reconcile(tx_id, source="poll", channel=turn.channel)
        if result == ReconcileResult.NOT_FOUND:
            # the session still points at a charge whose order is gone; try the newest pending one
            async with session_scope() as session:
                order = await latest_pending_order(session, bot_id=turn.bot_id, user_id=turn.user_id)
                fallback = order.external_tx_id if order is not None else None
            if fallback and fallback != tx_id:
                result = await self.orchestrator.reconcile(fallback, source="poll", channel=turn.channel)
        return PaymentChecked(result, effect.message_id)

    def _record(self, turn: Turn, message: str, level: str = "info") -> None:
        if self.activity is not None:
            self.activity.record(turn.bot_id, message, level=level, user_id=turn.user_id, chat_id=turn.chat_id)
