"""Purchase dialogue as a pure state machine.

`transition(session, event, ctx)` never touches I/O: it returns the next
session and a list of effects. `passbot.flow.runner.FlowRunner` executes the
effects and feeds their results back in as events.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from html import escape
from typing import Any, Union

from passbot.core.errors import RejectReason, ValidationError


class Step(str, Enum):
    START = "START"
    WAITING_ID = "WAITING_ID"
    CONFIRM_ID = "CONFIRM_ID"
    ASK_PROMO = "ASK_PROMO"
    WAITING_PROMO = "WAITING_PROMO"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    COMPLETED = "COMPLETED"


class ReconcileResult(str, Enum):
    NOT_FOUND = "not_found"
    NOT_PAID = "not_paid"
    ALREADY_PROCESSED = "already_processed"
    DELIVERED = "delivered"
    DELIVERY_FAILED = "delivery_failed"
    CONFIG_ERROR = "config_error"
    GATEWAY_ERROR = "gateway_error"


# callback_data values
CB_START_FLOW = "start_flow"
CB_CONFIRM_YES = "confirm_id_yes"
CB_CONFIRM_NO = "confirm_id_no"
CB_PROMO_YES = "ask_promo_yes"
CB_PROMO_NO = "ask_promo_no"
CB_SKIP_PROMO = "promo_no"
CB_CHECK_PAYMENT = "check_payment"

PLAYER_ID_RE = re.compile(r"^\d+$")

CENT = Decimal("0.01")


def final_price(base: Decimal, discount: Decimal) -> Decimal:
    """Price after discount, never below zero, 2 dp."""
    return max(Decimal("0"), Decimal(base) - Decimal(discount)).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_player_id(text: str | None) -> str:
    text = (text or "").strip()
    if not PLAYER_ID_RE.match(text):
        raise ValidationError(f"invalid player id: {text!r}")
    return text


def fmt_brl(amount: Decimal) -> str:
    return f"R$ {Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)}"


# ---- Session ----------------------------------------------------------------
@dataclass(frozen=True)
class FlowSession:
    step: Step = Step.START
    player_id: str | None = None
    promo_code: str | None = None
    pending_tx_id: str | None = None
    pix_code: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> "FlowSession":
        if row is None:
            return cls()
        try:
            step = Step(row.step)
        except ValueError:
            step = Step.START
        return cls(
            step=step,
            player_id=row.player_id,
            promo_code=row.promo_code,
            pending_tx_id=row.pending_tx_id,
            pix_code=row.pix_code,
        )

    def changes(self, new: "FlowSession") -> dict[str, Any]:
        """Fields that differ in `new`, in storage form."""
        out: dict[str, Any] = {}
        for name in ("step", "player_id", "promo_code", "pending_tx_id", "pix_code"):
            after = getattr(new, name)
            if getattr(self, name) != after:
                out[name] = after.value if isinstance(after, Step) else after
        return out


@dataclass(frozen=True)
class FlowContext:
    base_price: Decimal


# ---- Events -----------------------------------------------------------------
@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Button:
    data: str
    message_id: int | None = None


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class PromoAccepted:
    code: str
    discount: Decimal


@dataclass(frozen=True)
class PromoDeclined:
    code: str
    reason: RejectReason


@dataclass(frozen=True)
class ChargeCreated:
    tx_id: str
    pay_code: str
    amount: Decimal
    qr_image: bytes | None = None
    order_id: str | None = None


@dataclass(frozen=True)
class ChargeFailed:
    error: str


@dataclass(frozen=True)
class PaymentChecked:
    result: ReconcileResult
    message_id: int | None = None


Event = Union[Start, Button, Text, PromoAccepted, PromoDeclined, ChargeCreated, ChargeFailed, PaymentChecked]


# ---- Effects ----------------------------------------------------------------
@dataclass(frozen=True)
class ButtonSpec:
    """Inline button whose label is a configurable setting."""

    label_key: str
    label_fallback: str
    data: str
    suffix: str = ""


@dataclass(frozen=True)
class SendStep:
    """Dialogue screen: text, optional image and display mode come from settings."""

    text_key: str
    text_fallback: str
    image_key: str
    mode_key: str
    buttons: tuple[tuple[ButtonSpec, ...], ...] = ()
    # {name} placeholders substituted into the configured text
    params: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SendText:
    text: str
    buttons: tuple[tuple[ButtonSpec, ...], ...] = ()
    html: bool = False


@dataclass(frozen=True)
class RedeemPromo:
    code: str


@dataclass(frozen=True)
class CreateCharge:
    amount: Decimal
    player_id: str
    promo_code: str | None = None


@dataclass(frozen=True)
class SendPaymentRequest:
    tx_id: str
    amount: Decimal
    pay_code: str
    qr_image: bytes | None = None
    order_id: str | None = None


@dataclass(frozen=True)
class CheckPayment:
    tx_id: str | None
    message_id: int | None = None


@dataclass(frozen=True)
class DeleteMessage:
    message_id: int


Effect = Union[SendStep, SendText, RedeemPromo, CreateCharge, SendPaymentRequest, CheckPayment, DeleteMessage]


@dataclass(frozen=True)
class Transition:
    session: FlowSession
    effects: tuple[Effect, ...] = ()


# ---- Screens ----------------------------------------------------------------
def _screen(name: str, fallback: str, *, text_key: str | None = None, buttons=(), params=None) -> SendStep:
    return SendStep(
        text_key=text_key or f"{name}_text",
        text_fallback=fallback,
        image_key=f"{name}_image_url",
        mode_key=f"{name}_display_mode",
        buttons=tuple(buttons),
        params=dict(params or {}),
    )


def welcome_screen() -> SendStep:
    return _screen(
        "welcome",
        "Olá! Envie seu ID Free Fire para comprar seu passe.",
        text_key="welcome_message",
        buttons=[(ButtonSpec("btn_start", "🎮 GARANTA SEU PASSE", CB_START_FLOW),)],
    )


def ask_id_screen(fallback: str = "Digite o ID da sua conta Free Fire:") -> SendStep:
    return _screen("ask_id", fallback)


def confirm_id_screen(player_id: str) -> SendStep:
    return _screen(
        "confirm_id",
        f"O ID enviado: {player_id}\nEstá correto?",
        buttons=[
            (
                ButtonSpec("btn_confirm_yes", "✅ Sim, Confirmar", CB_CONFIRM_YES),
                ButtonSpec("btn_confirm_no", "❌ Não, Digitar Novamente", CB_CONFIRM_NO),
            )
        ],
        params={"player_id": player_id},
    )


def ask_promo_screen() -> SendStep:
    return _screen(
        "ask_promo",
        "Você possui um código promocional?",
        buttons=[
            (
                ButtonSpec("btn_promo_yes", "🏷️ Sim, Tenho Código", CB_PROMO_YES),
                ButtonSpec("btn_promo_no", "➡️ Não, Prosseguir", CB_PROMO_NO),
            )
        ],
    )


def ask_promo_code_screen() -> SendStep:
    return _screen("ask_promo_code", "Digite seu código promocional:")


# ---- Replies ----------------------------------------------------------------
INVALID_ID_TEXT = "❌ ID inválido. Envie apenas os números do seu ID Free Fire."
NO_PENDING_TEXT = "⚠️ Nenhuma transação pendente encontrada."
NOT_PAID_TEXT = "⏳ Pagamento ainda não identificado. Aguarde alguns segundos e tente novamente."
CHECK_ERROR_TEXT = "❌ Erro ao verificar. Tente novamente."

_CHECK_REPLIES = {
    ReconcileResult.NOT_FOUND: NO_PENDING_TEXT,
    ReconcileResult.NOT_PAID: NOT_PAID_TEXT,
    ReconcileResult.GATEWAY_ERROR: CHECK_ERROR_TEXT,
}


def promo_declined_text(code: str, reason: RejectReason) -> str:
    if reason == RejectReason.EXHAUSTED:
        return f"Código {code} esgotado."
    return "Código inválido ou expirado."


def charge_failed_text(error: str) -> str:
    return (
        "❌ <b>Erro na Geração do Pix</b>\n\n"
        f"<code>{escape(error)}</code>\n\n"
        "O erro foi registrado e o suporte foi avisado."
    )


def payment_caption(amount: Decimal, pay_code: str) -> str:
    return (
        f"💰 Valor: {fmt_brl(amount)}\n\n"
        "📋 Código Pix (clique para copiar):\n\n"
        f"<code>{escape(pay_code)}</code>\n\n"
        "⚠️ <b>Aviso:</b> Cada conta Free Fire só pode adquirir 1 passe por mês através deste sistema."
    )


# ---- Transition -------------------------------------------------------------
_PROMO_STEPS = (Step.ASK_PROMO, Step.WAITING_PROMO)


def _stay(session: FlowSession, *effects: Effect) -> Transition:
    return Transition(session, tuple(effects))


def transition(session: FlowSession, event: Event, ctx: FlowContext) -> Transition:
    """Next session and effects for one event. Unknown or stale input yields no effects."""
    step = session.step

    if isinstance(event, Start):
        return Transition(replace(session, step=Step.START), (welcome_screen(),))

    if isinstance(event, Button):
        return _on_button(session, event, ctx)

    if isinstance(event, Text):
        text = (event.text or "").strip()
        if step == Step.WAITING_ID:
            try:
                player_id = parse_player_id(text)
            except ValidationError:
                return _stay(session, SendText(INVALID_ID_TEXT))
            return Transition(
                replace(session, step=Step.CONFIRM_ID, player_id=player_id),
                (confirm_id_screen(player_id),),
            )
        if step == Step.WAITING_PROMO:
            code = text.upper()
            if not code:
                return _stay(session)
            return _stay(session, RedeemPromo(code))
        return _stay(session)

    if isinstance(event, PromoAccepted):
        if step not in _PROMO_STEPS or not session.player_id:
            return _stay(session)
        price = final_price(ctx.base_price, event.discount)
        return Transition(
            replace(session, promo_code=event.code),
            (
                SendText(f"✅ Código {event.code} aplicado! Desconto de {fmt_brl(event.discount)}."),
                CreateCharge(amount=price, player_id=session.player_id, promo_code=event.code),
            ),
        )

    if isinstance(event, PromoDeclined):
        return _stay(
            session,
            SendText(
                promo_declined_text(event.code, event.reason),
                buttons=(
                    (
                        ButtonSpec("btn_retry_promo", "🔄 Tentar Novamente", CB_PROMO_YES),
                        ButtonSpec("btn_no_promo", "➡️ Sem Desconto", CB_SKIP_PROMO, suffix=f" ({fmt_brl(ctx.base_price)})"),
                    ),
                ),
            ),
        )

    if isinstance(event, ChargeCreated):
        return Transition(
            replace(session, step=Step.PAYMENT_PENDING, pending_tx_id=event.tx_id, pix_code=event.pay_code),
            (
                SendPaymentRequest(
                    tx_id=event.tx_id,
                    amount=event.amount,
                    pay_code=event.pay_code,
                    qr_image=event.qr_image,
                    order_id=event.order_id,
                ),
            ),
        )

    if isinstance(event, ChargeFailed):
        return _stay(session, SendText(charge_failed_text(event.error), html=True))

    if isinstance(event, PaymentChecked):
        if event.result == ReconcileResult.ALREADY_PROCESSED and event.message_id is not None:
            return _stay(session, DeleteMessage(event.message_id))
        reply = _CHECK_REPLIES.get(event.result)
        return _stay(session, SendText(reply)) if reply else _stay(session)

    raise TypeError(f"unknown event: {event!r}")


def _on_button(session: FlowSession, event: Button, ctx: FlowContext) -> Transition:
    step, data = session.step, event.data

    if data == CB_CHECK_PAYMENT:
        # accepted from any step; reconciliation itself is idempotent
        return _stay(session, CheckPayment(tx_id=session.pending_tx_id, message_id=event.message_id))

    if data == CB_START_FLOW and step == Step.START:
        return Transition(replace(session, step=Step.WAITING_ID), (ask_id_screen(),))

    if step == Step.CONFIRM_ID:
        if data == CB_CONFIRM_YES:
            return Transition(replace(session, step=Step.ASK_PROMO), (ask_promo_screen(),))
        if data == CB_CONFIRM_NO:
            return Transition(replace(session, step=Step.WAITING_ID), (ask_id_screen("Ok, digite o ID novamente:"),))

    if step in _PROMO_STEPS and session.player_id:
        if data == CB_PROMO_YES:
            return Transition(replace(session, step=Step.WAITING_PROMO), (ask_promo_code_screen(),))
        if data in (CB_PROMO_NO, CB_SKIP_PROMO):
            return _stay(session, CreateCharge(amount=final_price(ctx.base_price, Decimal("0")), player_id=session.player_id))

    return _stay(session)
