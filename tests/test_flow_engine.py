from decimal import Decimal

import pytest

from passbot.core.errors import RejectReason, ValidationError
from passbot.flow.engine import (
    Button,
    ChargeCreated,
    ChargeFailed,
    CheckPayment,
    CreateCharge,
    DeleteMessage,
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
    Start,
    Step,
    Text,
    final_price,
    parse_player_id,
    transition,
)

CTX = FlowContext(base_price=Decimal("8.00"))


def run(session, *events):
    effects = []
    for ev in events:
        result = transition(session, ev, CTX)
        session = result.session
        effects.append(result.effects)
    return session, effects


def test_happy_path_without_promo_reaches_payment_pending_at_base_price():
    session, effects = run(
        FlowSession(),
        Start(),
        Button("start_flow"),
        Text("12345"),
        Button("confirm_id_yes"),
        Button("ask_promo_no"),
    )
    assert session.step == Step.ASK_PROMO
    assert effects[-1] == (CreateCharge(amount=Decimal("8.00"), player_id="12345", promo_code=None),)

    session, effects = run(session, ChargeCreated(tx_id="tx-1", pay_code="PIX", amount=Decimal("8.00")))
    assert session.step == Step.PAYMENT_PENDING
    assert session.pending_tx_id == "tx-1"
    assert session.pix_code == "PIX"
    assert session.promo_code is None
    assert isinstance(effects[0][0], SendPaymentRequest)
    assert effects[0][0].amount == Decimal("8.00")


def test_start_sends_welcome_with_start_flow_button():
    result = transition(FlowSession(step=Step.PAYMENT_PENDING, player_id="1"), Start(), CTX)
    assert result.session.step == Step.START
    (screen,) = result.effects
    assert isinstance(screen, SendStep)
    assert screen.text_key == "welcome_message"
    assert screen.buttons[0][0].data == "start_flow"


@pytest.mark.parametrize("text", ["abc", "12 34", "", "12a", "-5"])
def test_invalid_player_id_reprompts_without_transition(text):
    session = FlowSession(step=Step.WAITING_ID)
    result = transition(session, Text(text), CTX)
    assert result.session == session
    assert len(result.effects) == 1
    assert isinstance(result.effects[0], SendText)


def test_player_id_is_trimmed_and_confirmed():
    result = transition(FlowSession(step=Step.WAITING_ID), Text("  987654 "), CTX)
    assert result.session.step == Step.CONFIRM_ID
    assert result.session.player_id == "987654"
    (screen,) = result.effects
    assert screen.params == {"player_id": "987654"}
    assert [b.data for b in screen.buttons[0]] == ["confirm_id_yes", "confirm_id_no"]


def test_confirm_no_loops_back_to_waiting_id():
    result = transition(FlowSession(step=Step.CONFIRM_ID, player_id="1"), Button("confirm_id_no"), CTX)
    assert result.session.step == Step.WAITING_ID


@pytest.mark.parametrize(
    "step,data",
    [
        (Step.START, "confirm_id_yes"),
        (Step.WAITING_ID, "start_flow"),
        (Step.PAYMENT_PENDING, "ask_promo_no"),
        (Step.COMPLETED, "confirm_id_no"),
        (Step.CONFIRM_ID, "unknown"),
    ],
)
def test_stale_buttons_are_ignored(step, data):
    session = FlowSession(step=step, player_id="1")
    result = transition(session, Button(data), CTX)
    assert result.session == session
    assert result.effects == ()


def test_text_outside_input_steps_is_ignored():
    session = FlowSession(step=Step.ASK_PROMO, player_id="1")
    assert transition(session, Text("hello"), CTX).effects == ()


def test_promo_code_is_uppercased_before_redeem():
    session = FlowSession(step=Step.WAITING_PROMO, player_id="1")
    result = transition(session, Text(" promo10 "), CTX)
    assert result.effects == (RedeemPromo("PROMO10"),)
    assert result.session == session


def test_accepted_promo_discounts_price():
    session = FlowSession(step=Step.WAITING_PROMO, player_id="1")
    result = transition(session, PromoAccepted("OFF2", Decimal("2.00")), CTX)
    announce, charge = result.effects
    assert "OFF2" in announce.text
    assert charge == CreateCharge(amount=Decimal("6.00"), player_id="1", promo_code="OFF2")
    assert result.session.promo_code == "OFF2"


def test_declined_promo_offers_retry_and_skip():
    session = FlowSession(step=Step.WAITING_PROMO, player_id="1")
    result = transition(session, PromoDeclined("BAD", RejectReason.EXPIRED), CTX)
    assert result.session == session
    (reply,) = result.effects
    assert [b.data for b in reply.buttons[0]] == ["ask_promo_yes", "promo_no"]
    assert "R$ 8.00" in reply.buttons[0][1].suffix


def test_skip_after_declined_promo_charges_base_price():
    session = FlowSession(step=Step.WAITING_PROMO, player_id="1")
    result = transition(session, Button("promo_no"), CTX)
    assert result.effects == (CreateCharge(amount=Decimal("8.00"), player_id="1"),)


@pytest.mark.parametrize(
    "base,discount,expected",
    [
        ("8.00", "2.00", "6.00"),
        ("8.00", "8.00", "0.00"),
        ("8.00", "10.00", "0.00"),
        ("8.00", "0.005", "8.00"),
        ("7.5", "0", "7.50"),
    ],
)
def test_final_price(base, discount, expected):
    assert final_price(Decimal(base), Decimal(discount)) == Decimal(expected)


def test_charge_failure_reports_error_without_transition():
    session = FlowSession(step=Step.ASK_PROMO, player_id="1")
    result = transition(session, ChargeFailed("SyncPay cash-in failed: HTTP 500 <x>"), CTX)
    assert result.session == session
    (reply,) = result.effects
    assert reply.html
    assert "&lt;x&gt;" in reply.text


def test_check_payment_uses_pending_tx_from_any_step():
    session = FlowSession(step=Step.START, pending_tx_id="tx-9")
    result = transition(session, Button("check_payment", message_id=55), CTX)
    assert result.effects == (CheckPayment(tx_id="tx-9", message_id=55),)


def test_already_processed_check_deletes_tapped_message():
    result = transition(FlowSession(), PaymentChecked(ReconcileResult.ALREADY_PROCESSED, 77), CTX)
    assert result.effects == (DeleteMessage(77),)


@pytest.mark.parametrize(
    "outcome,needle",
    [
        (ReconcileResult.NOT_PAID, "ainda não identificado"),
        (ReconcileResult.NOT_FOUND, "Nenhuma transação pendente"),
        (ReconcileResult.GATEWAY_ERROR, "Erro ao verificar"),
    ],
)
def test_payment_check_replies(outcome, needle):
    (reply,) = transition(FlowSession(), PaymentChecked(outcome, 1), CTX).effects
    assert needle in reply.text


def test_delivered_check_needs_no_reply():
    assert transition(FlowSession(), PaymentChecked(ReconcileResult.DELIVERED, 1), CTX).effects == ()


def test_changes_lists_only_modified_fields():
    before = FlowSession(step=Step.WAITING_ID)
    after = FlowSession(step=Step.CONFIRM_ID, player_id="5")
    assert before.changes(after) == {"step": "CONFIRM_ID", "player_id": "5"}
    assert after.changes(after) == {}


def test_parse_player_id():
    assert parse_player_id(" 42 ") == "42"
    with pytest.raises(ValidationError):
        parse_player_id("4 2")
