import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import add_promo
from passbot.core.errors import PromoRejected, RejectReason
from passbot.core.time import utcnow
from passbot.db.models import PromoCode
from passbot.db.session import session_scope
from passbot.services.promo import PromoLedger, rejection_reason


async def used_count(code: str) -> int:
    async with session_scope() as session:
        promo = await session.get(PromoCode, code)
        return promo.used_count


async def test_redeem_returns_discount_and_counts_use(db):
    await add_promo("OFF2", "2.00", max_uses=3)
    ledger = PromoLedger()

    assert await ledger.redeem("off2 ") == Decimal("2.00")
    assert await used_count("OFF2") == 1


async def test_mixed_case_code_is_stored_normalized(db):
    await add_promo(" Black10 ", "10.00")

    assert await PromoLedger().redeem("black10") == Decimal("10.00")
    assert await used_count("BLACK10") == 1


async def test_unknown_code_is_not_found(db):
    with pytest.raises(PromoRejected) as exc:
        await PromoLedger().redeem("NOPE")
    assert exc.value.reason == RejectReason.NOT_FOUND


async def test_blank_code_is_not_found(db):
    with pytest.raises(PromoRejected) as exc:
        await PromoLedger().redeem("   ")
    assert exc.value.reason == RejectReason.NOT_FOUND


async def test_inactive_code_is_rejected_without_counting(db):
    await add_promo("OLD", is_active=False)
    with pytest.raises(PromoRejected) as exc:
        await PromoLedger().redeem("OLD")
    assert exc.value.reason == RejectReason.INACTIVE
    assert await used_count("OLD") == 0


async def test_expired_code_is_rejected(db):
    await add_promo("LATE", expires_at=utcnow() - timedelta(minutes=1))
    with pytest.raises(PromoRejected) as exc:
        await PromoLedger().redeem("LATE")
    assert exc.value.reason == RejectReason.EXPIRED


async def test_future_expiry_is_accepted(db):
    await add_promo("SOON", "1.50", expires_at=utcnow() + timedelta(days=1))
    assert await PromoLedger().redeem("SOON") == Decimal("1.50")


async def test_exhausted_code_is_rejected(db):
    await add_promo("ONCE", max_uses=1)
    ledger = PromoLedger()
    await ledger.redeem("ONCE")

    with pytest.raises(PromoRejected) as exc:
        await ledger.redeem("ONCE")
    assert exc.value.reason == RejectReason.EXHAUSTED
    assert await used_count("ONCE") == 1


async def test_zero_max_uses_means_exhausted(db):
    await add_promo("ZERO", max_uses=0)
    with pytest.raises(PromoRejected) as exc:
        await PromoLedger().redeem("ZERO")
    assert exc.value.reason == RejectReason.EXHAUSTED


async def test_unlimited_code_keeps_counting(db):
    await add_promo("FREE")
    ledger = PromoLedger()
    for _ in range(4):
        await ledger.redeem("FREE")
    assert await used_count("FREE") == 4


async def test_concurrent_redemptions_never_exceed_max_uses(db):
    max_uses = 3
    await add_promo("RUSH", max_uses=max_uses)
    ledger = PromoLedger()

    results = await asyncio.gather(*(ledger.redeem("RUSH") for _ in range(2 * max_uses)), return_exceptions=True)

    accepted = [r for r in results if isinstance(r, Decimal)]
    rejected = [r for r in results if isinstance(r, PromoRejected)]
    assert len(accepted) == max_uses
    assert len(rejected) == max_uses
    assert all(r.reason == RejectReason.EXHAUSTED for r in rejected)
    assert await used_count("RUSH") == max_uses


def test_rejection_reason_precedence():
    promo = PromoCode(code="X", discount_amount=Decimal("1"), is_active=False, used_count=0)
    assert rejection_reason(None) == RejectReason.NOT_FOUND
    assert rejection_reason(promo) == RejectReason.INACTIVE
