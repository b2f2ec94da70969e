from __future__ import annotations

import logging
from decimal import Decimal

from passbot.core.errors import PromoRejected, RejectReason
from passbot.core.time import ensure_tz, utcnow
from passbot.db.models import normalize_code
from passbot.db.models.promo_code import PromoCode
from passbot.db.session import session_scope
from passbot.repo import get_promo_code, increment_promo_usage

log = logging.getLogger(__name__)


def rejection_reason(promo: PromoCode | None) -> RejectReason:
    if promo is None:
        return RejectReason.NOT_FOUND
    if not promo.is_active:
        return RejectReason.INACTIVE
    expires_at = ensure_tz(promo.expires_at)
    if expires_at is not None and expires_at <= utcnow():
        return RejectReason.EXPIRED
    # also covers losing the race for the last use
    return RejectReason.EXHAUSTED


class PromoLedger:
    async def redeem(self, code: str) -> Decimal:
        """Consume one use of `code` and return its discount.

        Raises PromoRejected. Eligibility check and increment are one
        conditional UPDATE, so concurrent redemptions never exceed max_uses.
        """
        code = normalize_code(code)
        if not code:
            raise PromoRejected(code, RejectReason.NOT_FOUND)

        async with session_scope() as session:
            if await increment_promo_usage(session, code):
                promo = await get_promo_code(session, code)
                await session.commit()
                log.info("promo_redeemed code=%s used=%s", code, promo.used_count)
                return Decimal(promo.discount_amount)
            await session.rollback()
            reason = rejection_reason(await get_promo_code(session, code))

        log.info("promo_rejected code=%s reason=%s", code, reason.value)
        raise PromoRejected(code, reason)


promo_ledger = PromoLedger()
