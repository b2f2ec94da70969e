from __future__ import annotations

from enum import Enum


class PassBotError(RuntimeError):
    pass


class ConfigurationError(PassBotError):
    """Missing credential, token or recipient. Not retried; the operator must fix it."""


class GatewayError(PassBotError):
    """Payment gateway answered with a non-2xx status, garbage, or not at all."""


class GatewayAuthError(GatewayError):
    pass


class ValidationError(PassBotError):
    pass


class DeliveryError(PassBotError):
    """Fulfillment call failed after payment was confirmed."""


class RejectReason(str, Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"


class PromoRejected(PassBotError):
    def __init__(self, code: str, reason: RejectReason) -> None:
        super().__init__(f"promo code {code!r} rejected: {reason.value}")
        self.code = code
        self.reason = reason
