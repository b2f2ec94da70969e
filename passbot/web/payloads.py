from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from passbot.services.payments import is_paid_status

_ID_KEYS = ("identifier", "id", "txid", "external_id")
_STATUS_KEYS = ("status", "payment_status", "state")


@dataclass(frozen=True)
class PaymentNotification:
    tx_id: str
    status: str

    @property
    def paid(self) -> bool:
        return is_paid_status(self.status)


def _first(body: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = body.get(key)
        if value not in (None, ""):
            return str(value).strip()
    return None


def parse_payment_notification(payload: Any) -> PaymentNotification | None:
    """Gateway push: fields may sit under `data` or at the top level. None if unusable."""
    if not isinstance(payload, dict):
        return None
    nested = payload.get("data") if isinstance(payload.get("data"), dict) else {}

    tx_id = _first(nested, _ID_KEYS) or _first(payload, _ID_KEYS)
    status = _first(nested, _STATUS_KEYS) or _first(payload, _STATUS_KEYS)
    if not tx_id or not status:
        return None
    return PaymentNotification(tx_id=tx_id, status=status)


def parse_mercadopago_notification(query: Mapping[str, str], payload: Any) -> str | None:
    """Payment id from `?topic=payment&id=` or `{"type": "payment", "data": {"id": ...}}`."""
    topic = query.get("topic") or query.get("type")
    if topic == "payment":
        pid = query.get("id") or query.get("data.id")
        if pid:
            return str(pid)

    if isinstance(payload, dict) and payload.get("type") == "payment":
        data = payload.get("data")
        if isinstance(data, dict) and data.get("id") not in (None, ""):
            return str(data["id"])
    return None
