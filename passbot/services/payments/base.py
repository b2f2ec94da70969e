from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Protocol

import aiohttp
import qrcode

# Gateway statuses meaning "money received" (compared uppercase).
PAID_STATUSES = frozenset({"PAID", "APPROVED", "CONFIRMED", "COMPLETED", "SUCESSO", "APROVADO"})

# async (key) -> value from app_settings, "" when unset
CredentialSource = Callable[[str], Awaitable[str]]


def is_paid_status(status: str | None) -> bool:
    return (status or "").strip().upper() in PAID_STATUSES


@dataclass(frozen=True)
class Charge:
    tx_id: str
    pay_code: str
    # PNG bytes of the Pix QR, if one could be produced
    qr_image: bytes | None = None


@dataclass(frozen=True)
class ChargeStatus:
    tx_id: str
    paid: bool
    raw_status: str


class PaymentGateway(Protocol):
    name: str

    async def create_charge(self, amount: Decimal, description: str) -> Charge: ...

    async def check_status(self, tx_id: str) -> ChargeStatus: ...


def render_qr_png(pay_code: str) -> bytes:
    img = qrcode.make(pay_code)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def qr_from_gateway(qr_base64: str | None, pay_code: str) -> bytes | None:
    """Prefer the gateway's QR image; render one locally otherwise."""
    if qr_base64:
        raw = qr_base64.split(",", 1)[1] if qr_base64.startswith("data:") else qr_base64
        try:
            return base64.b64decode("".join(raw.split()), validate=True)
        except ValueError:
            pass
    if pay_code:
        return render_qr_png(pay_code)
    return None


async def read_json_best_effort(resp: aiohttp.ClientResponse) -> dict[str, Any]:
    """Read JSON while staying resilient to broken/missing content-type."""
    try:
        data = await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        try:
            txt = await resp.text()
        except aiohttp.ClientError:
            txt = ""
        return {"_raw": txt}
    if not isinstance(data, dict):
        return {"_raw": data}
    return data


def money(amount: Decimal) -> float:
    # gateways take BRL as a JSON number with 2 decimals
    return float(Decimal(amount).quantize(Decimal("0.01")))
