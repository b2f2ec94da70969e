from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any
from uuid import uuid4

import aiohttp

from passbot.core.errors import ConfigurationError, GatewayAuthError, GatewayError
from passbot.services.payments.base import (
    Charge,
    ChargeStatus,
    CredentialSource,
    money,
    qr_from_gateway,
    read_json_best_effort,
)

log = logging.getLogger(__name__)


class MercadoPagoClient:
    """Mercado Pago payments API, Pix only.

    Docs: https://www.mercadopago.com.br/developers/en/reference/payments
    """

    name = "mercadopago"

    def __init__(
        self,
        *,
        credentials: CredentialSource,
        base_url: str = "https://api.mercadopago.com",
        notification_url: str | None = None,
        timeout_seconds: int = 15,
    ) -> None:
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._notification_url = notification_url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _headers(self) -> dict[str, str]:
        token = await self._credentials("mercadopago_access_token")
        if not token:
            raise ConfigurationError("Mercado Pago access token not configured")
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None, headers=None) -> dict[str, Any]:
        hdrs = await self._headers()
        if headers:
            hdrs.update(headers)
        url = f"{self._base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.request(method, url, json=json, headers=hdrs) as resp:
                    data = await read_json_best_effort(resp)
                    if resp.status in (401, 403):
                        raise GatewayAuthError(f"Mercado Pago {method} {path}: HTTP {resp.status}")
                    if resp.status >= 400:
                        msg = data.get("message") or data.get("_raw") or ""
                        raise GatewayError(f"Mercado Pago {method} {path} failed: HTTP {resp.status}: {str(msg)[:300]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayError(f"Mercado Pago {method} {path} failed: {e.__class__.__name__}") from e
        return data

    async def create_charge(self, amount: Decimal, description: str) -> Charge:
        body: dict[str, Any] = {
            "transaction_amount": money(amount),
            "description": description,
            "payment_method_id": "pix",
            "payer": {"email": "customer@example.com"},
        }
        if self._notification_url:
            body["notification_url"] = self._notification_url

        data = await self._request("POST", "/v1/payments", json=body, headers={"X-Idempotency-Key": str(uuid4())})

        tx_id = str(data.get("id") or "").strip()
        tx_data = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        pay_code = str(tx_data.get("qr_code") or "").strip()
        if not tx_id or not pay_code:
            raise GatewayError("Mercado Pago: payment created without Pix data")
        log.info("mercadopago_charge_created tx=%s amount=%s", tx_id, amount)
        return Charge(tx_id=tx_id, pay_code=pay_code, qr_image=qr_from_gateway(tx_data.get("qr_code_base64"), pay_code))

    async def check_status(self, tx_id: str) -> ChargeStatus:
        data = await self._request("GET", f"/v1/payments/{tx_id}")
        status = str(data.get("status") or "").strip() or "unknown"
        return ChargeStatus(tx_id=str(tx_id), paid=status.lower() == "approved", raw_status=status)
