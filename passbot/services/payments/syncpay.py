from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Callable

import aiohttp

from passbot.core.errors import ConfigurationError, GatewayAuthError, GatewayError
from passbot.services.payments.base import (
    Charge,
    ChargeStatus,
    CredentialSource,
    is_paid_status,
    money,
    qr_from_gateway,
    read_json_best_effort,
)

log = logging.getLogger(__name__)


class SyncPayClient:
    """SyncPay partner API (Pix cash-in).

    Auth is a client-credentials exchange returning a short-lived bearer token;
    the token is kept in memory until `expires_in - refresh_margin` seconds.
    """

    name = "syncpay"

    def __init__(
        self,
        *,
        credentials: CredentialSource,
        base_url: str = "https://api.syncpayments.com.br/api/partner/v1",
        webhook_url: str | None = None,
        env_client_key: str | None = None,
        env_client_secret: str | None = None,
        timeout_seconds: int = 15,
        refresh_margin_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._webhook_url = webhook_url
        self._env_client_key = env_client_key
        self._env_client_secret = env_client_secret
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._margin = refresh_margin_seconds
        self._clock = clock

        self._token: str | None = None
        self._token_expires_at: float = 0.0

    async def _client_credentials(self) -> tuple[str, str]:
        client_id = await self._credentials("syncpay_client_key") or self._env_client_key
        client_secret = await self._credentials("syncpay_client_secret") or self._env_client_secret
        if not client_id or not client_secret:
            raise ConfigurationError("SyncPay client key/secret not configured")
        return client_id, client_secret

    async def _get_token(self) -> str:
        if self._token and (self._token_expires_at - self._clock()) > self._margin:
            return self._token

        client_id, client_secret = await self._client_credentials()
        url = f"{self._base_url}/auth-token"
        body = {"client_id": client_id, "client_secret": client_secret}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(url, json=body, headers={"Accept": "application/json"}) as resp:
                    data = await read_json_best_effort(resp)
                    if resp.status >= 400:
                        raise GatewayAuthError(f"SyncPay auth failed: HTTP {resp.status}: {_safe(data)}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayAuthError(f"SyncPay auth failed: {e.__class__.__name__}") from e

        token = str(data.get("access_token") or "").strip()
        if not token:
            raise GatewayAuthError("SyncPay auth: response without access_token")
        try:
            expires_in = int(data.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600

        self._token = token
        self._token_expires_at = self._clock() + expires_in
        log.info("syncpay_token_refreshed expires_in=%s", expires_in)
        return token

    async def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> dict[str, Any]:
        token = await self._get_token()
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        url = f"{self._base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.request(method, url, json=json, headers=headers) as resp:
                    data = await read_json_best_effort(resp)
                    if resp.status == 401:
                        # token revoked early; next call re-authenticates
                        self._token = None
                        raise GatewayAuthError(f"SyncPay {method} {path}: HTTP 401")
                    if resp.status >= 400:
                        raise GatewayError(f"SyncPay {method} {path} failed: HTTP {resp.status}: {_safe(data)}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayError(f"SyncPay {method} {path} failed: {e.__class__.__name__}") from e
        return data

    async def create_charge(self, amount: Decimal, description: str) -> Charge:
        body: dict[str, Any] = {"amount": money(amount), "description": description}
        if self._webhook_url:
            body["webhook_url"] = self._webhook_url
        data = await self._request("POST", "/cash-in", json=body)

        tx_id = str(data.get("identifier") or data.get("id") or "").strip()
        pay_code = str(data.get("pix_code") or data.get("qr_code") or "").strip()
        if not tx_id or not pay_code:
            raise GatewayError(f"SyncPay cash-in: unexpected response: {_safe(data)}")
        log.info("syncpay_charge_created tx=%s amount=%s", tx_id, amount)
        return Charge(tx_id=tx_id, pay_code=pay_code, qr_image=qr_from_gateway(data.get("qr_code_base64"), pay_code))

    async def check_status(self, tx_id: str) -> ChargeStatus:
        data = await self._request("GET", f"/cash-in/{tx_id}")
        body = data.get("data") if isinstance(data.get("data"), dict) else data
        status = str(body.get("status") or "").strip() or "UNKNOWN"
        return ChargeStatus(tx_id=str(tx_id), paid=is_paid_status(status), raw_status=status)


def _safe(data: dict[str, Any]) -> str:
    # error bodies end up in user-visible messages; keep them short and token-free
    data = {k: v for k, v in data.items() if "token" not in str(k).lower() and "secret" not in str(k).lower()}
    return str(data)[:300]
