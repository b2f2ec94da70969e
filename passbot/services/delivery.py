from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp

from passbot.core.errors import ConfigurationError, DeliveryError
from passbot.services.payments.base import CredentialSource, read_json_best_effort

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    nick: str | None = None
    message: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


def normalize_delivery_response(payload: dict[str, Any]) -> DeliveryOutcome:
    """LikesFF answers in several shapes; reduce them to one outcome.

    Success iff `error` is literally False, or `status == "success"`, or the
    message mentions success (pt/en).
    """
    msg = str(payload.get("msg") or payload.get("message") or "")
    status = str(payload.get("status") or "").strip().lower()

    success = (
        payload.get("error") is False
        or status == "success"
        or "sucesso" in msg.lower()
        or "success" in msg.lower()
    )

    nick = payload.get("nick") or payload.get("nickname")
    data = payload.get("data")
    if not nick and isinstance(data, dict):
        nick = data.get("nick") or data.get("nickname")

    return DeliveryOutcome(
        success=success,
        nick=str(nick) if nick else None,
        message=msg,
        payload=payload,
    )


class DeliveryProvider(Protocol):
    async def send_pass(self, player_id: str) -> DeliveryOutcome: ...


class LikesFFClient:
    """Booyah pass fulfillment via likesff.online."""

    def __init__(self, *, credentials: CredentialSource, base_url: str = "https://likesff.online/api/PASS", timeout_seconds: int = 15) -> None:
        self._credentials = credentials
        self._base_url = base_url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def _params(self, mode: str) -> dict[str, str]:
        key = await self._credentials("likesff_api_key")
        if not key:
            raise ConfigurationError("LikesFF API key not configured")
        params = {"mode": mode, "key": key}
        email = await self._credentials("likesff_email")
        if email:
            params["email"] = email
        return params

    async def _get(self, params: dict[str, str]) -> dict[str, Any]:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(self._base_url, params=params) as resp:
                    data = await read_json_best_effort(resp)
                    if resp.status >= 400:
                        raise DeliveryError(f"LikesFF HTTP {resp.status}: {str(data.get('msg') or data.get('_raw') or '')[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeliveryError(f"LikesFF request failed: {e.__class__.__name__}") from e
        return data

    async def send_pass(self, player_id: str) -> DeliveryOutcome:
        params = await self._params("send")
        params["id"] = str(player_id)
        outcome = normalize_delivery_response(await self._get(params))
        log.info("likesff_send player=%s success=%s nick=%s", player_id, outcome.success, outcome.nick)
        return outcome

    async def balance(self) -> dict[str, Any]:
        return await self._get(await self._params("info"))
