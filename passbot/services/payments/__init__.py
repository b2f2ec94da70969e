from __future__ import annotations

import logging

from passbot.core.config import settings
from passbot.core.errors import ConfigurationError
from passbot.services.payments.base import Charge, ChargeStatus, PaymentGateway, is_paid_status
from passbot.services.payments.mercadopago import MercadoPagoClient
from passbot.services.payments.syncpay import SyncPayClient
from passbot.services.settings_cache import SettingsCache

log = logging.getLogger(__name__)

__all__ = [
    "Charge",
    "ChargeStatus",
    "GatewayRegistry",
    "PaymentGateway",
    "build_gateways",
    "is_paid_status",
]


class GatewayRegistry:
    """Gateways by name, plus which one issues new charges.

    The active backend is read from the `payment_provider` setting on every
    charge, so switching it takes effect within the cache TTL. Orders keep the
    name of the backend that issued them and are polled there.
    """

    def __init__(self, gateways: dict[str, PaymentGateway], *, cache: SettingsCache | None = None, default: str = "syncpay") -> None:
        self._gateways = dict(gateways)
        self._cache = cache
        self._default = default

    def get(self, name: str | None) -> PaymentGateway:
        gw = self._gateways.get((name or self._default).strip().lower())
        if gw is None:
            raise ConfigurationError(f"Unknown payment provider: {name!r}")
        return gw

    async def active(self) -> PaymentGateway:
        name = self._default
        if self._cache is not None:
            name = await self._cache.global_value("payment_provider", self._default)
        return self.get(name)


def build_gateways(cache: SettingsCache) -> GatewayRegistry:
    base = settings.public_base_url

    async def credentials(key: str) -> str:
        return await cache.global_value(key)

    syncpay = SyncPayClient(
        credentials=credentials,
        base_url=settings.syncpay_base_url,
        webhook_url=f"{base}/webhooks/syncpay" if base else None,
        env_client_key=settings.syncpay_client_key,
        env_client_secret=settings.syncpay_client_secret,
        timeout_seconds=settings.http_timeout_seconds,
        refresh_margin_seconds=settings.token_refresh_margin_seconds,
    )
    mercadopago = MercadoPagoClient(
        credentials=credentials,
        base_url=settings.mercadopago_base_url,
        notification_url=f"{base}/webhooks/mercadopago" if base else None,
        timeout_seconds=settings.http_timeout_seconds,
    )
    log.info("payment_gateways_ready default=%s", settings.payment_provider)
    return GatewayRegistry(
        {syncpay.name: syncpay, mercadopago.name: mercadopago},
        cache=cache,
        default=settings.payment_provider,
    )
