import os
from dataclasses import dataclass


def make_async_db_url(url: str) -> str:
    """Accepts Railway-style DATABASE_URL and returns sqlalchemy async url."""
    if url.startswith(("postgresql+asyncpg://", "sqlite+aiosqlite://")):
        return url
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://") :]
    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://") :]
    raise RuntimeError("Unsupported DATABASE_URL format")


@dataclass(frozen=True)
class Settings:
    database_url: str

    # HTTP surface (payment webhooks, telegram webhooks, operator actions)
    http_host: str = "0.0.0.0"
    http_port: int = 8080
    # public URL of this service; gateways push notifications here
    public_base_url: str = ""
    # checked against X-Telegram-Bot-Api-Secret-Token when set
    webhook_secret: str | None = None
    # operator actions are disabled when empty
    admin_token: str | None = None

    # Payments
    # syncpay | mercadopago (can be overridden at runtime by app_settings.payment_provider)
    payment_provider: str = "syncpay"
    syncpay_base_url: str = "https://api.syncpayments.com.br/api/partner/v1"
    syncpay_client_key: str | None = None
    syncpay_client_secret: str | None = None
    mercadopago_base_url: str = "https://api.mercadopago.com"
    token_refresh_margin_seconds: int = 300

    # Delivery
    likesff_base_url: str = "https://likesff.online/api/PASS"

    http_timeout_seconds: int = 15
    settings_cache_ttl_seconds: int = 30
    heartbeat_interval_seconds: int = 300
    sync_interval_seconds: int = 60

    # fallback when neither bot config nor app_settings define pass_price
    default_pass_price: str = "8.00"


def _load_settings() -> Settings:
    database_url_raw = os.getenv("DATABASE_URL", "").strip()
    if not database_url_raw:
        raise RuntimeError("DATABASE_URL is missing")

    return Settings(
        database_url=make_async_db_url(database_url_raw),
        http_host=os.getenv("HTTP_HOST", "0.0.0.0").strip(),
        http_port=int(os.getenv("HTTP_PORT") or os.getenv("PORT") or "8080"),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/"),
        webhook_secret=(os.getenv("WEBHOOK_SECRET") or "").strip() or None,
        admin_token=(os.getenv("ADMIN_TOKEN") or "").strip() or None,

        # Payments
        payment_provider=os.getenv("PAYMENT_PROVIDER", "syncpay").strip().lower(),
        syncpay_base_url=os.getenv(
            "SYNCPAY_BASE_URL", "https://api.syncpayments.com.br/api/partner/v1"
        ).strip().rstrip("/"),
        syncpay_client_key=(os.getenv("SYNCPAY_CLIENT_KEY") or "").strip() or None,
        syncpay_client_secret=(os.getenv("SYNCPAY_CLIENT_SECRET") or "").strip() or None,
        mercadopago_base_url=os.getenv("MERCADOPAGO_BASE_URL", "https://api.mercadopago.com").strip().rstrip("/"),
        token_refresh_margin_seconds=int(os.getenv("TOKEN_REFRESH_MARGIN_SECONDS", "300")),

        # Delivery
        likesff_base_url=os.getenv("LIKESFF_BASE_URL", "https://likesff.online/api/PASS").strip(),

        http_timeout_seconds=int(os.getenv("HTTP_TIMEOUT_SECONDS", "15")),
        settings_cache_ttl_seconds=int(os.getenv("SETTINGS_CACHE_TTL_SECONDS", "30")),
        heartbeat_interval_seconds=int(os.getenv("HEARTBEAT_INTERVAL_SECONDS", "300")),
        sync_interval_seconds=int(os.getenv("SYNC_INTERVAL_SECONDS", "60")),
        default_pass_price=os.getenv("DEFAULT_PASS_PRICE", "8.00").strip(),
    )


settings = _load_settings()
