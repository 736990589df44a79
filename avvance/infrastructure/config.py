"""Application configuration.

Settings are loaded from environment variables with sensible defaults.
Components never read ``Settings`` directly: the composition root turns
them into an immutable ``AvvanceConfig`` that is passed into every
constructor that needs it.
"""

import hashlib
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from pydantic_settings import BaseSettings

PRODUCTION = "production"
SANDBOX = "sandbox"

_BASE_URLS = {
    PRODUCTION: "https://alpha-api2.usbank.com",
    SANDBOX: "https://alpha-api.usbank.com",
}

_ROUTING_KEYS = {
    PRODUCTION: "az1",
    SANDBOX: "uat3",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API
    api_version: str = "0.1.0"
    debug: bool = False

    # Database
    database_url: str = "postgresql+asyncpg://avvance:avvance_dev_password@db:5432/avvance"

    # Avvance credentials
    avvance_environment: str = SANDBOX
    avvance_client_key: str = ""
    avvance_client_secret: str = ""
    avvance_merchant_id: str = ""
    avvance_hashed_merchant_id: str = ""
    avvance_base_url: str | None = None
    avvance_preapproval_application_id: str = "woo"

    # Webhook Basic auth credentials registered with Avvance
    webhook_username: str = ""
    webhook_password: str = ""

    # Authentication for admin endpoints
    admin_api_key: str = "dev-admin-key-change-in-production"

    # Signing secret for client-side status-check tokens
    status_check_secret: str = "dev-status-check-secret-change-in-production"

    # Storefront integration
    storefront_api_url: str | None = None
    storefront_api_key: str = ""
    store_name: str = "Avvance Store"
    cart_url: str = "https://shop.example.com/cart"
    order_received_url_template: str = "https://shop.example.com/checkout/order-received/{order_id}"

    # Financing limits
    min_order_amount: Decimal = Decimal("300")
    max_order_amount: Decimal = Decimal("25000")

    # Timeouts (seconds)
    http_timeout_seconds: float = 30.0
    status_timeout_seconds: float = 15.0

    # Token cache / price breakdown cache
    token_safety_buffer_seconds: int = 60
    price_breakdown_cache_seconds: int = 3600
    price_breakdown_cache_entries: int = 1024

    # Session lifecycle
    session_ttl_days: int = 30
    cleanup_enabled: bool = True
    cleanup_interval_seconds: int = 86400

    # Pre-approval fingerprint cookie
    fingerprint_cookie_name: str = "avvance_browser_id"
    fingerprint_cookie_max_age_days: int = 365
    fingerprint_cookie_secure: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@dataclass(frozen=True)
class ClientCredentials:
    """OAuth client credentials for the Avvance token endpoint."""

    client_key: str
    client_secret: str

    @property
    def cache_key(self) -> str:
        """Stable cache key derived from the client key."""
        digest = hashlib.sha256(self.client_key.encode()).hexdigest()
        return f"avvance_token_{digest[:32]}"


@dataclass(frozen=True)
class AvvanceConfig:
    """Immutable configuration passed into every Avvance component.

    Attributes:
        environment: ``production`` or ``sandbox``.
        base_url: Remote API base URL.
        credentials: OAuth client credentials.
        merchant_id: Avvance merchant identifier.
        hashed_merchant_id: Hashed merchant id used by pre-approval.
        preapproval_application_id: ``application-id`` header value.
        http_timeout: Timeout for regular calls.
        status_timeout: Timeout for notification-status calls.
        token_safety_buffer: Seconds subtracted from token lifetime.
        price_breakdown_cache_ttl: Seconds a price breakdown is cached.
        price_breakdown_cache_size: Most price breakdowns held at once.
        min_order_amount: Smallest financeable amount.
        max_order_amount: Largest financeable amount.
        session_ttl: Lifetime of an onboarding link.
    """

    environment: str
    base_url: str
    credentials: ClientCredentials
    merchant_id: str
    hashed_merchant_id: str = ""
    preapproval_application_id: str = "woo"
    http_timeout: float = 30.0
    status_timeout: float = 15.0
    token_safety_buffer: int = 60
    price_breakdown_cache_ttl: int = 3600
    price_breakdown_cache_size: int = 1024
    min_order_amount: Decimal = Decimal("300")
    max_order_amount: Decimal = Decimal("25000")
    session_ttl: timedelta = timedelta(days=30)

    partner_id: str = "CONVERGE"

    @property
    def routing_key(self) -> str:
        """Routing key for the configured environment."""
        return _ROUTING_KEYS.get(self.environment, _ROUTING_KEYS[SANDBOX])

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    @classmethod
    def from_settings(cls, settings: Settings) -> "AvvanceConfig":
        """Build the value object from loaded settings.

        Args:
            settings: Loaded application settings.

        Returns:
            AvvanceConfig instance.
        """
        environment = PRODUCTION if settings.avvance_environment == PRODUCTION else SANDBOX
        return cls(
            environment=environment,
            base_url=settings.avvance_base_url or _BASE_URLS[environment],
            credentials=ClientCredentials(
                client_key=settings.avvance_client_key,
                client_secret=settings.avvance_client_secret,
            ),
            merchant_id=settings.avvance_merchant_id,
            hashed_merchant_id=settings.avvance_hashed_merchant_id,
            preapproval_application_id=settings.avvance_preapproval_application_id,
            http_timeout=settings.http_timeout_seconds,
            status_timeout=settings.status_timeout_seconds,
            token_safety_buffer=settings.token_safety_buffer_seconds,
            price_breakdown_cache_ttl=settings.price_breakdown_cache_seconds,
            price_breakdown_cache_size=settings.price_breakdown_cache_entries,
            min_order_amount=settings.min_order_amount,
            max_order_amount=settings.max_order_amount,
            session_ttl=timedelta(days=settings.session_ttl_days),
        )


def get_settings() -> Settings:
    """Load settings from the environment."""
    return Settings()
