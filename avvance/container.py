"""Composition root.

The only place that reads Settings. Every component receives its
configuration and collaborators through its constructor.
"""

from dataclasses import dataclass

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from avvance.api.fingerprint import CookieFingerprintProvider, FingerprintProvider
from avvance.api.security import BasicAuthVerifier, StatusTokenSigner
from avvance.application.cleanup import CleanupScheduler
from avvance.application.financing_service import FinancingService
from avvance.application.preapproval_service import PreApprovalService
from avvance.application.reconciler import StatusReconciler
from avvance.infrastructure.avvance_client import FinancingApiClient, PreApprovalApiClient
from avvance.infrastructure.config import AvvanceConfig, Settings
from avvance.infrastructure.database import create_engine, create_session_factory
from avvance.infrastructure.order_gateway import (
    HttpOrderGateway,
    InMemoryOrderGateway,
    OrderGateway,
)
from avvance.infrastructure.token_cache import TokenCache

logger = structlog.get_logger()


@dataclass
class Container:
    """Wired application components."""

    settings: Settings
    config: AvvanceConfig
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    token_cache: TokenCache
    financing_client: FinancingApiClient
    preapproval_client: PreApprovalApiClient
    orders: OrderGateway
    reconciler: StatusReconciler
    financing_service: FinancingService
    preapproval_service: PreApprovalService
    cleanup: CleanupScheduler
    webhook_auth: BasicAuthVerifier
    status_tokens: StatusTokenSigner
    fingerprints: FingerprintProvider

    async def close(self) -> None:
        """Release network and database resources."""
        self.cleanup.stop()
        await self.http_client.aclose()
        if isinstance(self.orders, HttpOrderGateway):
            await self.orders.close()
        await self.engine.dispose()


def build_order_gateway(settings: Settings) -> OrderGateway:
    """Choose the order store adapter from settings."""
    if settings.storefront_api_url:
        return HttpOrderGateway(
            base_url=settings.storefront_api_url,
            api_key=settings.storefront_api_key,
            return_url_template=settings.order_received_url_template,
        )
    logger.warning("No storefront API configured, using in-memory order store")
    return InMemoryOrderGateway(settings.order_received_url_template)


def build_container(
    settings: Settings,
    http_client: httpx.AsyncClient | None = None,
    orders: OrderGateway | None = None,
) -> Container:
    """Wire all components.

    Args:
        settings: Loaded settings.
        http_client: Client for Avvance calls; built from config if omitted.
        orders: Order gateway; chosen from settings if omitted.

    Returns:
        Container with every component constructed.
    """
    config = AvvanceConfig.from_settings(settings)
    engine = create_engine(settings.database_url, echo=settings.debug)
    session_factory = create_session_factory(engine)

    if http_client is None:
        http_client = httpx.AsyncClient(base_url=config.base_url, timeout=config.http_timeout)
    orders = orders or build_order_gateway(settings)

    token_cache = TokenCache(config, http_client)
    financing_client = FinancingApiClient(config, token_cache, http_client)
    preapproval_client = PreApprovalApiClient(config, token_cache, http_client)
    reconciler = StatusReconciler(session_factory, orders, financing_client)

    return Container(
        settings=settings,
        config=config,
        engine=engine,
        session_factory=session_factory,
        http_client=http_client,
        token_cache=token_cache,
        financing_client=financing_client,
        preapproval_client=preapproval_client,
        orders=orders,
        reconciler=reconciler,
        financing_service=FinancingService(
            config,
            session_factory,
            financing_client,
            reconciler,
            orders,
            store_name=settings.store_name,
            cart_url=settings.cart_url,
        ),
        preapproval_service=PreApprovalService(
            config,
            session_factory,
            preapproval_client,
            financing_client,
        ),
        cleanup=CleanupScheduler(
            session_factory,
            orders,
            session_ttl=config.session_ttl,
            interval_seconds=settings.cleanup_interval_seconds,
        ),
        webhook_auth=BasicAuthVerifier(settings.webhook_username, settings.webhook_password),
        status_tokens=StatusTokenSigner(settings.status_check_secret),
        fingerprints=CookieFingerprintProvider(
            cookie_name=settings.fingerprint_cookie_name,
            max_age_days=settings.fingerprint_cookie_max_age_days,
            secure=settings.fingerprint_cookie_secure,
        ),
    )
