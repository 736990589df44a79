"""Pre-approval service.

Anonymous shoppers can check how much they could finance before they
reach checkout. Leads are keyed by a browser fingerprint supplied by the
caller; how the fingerprint is stored on the client is not a concern of
this service.
"""

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from avvance.domain.exceptions import OrderAmountOutOfRangeError, PreApprovalNotConfiguredError
from avvance.domain.state_machines import LeadStatus
from avvance.infrastructure.avvance_client import FinancingApiClient, PreApprovalApiClient
from avvance.infrastructure.config import AvvanceConfig
from avvance.infrastructure.models import PreApprovalLeadModel, as_utc
from avvance.infrastructure.session_store import SessionStore

logger = structlog.get_logger()

SESSION_ID_PREFIX = "avv_"


def generate_session_id() -> str:
    return SESSION_ID_PREFIX + uuid.uuid4().hex


@dataclass
class PreApprovalStart:
    """Result of starting a pre-approval."""

    request_id: str
    session_id: str
    onboarding_url: str


@dataclass
class PreApprovalSummary:
    """What the storefront may show about a shopper's pre-approval."""

    has_lead: bool
    approved: bool = False
    status: str | None = None
    max_amount: Decimal | None = None
    expires_at: datetime | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PreApprovalService:
    """Pre-approval and price-breakdown operations."""

    def __init__(
        self,
        config: AvvanceConfig,
        session_factory: async_sessionmaker[AsyncSession],
        client: PreApprovalApiClient,
        financing_client: FinancingApiClient,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.client = client
        self.financing_client = financing_client
        self._clock = clock

    async def start_preapproval(
        self,
        fingerprint: str,
        session_id: str | None = None,
    ) -> PreApprovalStart:
        """Request a pre-approval link and store a pending lead.

        Args:
            fingerprint: Browser fingerprint token.
            session_id: Local session id; generated when omitted.

        Returns:
            PreApprovalStart with the onboarding URL.

        Raises:
            PreApprovalNotConfiguredError: No hashed merchant id configured.
            AvvanceApiError: The pre-approval call failed.
        """
        if not self.config.hashed_merchant_id:
            raise PreApprovalNotConfiguredError()

        session_id = session_id or generate_session_id()
        result = await self.client.create_preapproval(session_id, self.config.hashed_merchant_id)

        async with self.session_factory() as db:
            await SessionStore(db).create_lead(
                PreApprovalLeadModel(
                    request_id=result.request_id,
                    session_id=session_id,
                    browser_fingerprint=fingerprint,
                    onboarding_url=result.onboarding_url,
                    status=LeadStatus.PENDING.value,
                    created_at=self._clock(),
                )
            )
            await db.commit()

        logger.info("Pre-approval lead created", request_id=result.request_id)
        return PreApprovalStart(
            request_id=result.request_id,
            session_id=session_id,
            onboarding_url=result.onboarding_url,
        )

    async def current_preapproval(self, fingerprint: str) -> PreApprovalSummary:
        """Summarize the latest lead for a fingerprint.

        A lead counts as approved only when its status is approved, it
        carries a positive maximum amount and it has not expired.
        """
        async with self.session_factory() as db:
            lead = await SessionStore(db).find_latest_by_fingerprint(fingerprint)

        if lead is None:
            return PreApprovalSummary(has_lead=False)

        expires_at = as_utc(lead.expires_at)
        approved = (
            lead.status == LeadStatus.APPROVED.value
            and lead.max_amount is not None
            and lead.max_amount > 0
            and (expires_at is None or expires_at > self._clock())
        )
        return PreApprovalSummary(
            has_lead=True,
            approved=approved,
            status=lead.status,
            max_amount=lead.max_amount if approved else None,
            expires_at=expires_at,
        )

    async def price_breakdown(
        self, amount: Decimal, bypass_cache: bool = False
    ) -> dict[str, Any]:
        """Get installment options for an amount within the financeable range.

        Raises:
            OrderAmountOutOfRangeError: Amount outside the financeable range.
            AvvanceApiError: The price-breakdown call failed.
        """
        if amount < self.config.min_order_amount or amount > self.config.max_order_amount:
            raise OrderAmountOutOfRangeError(
                amount, self.config.min_order_amount, self.config.max_order_amount
            )
        return await self.financing_client.get_price_breakdown(amount, bypass_cache=bypass_cache)
