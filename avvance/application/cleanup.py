"""Expiry of stale financing sessions.

Onboarding links are valid for a fixed period. Sessions that are still
pending after that period, and whose order is unpaid, are moved to
link_expired and their orders cancelled. Each session is handled in its
own transaction and the status filter is applied by the UPDATE, so a
session that was authorized after the scan is never downgraded. An
authorization that arrives after the sweep still moves the session on
to authorized and reinstates the order.
"""

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from avvance.domain.events import EventSource
from avvance.domain.state_machines import FinancingStatus
from avvance.infrastructure.order_gateway import OrderGateway, OrderGatewayError
from avvance.infrastructure.session_store import OUTCOME_APPLIED, SessionStore

logger = structlog.get_logger()

EXPIRY_NOTE = "Avvance application link expired (30 days)"
SWEEP_JOB_ID = "expire_financing_sessions"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CleanupScheduler:
    """Periodic sweep of expired financing sessions.

    The sweep runs as an APScheduler interval job on the application's
    event loop. The first run happens one interval after start.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orders: OrderGateway,
        session_ttl: timedelta,
        interval_seconds: float = 86400,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize scheduler.

        Args:
            session_factory: Factory for database sessions.
            orders: Order gateway.
            session_ttl: Age after which a pending session expires.
            interval_seconds: Seconds between sweeps.
            clock: Source of "now".
        """
        self.session_factory = session_factory
        self.orders = orders
        self.session_ttl = session_ttl
        self.interval_seconds = interval_seconds
        self._clock = clock
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)

    async def run_once(self, now: datetime | None = None) -> list[str]:
        """Run one sweep.

        Args:
            now: Reference time; defaults to the clock.

        Returns:
            Ids of sessions moved to link_expired.
        """
        now = now or self._clock()
        async with self.session_factory() as db:
            candidates = await SessionStore(db).sweep_expired(self.session_ttl, now)

        expired: list[str] = []
        for session_id in candidates:
            try:
                if await self._expire(session_id, now):
                    expired.append(session_id)
            except (OrderGatewayError, SQLAlchemyError) as e:
                logger.error("Failed to expire session", session_id=session_id, error=str(e))

        logger.info("Cleanup sweep finished", candidates=len(candidates), expired=len(expired))
        return expired

    async def _expire(self, session_id: str, now: datetime) -> bool:
        async with self.session_factory() as db:
            store = SessionStore(db)
            record = await store.get(session_id)
            if record is None or FinancingStatus(record.status).is_terminal():
                return False
            order_id = record.order_id

            if await self.orders.is_paid(order_id):
                logger.info("Skipping expiry of paid order", session_id=session_id, order_id=order_id)
                return False

            if not await store.expire_if_pending(session_id):
                await db.rollback()
                return False

            await store.append_event(
                session_id,
                FinancingStatus.LINK_EXPIRED,
                EventSource.CLEANUP,
                OUTCOME_APPLIED,
                note=EXPIRY_NOTE,
                received_at=now,
            )
            await self.orders.cancel(order_id, EXPIRY_NOTE)
            await db.commit()

        logger.info("Financing session expired", session_id=session_id, order_id=order_id)
        return True

    async def sweep(self) -> None:
        """Scheduled job body; a failed sweep is logged and retried next interval."""
        try:
            await self.run_once()
        except SQLAlchemyError as e:
            logger.error("Cleanup sweep failed", error=str(e))

    def start(self) -> None:
        """Register the sweep as an interval job and start the scheduler."""
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=SWEEP_JOB_ID,
            name="Expire stale financing sessions",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Cleanup scheduler started", interval_seconds=self.interval_seconds)

    def stop(self) -> None:
        """Shut the scheduler down without waiting for a running sweep."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Cleanup scheduler stopped")
