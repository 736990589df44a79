"""Session store for financing sessions and pre-approval leads.

The caller owns the transaction: methods flush but never commit, so a
status change and its side effects can be committed or rolled back as
one unit.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from avvance.domain.events import EventSource
from avvance.domain.exceptions import DuplicateSessionError
from avvance.domain.state_machines import PENDING_STATUSES, FinancingStatus, LeadStatus
from avvance.infrastructure.models import (
    FinancingSessionEventModel,
    FinancingSessionModel,
    PreApprovalLeadModel,
    utcnow,
)

logger = structlog.get_logger()

# History entry outcomes
OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_ANOMALY = "anomaly"
OUTCOME_NOTED = "noted"
OUTCOME_FAILED = "failed"

_PENDING_VALUES = [s.value for s in PENDING_STATUSES]


class SessionStore:
    """Repository for financing session and lead persistence.

    Example usage:
        async with session_factory() as db:
            store = SessionStore(db)
            record = await store.find_by_correlation("app-guid")
            ...
            await db.commit()
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize store with database session.

        Args:
            session: Async SQLAlchemy session.
        """
        self.session = session

    # ========================================================================
    # Financing sessions
    # ========================================================================

    async def create(self, record: FinancingSessionModel) -> FinancingSessionModel:
        """Insert a new financing session.

        Args:
            record: Session to insert.

        Returns:
            The inserted session.

        Raises:
            DuplicateSessionError: If the application id or partner session
                id already exists. The transaction is rolled back.
        """
        self.session.add(record)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            key = record.application_id or record.partner_session_id
            raise DuplicateSessionError(key) from e
        return record

    async def get(self, session_id: str) -> FinancingSessionModel | None:
        """Get a session by primary key."""
        return await self.session.get(FinancingSessionModel, session_id)

    async def find_by_correlation(self, *identifiers: str) -> FinancingSessionModel | None:
        """Find a session by application id or partner session id.

        Identifiers are tried in order; the first match wins.

        Args:
            identifiers: Candidate application ids or partner session ids.

        Returns:
            Session if found, None otherwise.
        """
        candidates = [i for i in identifiers if i]
        if not candidates:
            return None

        query = select(FinancingSessionModel).where(
            or_(
                FinancingSessionModel.application_id.in_(candidates),
                FinancingSessionModel.partner_session_id.in_(candidates),
            )
        )
        result = await self.session.execute(query)
        matches = list(result.scalars().all())
        for identifier in candidates:
            for match in matches:
                if identifier in (match.application_id, match.partner_session_id):
                    return match
        return None

    async def update_status(
        self,
        session_id: str,
        new_status: FinancingStatus,
        expected_status: FinancingStatus | str,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """Compare-and-set the status of a session.

        Args:
            session_id: Session primary key.
            new_status: Status to write.
            expected_status: Status the row must still have.
            fields: Extra columns to write in the same statement.

        Returns:
            True if the row was updated, False if its status had changed.
        """
        expected = getattr(expected_status, "value", expected_status)
        values: dict[str, Any] = {"status": new_status.value, "updated_at": utcnow()}
        if fields:
            values.update(fields)

        stmt = (
            update(FinancingSessionModel)
            .where(
                FinancingSessionModel.id == session_id,
                FinancingSessionModel.status == expected,
            )
            .values(**values)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def touch(self, session_id: str, fields: dict[str, Any] | None = None) -> None:
        """Update last-modified time (and optional fields) without a transition."""
        values: dict[str, Any] = {"updated_at": utcnow()}
        if fields:
            values.update(fields)
        await self.session.execute(
            update(FinancingSessionModel)
            .where(FinancingSessionModel.id == session_id)
            .values(**values)
        )

    async def expire_if_pending(self, session_id: str) -> bool:
        """Move a session to link_expired only if it is still non-terminal.

        The status filter is evaluated by the UPDATE itself, so a session
        that became terminal after it was scanned is left alone.
        """
        stmt = (
            update(FinancingSessionModel)
            .where(
                FinancingSessionModel.id == session_id,
                FinancingSessionModel.status.in_(_PENDING_VALUES),
            )
            .values(status=FinancingStatus.LINK_EXPIRED.value, updated_at=utcnow())
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def sweep_expired(self, max_age: timedelta, now: datetime) -> list[str]:
        """List non-terminal sessions created before ``now - max_age``.

        Args:
            max_age: Session lifetime.
            now: Reference time.

        Returns:
            Candidate session ids, oldest first.
        """
        cutoff = now - max_age
        query = (
            select(FinancingSessionModel.id)
            .where(
                FinancingSessionModel.status.in_(_PENDING_VALUES),
                FinancingSessionModel.created_at < cutoff,
            )
            .order_by(FinancingSessionModel.created_at)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    # ========================================================================
    # History
    # ========================================================================

    async def append_event(
        self,
        session_id: str,
        status: FinancingStatus | str,
        source: EventSource,
        outcome: str,
        remote_status: str | None = None,
        note: str | None = None,
        payload: dict[str, Any] | None = None,
        received_at: datetime | None = None,
    ) -> FinancingSessionEventModel:
        """Append a history entry for a session."""
        entry = FinancingSessionEventModel(
            session_id=session_id,
            status=getattr(status, "value", status),
            remote_status=remote_status,
            source=source.value,
            outcome=outcome,
            note=note,
            payload=payload,
            received_at=received_at or utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def history(self, session_id: str) -> Sequence[FinancingSessionEventModel]:
        """Get history entries for a session in arrival order."""
        query = (
            select(FinancingSessionEventModel)
            .where(FinancingSessionEventModel.session_id == session_id)
            .order_by(FinancingSessionEventModel.id)
        )
        result = await self.session.execute(query)
        return result.scalars().all()

    # ========================================================================
    # Pre-approval leads
    # ========================================================================

    async def create_lead(self, lead: PreApprovalLeadModel) -> PreApprovalLeadModel:
        """Insert a new pre-approval lead.

        Raises:
            DuplicateSessionError: If the request id already exists.
        """
        self.session.add(lead)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            raise DuplicateSessionError(lead.request_id) from e
        return lead

    async def find_lead_by_request_id(self, request_id: str) -> PreApprovalLeadModel | None:
        """Get a lead by pre-approval request id."""
        query = select(PreApprovalLeadModel).where(PreApprovalLeadModel.request_id == request_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find_latest_by_fingerprint(self, fingerprint: str) -> PreApprovalLeadModel | None:
        """Get the most recent lead for a browser fingerprint."""
        query = (
            select(PreApprovalLeadModel)
            .where(PreApprovalLeadModel.browser_fingerprint == fingerprint)
            .order_by(PreApprovalLeadModel.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def update_lead(
        self,
        lead_id: str,
        expected_status: LeadStatus,
        values: dict[str, Any],
    ) -> bool:
        """Compare-and-set update of a lead.

        Args:
            lead_id: Lead primary key.
            expected_status: Status the row must still have.
            values: Columns to write.

        Returns:
            True if the row was updated.
        """
        stmt = (
            update(PreApprovalLeadModel)
            .where(
                PreApprovalLeadModel.id == lead_id,
                PreApprovalLeadModel.status == expected_status.value,
            )
            .values(updated_at=utcnow(), **values)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1
