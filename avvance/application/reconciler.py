"""Status reconciliation for financing sessions and pre-approval leads.

Webhooks and manual polls both produce a StatusUpdate and hand it to
``StatusReconciler.apply``, the single state-transition entry point:

1. Resolve the session by any correlation id (not found is an error and
   nothing is written).
2. Informational statuses (link expiry reported by the provider) add an
   order note and history without changing status.
3. Unknown remote statuses and regressions are recorded as anomalies.
4. A status equal to the current one is a duplicate: history only.
5. Otherwise compare-and-set the new status, run its side effects and
   append history, all in one transaction. A side-effect failure rolls
   the transition back and is recorded in a separate transaction.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from avvance.domain.events import PreApprovalLeadEvent, StatusUpdate
from avvance.domain.exceptions import (
    ConcurrentUpdateError,
    SessionNotFoundError,
    SideEffectError,
)
from avvance.domain.pii import mask_email, mask_name, mask_phone, redact_payload
from avvance.domain.state_machines import (
    STATUS_MESSAGES,
    FinancingStatus,
    LeadStatus,
    informational_note,
    map_remote_lead_status,
    map_remote_loan_status,
)
from avvance.infrastructure.avvance_client import FinancingApiClient
from avvance.infrastructure.models import FinancingSessionModel
from avvance.infrastructure.order_gateway import OrderGateway, OrderGatewayError
from avvance.infrastructure.session_store import (
    OUTCOME_ANOMALY,
    OUTCOME_APPLIED,
    OUTCOME_DUPLICATE,
    OUTCOME_FAILED,
    OUTCOME_NOTED,
    SessionStore,
)

logger = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 3

REINSTATED_NOTE = "Avvance payment authorized after the application link expired. Order reinstated."
SETTLED_UNPAID_NOTE = (
    "Avvance reports the payment settled but the order is not paid. Review the order manually."
)


class ReconcileOutcome(str, Enum):
    """What an update did to the target record."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ANOMALY = "anomaly"
    NOTED = "noted"


@dataclass
class ReconciliationResult:
    """Result of reconciling one update.

    Attributes:
        record_id: Session or lead primary key.
        order_id: External order id (sessions only).
        status: Status after the update.
        outcome: Applied, duplicate, anomaly or noted.
        message: Human-readable summary.
    """

    record_id: str
    status: str
    outcome: ReconcileOutcome
    message: str
    order_id: str | None = None

    @property
    def changed(self) -> bool:
        return self.outcome == ReconcileOutcome.APPLIED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusReconciler:
    """Applies status updates with per-session atomicity.

    Compare-and-set on the current status guards against a webhook and a
    poll applying the same transition twice. A lost race is retried a
    bounded number of times, re-reading the session each time.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orders: OrderGateway,
        financing_client: FinancingApiClient | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize reconciler.

        Args:
            session_factory: Factory for database sessions.
            orders: Order gateway used for side effects.
            financing_client: Client used by the poll producer.
            max_attempts: Compare-and-set attempts before giving up.
            clock: Source of "now" for poll timestamps.
        """
        self.session_factory = session_factory
        self.orders = orders
        self.financing_client = financing_client
        self.max_attempts = max_attempts
        self._clock = clock

    # ========================================================================
    # Financing sessions
    # ========================================================================

    async def apply(self, update: StatusUpdate) -> ReconciliationResult:
        """Apply a loan status update to its session.

        Args:
            update: Status observation from a webhook or a poll.

        Returns:
            ReconciliationResult describing the effect.

        Raises:
            SessionNotFoundError: No session matches the correlation ids.
            SideEffectError: An order side effect failed; nothing committed.
            ConcurrentUpdateError: Compare-and-set kept losing.
        """
        log = logger.bind(
            correlation_ids=list(update.correlation_ids),
            remote_status=update.remote_status,
            source=update.source.value,
        )

        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as db:
                store = SessionStore(db)
                record = await store.find_by_correlation(*update.correlation_ids)
                if record is None:
                    log.warning("No financing session for status update")
                    raise SessionNotFoundError(list(update.correlation_ids))

                result = await self._apply_to_record(db, store, record, update, log)
                if result is not None:
                    return result

            log.info("Session changed concurrently, retrying", attempt=attempt)

        raise ConcurrentUpdateError(update.correlation_ids[0], self.max_attempts)

    async def _apply_to_record(
        self,
        db: AsyncSession,
        store: SessionStore,
        record: FinancingSessionModel,
        update: StatusUpdate,
        log: Any,
    ) -> ReconciliationResult | None:
        """Apply an update inside one transaction; None means the CAS lost."""
        session_id = record.id
        order_id = record.order_id
        current = FinancingStatus(record.status)
        target = map_remote_loan_status(update.remote_status)
        log = log.bind(session_id=session_id, current_status=current.value)

        order_note = informational_note(update.remote_status)
        if order_note is not None:
            return await self._record_informational(
                db, store, record, current, update, order_note, log
            )

        if target is None:
            note = f"Unrecognized remote status {update.remote_status}"
            log.warning("Status update anomaly", reason="unknown_status")
            return await self._record_only(db, store, record, current, update, OUTCOME_ANOMALY, note)

        if target == current:
            log.info("Duplicate status update")
            return await self._record_only(
                db, store, record, current, update, OUTCOME_DUPLICATE, "Duplicate status event"
            )

        if not current.can_transition_to(target):
            note = f"Ignored transition from {current.value} to {target.value}"
            log.warning("Status update anomaly", reason="invalid_transition", target=target.value)
            return await self._record_only(db, store, record, current, update, OUTCOME_ANOMALY, note)

        fields: dict[str, Any] = {"last_remote_status": update.remote_status}
        if target.is_terminal_success():
            if update.payment_transaction_id:
                fields["payment_transaction_id"] = update.payment_transaction_id
            if update.approval_code:
                fields["approval_code"] = update.approval_code

        if not await store.update_status(session_id, target, current, fields):
            await db.rollback()
            return None

        try:
            note = await self._run_side_effects(record, current, target, update, log)
        except OrderGatewayError as e:
            await db.rollback()
            log.error("Status side effect failed", target=target.value, error=str(e))
            await self._record_failure(
                session_id, current, update, f"Side effect for {target.value} failed: {e}"
            )
            raise SideEffectError(session_id, target.value, str(e)) from e

        await store.append_event(
            session_id,
            target,
            update.source,
            OUTCOME_APPLIED,
            remote_status=update.remote_status,
            note=note,
            payload=update.payload,
            received_at=update.received_at,
        )
        await db.commit()

        log.info("Financing status updated", new_status=target.value)
        return ReconciliationResult(
            record_id=session_id,
            order_id=order_id,
            status=target.value,
            outcome=ReconcileOutcome.APPLIED,
            message=note,
        )

    async def _record_only(
        self,
        db: AsyncSession,
        store: SessionStore,
        record: FinancingSessionModel,
        current: FinancingStatus,
        update: StatusUpdate,
        outcome: str,
        note: str,
    ) -> ReconciliationResult:
        """Append history without changing status."""
        await store.append_event(
            record.id,
            current,
            update.source,
            outcome,
            remote_status=update.remote_status,
            note=note,
            payload=update.payload,
            received_at=update.received_at,
        )
        await store.touch(record.id)
        await db.commit()
        return ReconciliationResult(
            record_id=record.id,
            order_id=record.order_id,
            status=current.value,
            outcome=ReconcileOutcome(outcome),
            message=note,
        )

    async def _record_informational(
        self,
        db: AsyncSession,
        store: SessionStore,
        record: FinancingSessionModel,
        current: FinancingStatus,
        update: StatusUpdate,
        order_note: str,
        log: Any,
    ) -> ReconciliationResult:
        """Note a provider status on an unpaid order; the session status is kept."""
        session_id = record.id
        order_id = record.order_id
        try:
            if not await self.orders.is_paid(order_id):
                await self.orders.add_note(order_id, order_note)
        except OrderGatewayError as e:
            await db.rollback()
            log.error("Order note failed", error=str(e))
            await self._record_failure(
                session_id, current, update, f"Order note for {update.remote_status} failed: {e}"
            )
            raise SideEffectError(session_id, update.remote_status, str(e)) from e

        log.info("Informational status update", note=order_note)
        return await self._record_only(
            db, store, record, current, update, OUTCOME_NOTED, order_note
        )

    async def _run_side_effects(
        self,
        record: FinancingSessionModel,
        current: FinancingStatus,
        target: FinancingStatus,
        update: StatusUpdate,
        log: Any,
    ) -> str:
        """Run order side effects for a transition and return the history note."""
        order_id = record.order_id
        message = STATUS_MESSAGES[target]

        if target == FinancingStatus.AUTHORIZED:
            transaction_id = update.payment_transaction_id
            if await self.orders.mark_paid(order_id, transaction_id):
                await self.orders.add_note(
                    order_id,
                    f"Avvance payment authorized. Transaction ID: {transaction_id or 'N/A'}",
                )
            if current == FinancingStatus.LINK_EXPIRED:
                log.warning("Authorization after link expiry", order_id=order_id)
                await self.orders.add_note(order_id, REINSTATED_NOTE)
            return f"{message}. Transaction ID: {transaction_id or 'N/A'}"

        if target == FinancingStatus.SETTLED:
            if not await self.orders.is_paid(order_id):
                log.warning(
                    "Status update anomaly", reason="settled_unpaid_order", order_id=order_id
                )
                await self.orders.add_note(order_id, SETTLED_UNPAID_NOTE)
            return message

        if target in (FinancingStatus.DENIED, FinancingStatus.SYSTEM_ERROR):
            if not await self.orders.is_paid(order_id):
                await self.orders.cancel(order_id, message)
            return message

        return message

    async def _record_failure(
        self,
        session_id: str,
        current: FinancingStatus,
        update: StatusUpdate,
        note: str,
    ) -> None:
        """Record a failed side effect in its own transaction."""
        try:
            async with self.session_factory() as db:
                await SessionStore(db).append_event(
                    session_id,
                    current,
                    update.source,
                    OUTCOME_FAILED,
                    remote_status=update.remote_status,
                    note=note,
                    payload=update.payload,
                    received_at=update.received_at,
                )
                await db.commit()
        except SQLAlchemyError:
            logger.exception("Failed to record side effect failure", session_id=session_id)

    # ========================================================================
    # Poll producer
    # ========================================================================

    async def poll(self, session_ref: str) -> ReconciliationResult:
        """Fetch the live status of a session and apply it.

        Args:
            session_ref: Partner session id or application id.

        Returns:
            ReconciliationResult from ``apply``.

        Raises:
            SessionNotFoundError: Unknown session reference.
            AvvanceApiError: The status call failed.
            MalformedEventError: The status response has no loan status.
        """
        if self.financing_client is None:
            raise RuntimeError("Polling requires a financing API client")

        async with self.session_factory() as db:
            record = await SessionStore(db).find_by_correlation(session_ref)
            if record is None:
                raise SessionNotFoundError([session_ref])
            application_id = record.application_id
            partner_session_id = record.partner_session_id

        response = await self.financing_client.get_notification_status(
            application_id or partner_session_id
        )
        update = StatusUpdate.from_status_response(
            [application_id, partner_session_id], response, self._clock()
        )
        return await self.apply(update)

    # ========================================================================
    # Pre-approval leads
    # ========================================================================

    async def reconcile_preapproval(self, event: PreApprovalLeadEvent) -> ReconciliationResult:
        """Apply a pre-approval lead webhook.

        Contact details are masked and the payload redacted before they
        are stored. A declined lead never keeps a maximum amount.

        Raises:
            SessionNotFoundError: Unknown pre-approval request id.
            ConcurrentUpdateError: Compare-and-set kept losing.
        """
        log = logger.bind(request_id=event.request_id, remote_status=event.remote_status)

        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as db:
                store = SessionStore(db)
                lead = await store.find_lead_by_request_id(event.request_id)
                if lead is None:
                    log.warning("No pre-approval lead for event")
                    raise SessionNotFoundError([event.request_id])

                lead_key = lead.id
                current = LeadStatus(lead.status)
                target = map_remote_lead_status(event.remote_status)
                values: dict[str, Any] = {
                    "remote_status": event.remote_status or None,
                    "lead_id": event.lead_id or lead.lead_id,
                    "customer_name": mask_name(event.customer_name) or lead.customer_name,
                    "customer_email": mask_email(event.customer_email) or lead.customer_email,
                    "customer_phone": mask_phone(event.customer_phone) or lead.customer_phone,
                    "expires_at": event.expires_at or lead.expires_at,
                    "webhook_payload": redact_payload(event.details),
                }

                if target is None:
                    log.warning("Pre-approval anomaly", reason="unknown_status")
                    outcome = ReconcileOutcome.ANOMALY
                    target = current
                elif current.is_terminal() and target != current:
                    log.warning(
                        "Pre-approval anomaly",
                        reason="terminal_lead",
                        current_status=current.value,
                    )
                    return ReconciliationResult(
                        record_id=lead_key,
                        status=current.value,
                        outcome=ReconcileOutcome.ANOMALY,
                        message=f"Lead already {current.value}",
                    )
                else:
                    outcome = (
                        ReconcileOutcome.DUPLICATE if target == current else ReconcileOutcome.APPLIED
                    )
                    values["status"] = target.value
                    if target == LeadStatus.APPROVED:
                        if event.max_amount is None:
                            log.warning("Pre-approval anomaly", reason="missing_max_amount")
                        values["max_amount"] = (
                            event.max_amount if event.max_amount is not None else lead.max_amount
                        )
                    else:
                        values["max_amount"] = None

                if not await store.update_lead(lead_key, current, values):
                    await db.rollback()
                    log.info("Lead changed concurrently, retrying", attempt=attempt)
                    continue

                await db.commit()
                log.info("Pre-approval lead updated", status=target.value, outcome=outcome.value)
                return ReconciliationResult(
                    record_id=lead_key,
                    status=target.value,
                    outcome=outcome,
                    message=f"Lead {target.value}",
                )

        raise ConcurrentUpdateError(event.request_id, self.max_attempts)
