"""Financing session service.

Opens financing applications for orders, answers the manual status
check used by the checkout page, and processes void/refund requests.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from avvance.application.reconciler import StatusReconciler
from avvance.domain.events import EventSource
from avvance.domain.exceptions import (
    DomainError,
    InvalidRefundAmountError,
    InvalidRefundStateError,
    OrderAmountOutOfRangeError,
    SessionNotFoundError,
)
from avvance.domain.state_machines import FinancingStatus
from avvance.infrastructure.avvance_client import FinancingApiClient, OrderDetails
from avvance.infrastructure.config import AvvanceConfig
from avvance.infrastructure.errors import AvvanceApiError
from avvance.infrastructure.models import FinancingSessionModel
from avvance.infrastructure.order_gateway import OrderGateway, OrderGatewayError
from avvance.infrastructure.session_store import OUTCOME_APPLIED, SessionStore

logger = structlog.get_logger()


class CheckState(str, Enum):
    """Answer given to the checkout page's status poll."""

    REDIRECT = "redirect"
    PENDING = "pending"
    DECLINED = "declined"


@dataclass
class FinancingStart:
    """Result of opening a financing application."""

    session_id: str
    session_ref: str
    order_id: str
    application_id: str | None
    onboarding_url: str


@dataclass
class StatusCheckResult:
    """Result of a manual status check."""

    state: CheckState
    status: str
    redirect_url: str | None = None
    message: str | None = None


@dataclass
class RefundResult:
    """Result of a void or refund."""

    session_id: str
    action: str
    amount: Decimal
    status: str
    response: dict[str, Any]


class FinancingService:
    """Financing session operations."""

    def __init__(
        self,
        config: AvvanceConfig,
        session_factory: async_sessionmaker[AsyncSession],
        client: FinancingApiClient,
        reconciler: StatusReconciler,
        orders: OrderGateway,
        store_name: str = "",
        cart_url: str = "",
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.client = client
        self.reconciler = reconciler
        self.orders = orders
        self.store_name = store_name
        self.cart_url = cart_url

    def _check_amount(self, amount: Decimal) -> None:
        if amount < self.config.min_order_amount or amount > self.config.max_order_amount:
            raise OrderAmountOutOfRangeError(
                amount, self.config.min_order_amount, self.config.max_order_amount
            )

    async def start_financing(self, order: OrderDetails) -> FinancingStart:
        """Open a financing application and persist its session.

        Args:
            order: Order to finance.

        Returns:
            FinancingStart with the onboarding URL.

        Raises:
            OrderAmountOutOfRangeError: Order total outside the financeable range.
            AvvanceApiError: The create call failed.
            DuplicateSessionError: The returned identifiers are already stored.
        """
        self._check_amount(order.amount)
        if not order.description:
            order = replace(order, description=f"Order #{order.order_id} from {self.store_name}")
        if not order.return_error_url:
            order = replace(order, return_error_url=self.cart_url)

        application = await self.client.create_financing_request(order)

        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            store = SessionStore(db)
            record = await store.create(
                FinancingSessionModel(
                    order_id=order.order_id,
                    application_id=application.application_id,
                    partner_session_id=application.partner_session_id,
                    onboarding_url=application.onboarding_url,
                    status=FinancingStatus.CREATED.value,
                    amount=order.amount,
                    created_at=now,
                    updated_at=now,
                    expires_at=now + self.config.session_ttl,
                )
            )
            await store.append_event(
                record.id,
                FinancingStatus.CREATED,
                EventSource.CREATE,
                OUTCOME_APPLIED,
                note="Financing application created",
                received_at=now,
            )
            await db.commit()
            session_id = record.id

        logger.info(
            "Financing session created",
            session_id=session_id,
            order_id=order.order_id,
            application_id=application.application_id,
        )

        try:
            await self.orders.add_note(
                order.order_id,
                "Avvance financing application created. "
                f"Application ID: {application.application_id or 'N/A'}",
            )
        except OrderGatewayError as e:
            logger.warning("Could not add order note", order_id=order.order_id, error=str(e))

        return FinancingStart(
            session_id=session_id,
            session_ref=application.partner_session_id,
            order_id=order.order_id,
            application_id=application.application_id,
            onboarding_url=application.onboarding_url,
        )

    async def _load(self, session_ref: str) -> FinancingSessionModel:
        async with self.session_factory() as db:
            record = await SessionStore(db).find_by_correlation(session_ref)
        if record is None:
            raise SessionNotFoundError([session_ref])
        return record

    async def check_status(self, session_ref: str) -> StatusCheckResult:
        """Answer a manual status check, polling the provider if needed.

        Args:
            session_ref: Partner session id.

        Returns:
            StatusCheckResult (redirect, pending or declined).

        Raises:
            SessionNotFoundError: Unknown session reference.
            AvvanceApiError: The status call failed.
            DomainError: Reconciliation failed.
        """
        record = await self._load(session_ref)
        status = FinancingStatus(record.status)

        if await self.orders.is_paid(record.order_id):
            return StatusCheckResult(
                state=CheckState.REDIRECT,
                status=status.value,
                redirect_url=self.orders.return_url(record.order_id),
            )
        if status.is_terminal():
            return self._result_for(status, record.order_id)

        result = await self.reconciler.poll(session_ref)
        logger.info(
            "Manual status check",
            session_id=record.id,
            status=result.status,
            outcome=result.outcome.value,
        )
        return self._result_for(FinancingStatus(result.status), record.order_id)

    def _result_for(self, status: FinancingStatus, order_id: str) -> StatusCheckResult:
        if status.is_terminal_success():
            return StatusCheckResult(
                state=CheckState.REDIRECT,
                status=status.value,
                redirect_url=self.orders.return_url(order_id),
            )
        if status.is_terminal_failure():
            return StatusCheckResult(
                state=CheckState.DECLINED,
                status=status.value,
                message="Your financing application was not approved. "
                "Please choose another payment method.",
            )
        return StatusCheckResult(state=CheckState.PENDING, status=status.value)

    async def refund(self, session_ref: str, amount: Decimal | None = None) -> RefundResult:
        """Void or refund a financed order.

        The status is refreshed through the poll path first; if that fails
        the stored status is used. Settled sessions are refunded by amount,
        authorized ones are voided in full.

        Args:
            session_ref: Partner session id or application id.
            amount: Refund amount; defaults to the financed amount.

        Returns:
            RefundResult.

        Raises:
            SessionNotFoundError: Unknown session reference.
            InvalidRefundStateError: Session is neither authorized nor settled.
            InvalidRefundAmountError: Amount is not within the financed amount.
            AvvanceApiError: The void/refund call failed.
        """
        record = await self._load(session_ref)

        try:
            await self.reconciler.poll(session_ref)
        except (AvvanceApiError, DomainError) as e:
            logger.warning(
                "Status refresh before refund failed, using stored status",
                session_id=record.id,
                error=str(e),
            )
        record = await self._load(session_ref)
        status = FinancingStatus(record.status)

        if status == FinancingStatus.SETTLED:
            refund_amount = amount if amount is not None else record.amount
            if refund_amount <= 0 or refund_amount > record.amount:
                raise InvalidRefundAmountError(refund_amount, record.amount)
            response = await self.client.refund_transaction(record.partner_session_id, refund_amount)
            action = "refund"
        elif status == FinancingStatus.AUTHORIZED:
            refund_amount = record.amount
            response = await self.client.void_transaction(record.partner_session_id)
            action = "void"
        else:
            raise InvalidRefundStateError(record.id, status.value)

        note = f"Avvance {action} of ${refund_amount:,.2f} processed"
        async with self.session_factory() as db:
            await SessionStore(db).append_event(
                record.id,
                status,
                EventSource.REFUND,
                OUTCOME_APPLIED,
                note=note,
            )
            await db.commit()

        logger.info("Financing refund processed", session_id=record.id, action=action)
        try:
            await self.orders.add_note(record.order_id, note)
        except OrderGatewayError as e:
            logger.warning("Could not add order note", order_id=record.order_id, error=str(e))

        return RefundResult(
            session_id=record.id,
            action=action,
            amount=refund_amount,
            status=status.value,
            response=response,
        )

    async def get_session(self, session_ref: str) -> dict[str, Any]:
        """Get a session with its history.

        Raises:
            SessionNotFoundError: Unknown session reference.
        """
        async with self.session_factory() as db:
            store = SessionStore(db)
            record = await store.find_by_correlation(session_ref)
            if record is None:
                raise SessionNotFoundError([session_ref])
            history = await store.history(record.id)
            data = record.to_dict()
            data["history"] = [entry.to_dict() for entry in history]
        return data
