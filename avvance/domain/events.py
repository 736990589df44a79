"""Inbound events for the reconciliation engine.

Webhook payloads are decoded once, at the ingress boundary, into one of
the tagged variants below. Both the webhook receiver and the manual
status poll turn their input into a ``StatusUpdate`` message, which is
the only thing the reconciler's transition function accepts.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar

from avvance.domain.exceptions import MalformedEventError

MAX_AMOUNT_METADATA_KEY = "maxPreApprovedAmount"


class EventSource(str, Enum):
    """Channel that produced a status update or history entry."""

    CREATE = "create"
    WEBHOOK = "webhook"
    POLL = "poll"
    CLEANUP = "cleanup"
    REFUND = "refund"


# ============================================================================
# Webhook Event Variants
# ============================================================================


@dataclass(frozen=True)
class WebhookEvent:
    """Base class for decoded webhook events."""

    event_name: ClassVar[str] = ""

    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LoanStatusEvent(WebhookEvent):
    """Loan application status change for a financing session."""

    event_name: ClassVar[str] = "LOAN_STATUS"

    remote_status: str = ""
    application_id: str | None = None
    partner_session_id: str | None = None
    payment_transaction_id: str | None = None
    approval_code: str | None = None

    @property
    def correlation_ids(self) -> list[str]:
        return [i for i in (self.application_id, self.partner_session_id) if i]


@dataclass(frozen=True)
class PreApprovalLeadEvent(WebhookEvent):
    """Outcome of an anonymous pre-approval request."""

    event_name: ClassVar[str] = "PRE_APPROVAL_LEAD"

    request_id: str = ""
    remote_status: str = ""
    lead_id: str | None = None
    max_amount: Decimal | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class UnknownEvent(WebhookEvent):
    """Event type this service does not handle (acknowledged, ignored)."""

    raw_event_name: str = ""


EVENT_TYPES: dict[str, type[WebhookEvent]] = {
    LoanStatusEvent.event_name: LoanStatusEvent,
    PreApprovalLeadEvent.event_name: PreApprovalLeadEvent,
}


def _text(details: dict[str, Any], key: str) -> str | None:
    value = details.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _parse_amount(value: Any) -> Decimal | None:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def extract_max_amount(details: dict[str, Any]) -> Decimal | None:
    """Find the maximum pre-approved amount in event metadata.

    The provider sends metadata as a list of ``{"key", "value"}`` pairs.
    """
    metadata = details.get("metadata")
    if isinstance(metadata, list):
        for entry in metadata:
            if isinstance(entry, dict) and entry.get("key") == MAX_AMOUNT_METADATA_KEY:
                return _parse_amount(entry.get("value"))
    elif isinstance(metadata, dict) and MAX_AMOUNT_METADATA_KEY in metadata:
        return _parse_amount(metadata[MAX_AMOUNT_METADATA_KEY])
    return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a provider timestamp; naive values are treated as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _decode_loan_status(details: dict[str, Any]) -> LoanStatusEvent:
    loan_status = details.get("loanStatus")
    remote_status = loan_status.get("status") if isinstance(loan_status, dict) else None
    if not remote_status or not isinstance(remote_status, str):
        raise MalformedEventError("Loan status event is missing loanStatus.status")

    event = LoanStatusEvent(
        details=details,
        remote_status=remote_status.strip(),
        application_id=_text(details, "applicationGUID"),
        partner_session_id=_text(details, "partnerSessionId"),
        payment_transaction_id=_text(details, "paymentTransactionId"),
        approval_code=_text(details, "approvalCode"),
    )
    if not event.correlation_ids:
        raise MalformedEventError(
            "Loan status event carries neither applicationGUID nor partnerSessionId"
        )
    return event


def _decode_preapproval_lead(details: dict[str, Any]) -> PreApprovalLeadEvent:
    request_id = _text(details, "preApprovalRequestId") or _text(details, "preApprovalRequestID")
    if not request_id:
        raise MalformedEventError("Pre-approval event is missing preApprovalRequestId")

    return PreApprovalLeadEvent(
        details=details,
        request_id=request_id,
        remote_status=_text(details, "leadstatus") or _text(details, "leadStatus") or "",
        lead_id=_text(details, "leadid") or _text(details, "leadId"),
        max_amount=extract_max_amount(details),
        customer_name=_text(details, "customerName"),
        customer_email=_text(details, "customerEmail"),
        customer_phone=_text(details, "customerPhone"),
        expires_at=parse_timestamp(details.get("leadExpiryDate")),
    )


# eventDetails keys that identify an event when its name is not recognized
LEAD_DETAIL_KEYS = ("preApprovalRequestId", "preApprovalRequestID", "leadstatus", "leadStatus")
LOAN_DETAIL_KEYS = ("loanStatus", "applicationGUID", "partnerSessionId")


def decode_webhook_event(event_name: str, details: dict[str, Any]) -> WebhookEvent:
    """Decode a webhook envelope into a typed event.

    Known event names route directly. Any other name is classified by the
    shape of its details: lead keys first, then loan keys. Details with
    neither are an UnknownEvent.

    Args:
        event_name: ``eventName`` from the envelope.
        details: ``eventDetails`` from the envelope.

    Returns:
        A LoanStatusEvent, PreApprovalLeadEvent or UnknownEvent.

    Raises:
        MalformedEventError: If a recognized event lacks required fields.
    """
    normalized = event_name.strip().upper()
    if normalized == LoanStatusEvent.event_name:
        return _decode_loan_status(details)
    if normalized == PreApprovalLeadEvent.event_name:
        return _decode_preapproval_lead(details)
    if any(key in details for key in LEAD_DETAIL_KEYS):
        return _decode_preapproval_lead(details)
    if any(key in details for key in LOAN_DETAIL_KEYS):
        return _decode_loan_status(details)
    return UnknownEvent(details=details, raw_event_name=event_name)


# ============================================================================
# Reconciler Input
# ============================================================================


@dataclass(frozen=True)
class StatusUpdate:
    """A loan status observation delivered to the reconciler.

    Attributes:
        correlation_ids: Identifiers to resolve the session by, in order.
        remote_status: Provider status string.
        payload: Raw event payload kept in history.
        received_at: When the observation was received.
        source: Producing channel (webhook or poll).
        payment_transaction_id: Present once authorized.
        approval_code: Present once authorized.
    """

    correlation_ids: tuple[str, ...]
    remote_status: str
    payload: dict[str, Any]
    received_at: datetime
    source: EventSource
    payment_transaction_id: str | None = None
    approval_code: str | None = None

    @classmethod
    def from_webhook(cls, event: LoanStatusEvent, received_at: datetime) -> "StatusUpdate":
        """Build an update from a decoded webhook event."""
        return cls(
            correlation_ids=tuple(event.correlation_ids),
            remote_status=event.remote_status,
            payload=event.details,
            received_at=received_at,
            source=EventSource.WEBHOOK,
            payment_transaction_id=event.payment_transaction_id,
            approval_code=event.approval_code,
        )

    @classmethod
    def from_status_response(
        cls,
        correlation_ids: list[str],
        response: dict[str, Any],
        received_at: datetime,
    ) -> "StatusUpdate":
        """Build an update from a notification-status API response.

        Raises:
            MalformedEventError: If the response carries no loan status.
        """
        details = response.get("eventDetails")
        if not isinstance(details, dict):
            raise MalformedEventError("Status response is missing eventDetails")
        loan_status = details.get("loanStatus")
        remote_status = loan_status.get("status") if isinstance(loan_status, dict) else None
        if not remote_status or not isinstance(remote_status, str):
            raise MalformedEventError("Status response is missing loanStatus.status")
        return cls(
            correlation_ids=tuple(i for i in correlation_ids if i),
            remote_status=remote_status.strip(),
            payload=details,
            received_at=received_at,
            source=EventSource.POLL,
            payment_transaction_id=_text(details, "paymentTransactionId"),
            approval_code=_text(details, "approvalCode"),
        )
