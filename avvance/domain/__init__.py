"""Domain layer - state machines, webhook events, PII handling.

- **State Machines**: FinancingStatus and LeadStatus with remote mappings
- **Events**: decoded webhook events and normalized status updates
- **Exceptions**: domain-specific errors

Example usage:
    from avvance.domain import FinancingStatus, map_remote_loan_status

    status = map_remote_loan_status("INVOICE_PAYMENT_TRANSACTION_AUTHORIZED")
    assert status is FinancingStatus.AUTHORIZED
"""

from avvance.domain.events import (
    EventSource,
    LoanStatusEvent,
    PreApprovalLeadEvent,
    StatusUpdate,
    UnknownEvent,
    WebhookEvent,
    decode_webhook_event,
)
from avvance.domain.exceptions import (
    ConcurrentUpdateError,
    DomainError,
    DuplicateSessionError,
    InvalidRefundAmountError,
    InvalidRefundStateError,
    MalformedEventError,
    OrderAmountOutOfRangeError,
    PreApprovalNotConfiguredError,
    SessionNotFoundError,
    SideEffectError,
)
from avvance.domain.state_machines import (
    FinancingStatus,
    LeadStatus,
    informational_note,
    map_remote_lead_status,
    map_remote_loan_status,
)

__all__ = [
    # Events
    "EventSource",
    "LoanStatusEvent",
    "PreApprovalLeadEvent",
    "StatusUpdate",
    "UnknownEvent",
    "WebhookEvent",
    "decode_webhook_event",
    # Exceptions
    "ConcurrentUpdateError",
    "DomainError",
    "DuplicateSessionError",
    "InvalidRefundAmountError",
    "InvalidRefundStateError",
    "MalformedEventError",
    "OrderAmountOutOfRangeError",
    "PreApprovalNotConfiguredError",
    "SessionNotFoundError",
    "SideEffectError",
    # State machines
    "FinancingStatus",
    "LeadStatus",
    "informational_note",
    "map_remote_lead_status",
    "map_remote_loan_status",
]
