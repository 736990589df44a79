"""State machines for financing sessions and pre-approval leads.

Deterministic state machines that define valid state transitions and
the mapping from the provider's status strings onto local states.
"""

from enum import Enum


# ============================================================================
# Financing Session State Machine
# ============================================================================


class FinancingStatus(str, Enum):
    """Financing session lifecycle states.

    State diagram:
        CREATED
          │ application started
          ▼
        APPLICATION_STARTED
          │ approved
          ▼
        APPLICATION_APPROVED
          │ (optional) customer action required
          ▼
        PENDING_CUSTOMER_ACTION
          │ payment authorized
          ▼
        AUTHORIZED ──────────► SETTLED

    Any non-terminal state may exit to DENIED, SYSTEM_ERROR, LINK_EXPIRED
    or CANCELLED. Forward jumps are allowed because the provider does not
    guarantee delivery of every intermediate event.

    LINK_EXPIRED is only set by the cleanup sweep. It is the one failure
    state that may still move on to AUTHORIZED or SETTLED.
    """

    CREATED = "created"
    APPLICATION_STARTED = "application_started"
    APPLICATION_APPROVED = "application_approved"
    PENDING_CUSTOMER_ACTION = "pending_customer_action"
    AUTHORIZED = "authorized"
    SETTLED = "settled"
    DENIED = "denied"
    SYSTEM_ERROR = "system_error"
    LINK_EXPIRED = "link_expired"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "FinancingStatus") -> bool:
        """Check if transition to target state is valid.

        Args:
            target: Target state to transition to.

        Returns:
            True if transition is valid.
        """
        return target in _FINANCING_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["FinancingStatus"]:
        """Get list of valid target states."""
        return sorted(_FINANCING_TRANSITIONS.get(self, set()), key=lambda s: s.value)

    def is_terminal(self) -> bool:
        """Check if this is a terminal state (success or failure)."""
        return self in TERMINAL_SUCCESS or self in TERMINAL_FAILURE

    def is_terminal_success(self) -> bool:
        """Money movement has been asserted by the provider."""
        return self in TERMINAL_SUCCESS

    def is_terminal_failure(self) -> bool:
        return self in TERMINAL_FAILURE

    def is_pending(self) -> bool:
        """Check if the session is still awaiting an outcome."""
        return not self.is_terminal()


TERMINAL_SUCCESS = frozenset({FinancingStatus.AUTHORIZED, FinancingStatus.SETTLED})

TERMINAL_FAILURE = frozenset(
    {
        FinancingStatus.DENIED,
        FinancingStatus.SYSTEM_ERROR,
        FinancingStatus.LINK_EXPIRED,
        FinancingStatus.CANCELLED,
    }
)

PENDING_STATUSES = frozenset(s for s in FinancingStatus if not s.is_terminal())

_FAILURE_EXITS = set(TERMINAL_FAILURE)

# Progress order of the happy path; a move to a lower rank is a regression.
_PROGRESS = [
    FinancingStatus.CREATED,
    FinancingStatus.APPLICATION_STARTED,
    FinancingStatus.APPLICATION_APPROVED,
    FinancingStatus.PENDING_CUSTOMER_ACTION,
    FinancingStatus.AUTHORIZED,
    FinancingStatus.SETTLED,
]


def _build_transitions() -> dict[FinancingStatus, set[FinancingStatus]]:
    transitions: dict[FinancingStatus, set[FinancingStatus]] = {}
    for index, status in enumerate(_PROGRESS):
        forward = set(_PROGRESS[index + 1 :])
        if status in TERMINAL_SUCCESS:
            transitions[status] = forward
        else:
            transitions[status] = forward | _FAILURE_EXITS
    for status in TERMINAL_FAILURE:
        transitions[status] = set()
    # A provider authorization supersedes a locally inferred expiry.
    transitions[FinancingStatus.LINK_EXPIRED] = set(TERMINAL_SUCCESS)
    return transitions


_FINANCING_TRANSITIONS: dict[FinancingStatus, set[FinancingStatus]] = _build_transitions()


# Provider loan status strings -> local states
REMOTE_LOAN_STATUSES: dict[str, FinancingStatus] = {
    "APPLICATION_STARTED": FinancingStatus.APPLICATION_STARTED,
    "APPLICATION_APPROVED": FinancingStatus.APPLICATION_APPROVED,
    "APPLICATION_PENDING_REQUIRE_CUSTOMER_ACTION": FinancingStatus.PENDING_CUSTOMER_ACTION,
    "INVOICE_PAYMENT_TRANSACTION_AUTHORIZED": FinancingStatus.AUTHORIZED,
    "INVOICE_PAYMENT_TRANSACTION_SETTLED": FinancingStatus.SETTLED,
    "APPLICATION_DENIED_REQUEST_ALTERNATE_PAYMENT": FinancingStatus.DENIED,
    "SYSTEM_ERROR_REQUEST_ALTERNATE_PAYMENT": FinancingStatus.SYSTEM_ERROR,
}

# Provider statuses that are recorded and noted but never change state
INFORMATIONAL_REMOTE_STATUSES: dict[str, str] = {
    "APPLICATION_LINK_EXPIRED": "Avvance application link expired",
}

STATUS_MESSAGES: dict[FinancingStatus, str] = {
    FinancingStatus.CREATED: "Application created",
    FinancingStatus.APPLICATION_STARTED: "Customer started application",
    FinancingStatus.APPLICATION_APPROVED: "Application approved - awaiting customer",
    FinancingStatus.PENDING_CUSTOMER_ACTION: "Customer action required",
    FinancingStatus.AUTHORIZED: "Payment authorized",
    FinancingStatus.SETTLED: "Payment settled",
    FinancingStatus.DENIED: "Application declined",
    FinancingStatus.SYSTEM_ERROR: "System error - use alternate payment",
    FinancingStatus.LINK_EXPIRED: "Application link expired",
    FinancingStatus.CANCELLED: "Application cancelled",
}


def map_remote_loan_status(remote_status: str) -> FinancingStatus | None:
    """Map a provider loan status onto a local state.

    Args:
        remote_status: Status string from a webhook or status response.

    Returns:
        Local status, or None for an unrecognized value.
    """
    return REMOTE_LOAN_STATUSES.get(remote_status.strip().upper())


def informational_note(remote_status: str) -> str | None:
    """Order note for a provider status that never changes local state."""
    return INFORMATIONAL_REMOTE_STATUSES.get(remote_status.strip().upper())


# ============================================================================
# Pre-Approval Lead State Machine
# ============================================================================


class LeadStatus(str, Enum):
    """Pre-approval lead states.

    State diagram:
        PENDING ──► APPROVED
           │
           └──────► DECLINED
    """

    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"

    def is_terminal(self) -> bool:
        return self != LeadStatus.PENDING

    def can_transition_to(self, target: "LeadStatus") -> bool:
        return self == LeadStatus.PENDING and target != LeadStatus.PENDING


# Canonical lead status strings. The provider documents PRE_APPROVED and
# NOT_APPROVED; APPROVED and DECLINED are accepted as aliases.
REMOTE_LEAD_STATUSES: dict[str, LeadStatus] = {
    "PRE_APPROVED": LeadStatus.APPROVED,
    "APPROVED": LeadStatus.APPROVED,
    "NOT_APPROVED": LeadStatus.DECLINED,
    "DECLINED": LeadStatus.DECLINED,
}


def map_remote_lead_status(remote_status: str) -> LeadStatus | None:
    """Map a provider lead status onto a local lead state.

    Args:
        remote_status: ``leadstatus`` value from a webhook.

    Returns:
        Local status, or None for an unrecognized value.
    """
    normalized = remote_status.strip().upper().replace(" ", "_").replace("-", "_")
    return REMOTE_LEAD_STATUSES.get(normalized)
