"""Domain exceptions.

All domain-level errors that represent business rule violations or
reconciliation failures. API handlers translate them into HTTP responses.
"""

from decimal import Decimal
from typing import Any


class DomainError(Exception):
    """Base class for all domain exceptions.

    All domain errors should inherit from this class to allow
    catching domain-specific errors at the application layer.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize domain error.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ============================================================================
# Session Store / Reconciliation Errors
# ============================================================================


class SessionNotFoundError(DomainError):
    """Raised when no session or lead matches a correlation identifier."""

    def __init__(self, correlation_ids: list[str]) -> None:
        super().__init__(
            f"No financing record found for identifiers {correlation_ids}",
            details={"correlation_ids": correlation_ids},
        )


class DuplicateSessionError(DomainError):
    """Raised when a record with the same reconciliation key already exists."""

    def __init__(self, key: str) -> None:
        super().__init__(
            f"A record with key {key} already exists",
            details={"key": key},
        )


class ConcurrentUpdateError(DomainError):
    """Raised when compare-and-set keeps losing to concurrent writers."""

    def __init__(self, session_id: str, attempts: int) -> None:
        super().__init__(
            f"Session {session_id} was modified concurrently {attempts} times",
            details={"session_id": session_id, "attempts": attempts},
        )


class SideEffectError(DomainError):
    """Raised when a status side effect fails; the transition is not committed."""

    def __init__(self, session_id: str, status: str, reason: str) -> None:
        super().__init__(
            f"Side effect for {status} on session {session_id} failed: {reason}",
            details={"session_id": session_id, "status": status, "reason": reason},
        )


class MalformedEventError(DomainError):
    """Raised when an inbound event lacks required fields."""

    pass


# ============================================================================
# Financing Flow Errors
# ============================================================================


class OrderAmountOutOfRangeError(DomainError):
    """Raised when an order total is outside the financeable range."""

    def __init__(self, amount: Decimal, minimum: Decimal, maximum: Decimal) -> None:
        super().__init__(
            f"Avvance financing is available for orders between "
            f"${minimum:,.2f} and ${maximum:,.2f}",
            details={
                "amount": str(amount),
                "minimum": str(minimum),
                "maximum": str(maximum),
            },
        )


class InvalidRefundStateError(DomainError):
    """Raised when a refund or void is requested in an unsupported status."""

    def __init__(self, session_id: str, current_status: str) -> None:
        super().__init__(
            f"Session {session_id} cannot be refunded in status '{current_status}'. "
            "Valid statuses are authorized or settled.",
            details={"session_id": session_id, "current_status": current_status},
        )


class PreApprovalNotConfiguredError(DomainError):
    """Raised when pre-approval is requested without a hashed merchant id."""

    def __init__(self) -> None:
        super().__init__("Pre-approval is not configured for this merchant")


class InvalidRefundAmountError(DomainError):
    """Raised when a refund amount is not positive or exceeds the financed amount."""

    def __init__(self, amount: Decimal, maximum: Decimal) -> None:
        super().__init__(
            f"Refund amount {amount} must be greater than 0 and at most {maximum}",
            details={"amount": str(amount), "maximum": str(maximum)},
        )
