"""SQLAlchemy models for database tables.

Provides ORM models for financing_sessions, financing_session_events and
preapproval_leads.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB

from avvance.infrastructure.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


# ============================================================================
# Financing Session Models
# ============================================================================


class FinancingSessionModel(Base):
    """One financing application attempt for an order.

    Correlated with the provider by application_id (assigned remotely)
    and partner_session_id (generated locally per create attempt).
    """

    __tablename__ = "financing_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    order_id = Column(String(100), nullable=False, index=True)
    application_id = Column(String(100), nullable=True, unique=True)
    partner_session_id = Column(String(100), nullable=False, unique=True)
    onboarding_url = Column(Text, nullable=True)
    status = Column(String(40), nullable=False, default="created", index=True)
    last_remote_status = Column(String(100), nullable=True)

    # Authorization details
    payment_transaction_id = Column(String(100), nullable=True)
    approval_code = Column(String(100), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    # Timestamps
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_financing_sessions_status_created_at", "status", "created_at"),)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "order_id": self.order_id,
            "application_id": self.application_id,
            "partner_session_id": self.partner_session_id,
            "status": self.status,
            "last_remote_status": self.last_remote_status,
            "payment_transaction_id": self.payment_transaction_id,
            "approval_code": self.approval_code,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
        }


class FinancingSessionEventModel(Base):
    """Append-only history of status observations for a session.

    Every received event is recorded, including duplicates and anomalies.
    """

    __tablename__ = "financing_session_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(
        String(36),
        ForeignKey("financing_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(String(40), nullable=False)
    remote_status = Column(String(100), nullable=True)
    source = Column(String(20), nullable=False)
    outcome = Column(String(20), nullable=False)
    note = Column(Text, nullable=True)
    payload = Column(JSONType, nullable=True)
    received_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "status": self.status,
            "remote_status": self.remote_status,
            "source": self.source,
            "outcome": self.outcome,
            "note": self.note,
            "received_at": _iso(self.received_at),
        }


# ============================================================================
# Pre-Approval Lead Models
# ============================================================================


class PreApprovalLeadModel(Base):
    """Anonymous pre-approval lead tracked by browser fingerprint.

    Contact fields hold masked values only and webhook_payload is
    stored after redaction.
    """

    __tablename__ = "preapproval_leads"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    request_id = Column(String(100), nullable=False, unique=True)
    lead_id = Column(String(100), nullable=True, index=True)
    session_id = Column(String(100), nullable=False, index=True)
    browser_fingerprint = Column(String(100), nullable=False, index=True)
    onboarding_url = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    remote_status = Column(String(100), nullable=True)
    max_amount = Column(Numeric(12, 2), nullable=True)

    # Masked contact details
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)

    webhook_payload = Column(JSONType, nullable=True)

    # Timestamps
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "request_id": self.request_id,
            "lead_id": self.lead_id,
            "session_id": self.session_id,
            "status": self.status,
            "remote_status": self.remote_status,
            "max_amount": str(self.max_amount) if self.max_amount is not None else None,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "expires_at": _iso(self.expires_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
