"""Request and response schemas for the HTTP API."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from avvance.infrastructure.avvance_client import Address, OrderDetails


class ErrorResponse(BaseModel):
    """Standard error body."""

    error_code: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    details: Any = Field(default_factory=list, description="Additional context")
    request_id: str | None = Field(None, description="Request ID for correlation")


# ============================================================================
# Webhook
# ============================================================================


class WebhookEnvelope(BaseModel):
    """Body posted by Avvance to the webhook endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    event_name: str = Field(..., alias="eventName", min_length=1)
    event_details: dict[str, Any] = Field(..., alias="eventDetails")


class WebhookAck(BaseModel):
    """Acknowledgement returned to Avvance."""

    status: str = Field(..., description="applied, duplicate, anomaly, noted or ignored")
    message: str | None = None


# ============================================================================
# Financing sessions
# ============================================================================


class AddressSchema(BaseModel):
    """Postal address."""

    street1: str = ""
    street2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country_code: str = "US"

    def to_address(self) -> Address:
        return Address(
            street1=self.street1,
            street2=self.street2,
            city=self.city,
            state=self.state,
            postal_code=self.postal_code,
            country_code=self.country_code,
        )


class CreateFinancingRequest(BaseModel):
    """Order data for a new financing application."""

    order_id: str = Field(..., min_length=1)
    order_key: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, description="Order total in USD")
    email: str
    first_name: str
    last_name: str
    phone: str = ""
    billing_address: AddressSchema
    shipping_address: AddressSchema | None = None
    ip_address: str | None = None

    def to_order_details(self) -> OrderDetails:
        return OrderDetails(
            order_id=self.order_id,
            order_key=self.order_key,
            amount=self.amount,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            phone=self.phone,
            billing_address=self.billing_address.to_address(),
            shipping_address=self.shipping_address.to_address() if self.shipping_address else None,
            ip_address=self.ip_address,
        )


class FinancingSessionResponse(BaseModel):
    """A newly created financing session."""

    session_id: str
    session_ref: str = Field(..., description="Reference used for status checks")
    application_id: str | None
    onboarding_url: str
    status_check_token: str


class StatusCheckRequest(BaseModel):
    """Manual status check request."""

    token: str = Field(..., min_length=1)


class StatusCheckResponse(BaseModel):
    """Manual status check result."""

    state: str = Field(..., description="redirect, pending or declined")
    status: str
    redirect_url: str | None = None
    message: str | None = None


class RefundRequest(BaseModel):
    """Void/refund request; amount defaults to the financed amount."""

    amount: Decimal | None = Field(None, gt=0)


class RefundResponse(BaseModel):
    """Void/refund result."""

    session_id: str
    action: str
    amount: Decimal
    status: str


class HistoryEntry(BaseModel):
    id: int
    status: str
    remote_status: str | None
    source: str
    outcome: str
    note: str | None
    received_at: str | None


class FinancingSessionDetail(BaseModel):
    """Session with its history."""

    id: str
    order_id: str
    application_id: str | None
    partner_session_id: str
    status: str
    last_remote_status: str | None
    payment_transaction_id: str | None
    approval_code: str | None
    amount: str | None
    created_at: str | None
    updated_at: str | None
    expires_at: str | None
    history: list[HistoryEntry]


# ============================================================================
# Pre-approvals
# ============================================================================


class StartPreApprovalRequest(BaseModel):
    """Optional client-supplied session id."""

    session_id: str | None = Field(None, max_length=100)


class PreApprovalResponse(BaseModel):
    request_id: str
    session_id: str
    onboarding_url: str


class PreApprovalStatusResponse(BaseModel):
    """What the storefront may show about the shopper's pre-approval."""

    has_lead: bool
    approved: bool
    status: str | None = None
    max_amount: Decimal | None = None
    expires_at: datetime | None = None
