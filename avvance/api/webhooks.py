"""Webhook receiver endpoints.

Provides:
- POST /webhooks/avvance: loan status and pre-approval events
- HTTP Basic authentication before any payload processing
- Forward compatibility: unknown event names are acknowledged and ignored
"""

from datetime import datetime, timezone
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from avvance.api.dependencies import get_reconciler, get_webhook_auth
from avvance.api.schemas import ErrorResponse, WebhookAck, WebhookEnvelope
from avvance.api.security import WEBHOOK_REALM, BasicAuthVerifier
from avvance.application.reconciler import ReconciliationResult, StatusReconciler
from avvance.domain.events import (
    LoanStatusEvent,
    PreApprovalLeadEvent,
    StatusUpdate,
    UnknownEvent,
    decode_webhook_event,
)
from avvance.domain.exceptions import DomainError, MalformedEventError

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _malformed(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error_code": "MALFORMED_WEBHOOK", "message": message},
    )


@router.post(
    "/avvance",
    response_model=WebhookAck,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    summary="Receive Avvance webhook",
    description="Receive loan status and pre-approval events from Avvance.",
)
async def receive_avvance_webhook(
    request: Request,
    verifier: Annotated[BasicAuthVerifier, Depends(get_webhook_auth)],
    reconciler: Annotated[StatusReconciler, Depends(get_reconciler)],
) -> WebhookAck:
    """Authenticate, decode and reconcile an Avvance event.

    Returns 200 for processed events, duplicates and ignored event
    types; 400 for malformed bodies; 401 for bad credentials; 500 when
    reconciliation fails so that Avvance redelivers.

    Raises:
        HTTPException: On authentication, validation or processing failure.
    """
    if not verifier.verify(request.headers.get("Authorization")):
        logger.warning("Webhook authentication failed", client=getattr(request.client, "host", None))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error_code": "UNAUTHORIZED", "message": "Authentication required"},
            headers={"WWW-Authenticate": WEBHOOK_REALM},
        )

    raw_body = await request.body()
    try:
        envelope = WebhookEnvelope.model_validate_json(raw_body)
    except ValidationError:
        logger.warning("Malformed webhook body")
        raise _malformed("Body must be a JSON object with eventName and eventDetails")

    try:
        event = decode_webhook_event(envelope.event_name, envelope.event_details)
    except MalformedEventError as e:
        logger.warning("Malformed webhook event", event_name=envelope.event_name, error=e.message)
        raise _malformed(e.message)

    if isinstance(event, UnknownEvent):
        logger.info("Ignoring unknown webhook event", event_name=event.raw_event_name)
        return WebhookAck(status="ignored", message=f"Event {event.raw_event_name} not handled")

    logger.info("Received Avvance webhook", event_name=event.event_name)
    received_at = datetime.now(timezone.utc)

    try:
        result: ReconciliationResult
        if isinstance(event, LoanStatusEvent):
            result = await reconciler.apply(StatusUpdate.from_webhook(event, received_at))
        elif isinstance(event, PreApprovalLeadEvent):
            result = await reconciler.reconcile_preapproval(event)
        else:
            raise MalformedEventError(f"Unsupported event type {event.event_name}")
    except (DomainError, SQLAlchemyError) as e:
        logger.error(
            "Webhook processing failed",
            event_name=event.event_name,
            error_type=type(e).__name__,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "PROCESSING_FAILED", "message": "Webhook processing failed"},
        )

    return WebhookAck(status=result.outcome.value, message=result.message)
