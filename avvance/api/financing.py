"""Financing session endpoints.

Provides:
- POST /financing/sessions: open a financing application for an order
- POST /financing/sessions/{session_ref}/status-check: manual status poll
- POST /admin/financing/sessions/{session_ref}/refund: void or refund
- GET /admin/financing/sessions/{session_ref}: session with history
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from avvance.api.dependencies import get_financing_service, get_status_tokens
from avvance.api.schemas import (
    CreateFinancingRequest,
    ErrorResponse,
    FinancingSessionDetail,
    FinancingSessionResponse,
    RefundRequest,
    RefundResponse,
    StatusCheckRequest,
    StatusCheckResponse,
)
from avvance.api.security import StatusTokenSigner
from avvance.application.financing_service import FinancingService
from avvance.domain.exceptions import (
    DomainError,
    DuplicateSessionError,
    InvalidRefundAmountError,
    InvalidRefundStateError,
    OrderAmountOutOfRangeError,
    SessionNotFoundError,
)
from avvance.infrastructure.errors import AvvanceApiError
from avvance.infrastructure.order_gateway import OrderGatewayError

logger = structlog.get_logger()

router = APIRouter(prefix="/financing", tags=["Financing"])
admin_router = APIRouter(prefix="/admin/financing", tags=["Admin"])

STATUS_CHECK_UNAVAILABLE = "Unable to check status. Please try again."


def _not_found(session_ref: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "error_code": "SESSION_NOT_FOUND",
            "message": f"Financing session {session_ref} not found",
        },
    )


def _remote_failure(e: AvvanceApiError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={
            "error_code": "AVVANCE_API_ERROR",
            "message": e.message,
            "details": {"operation": e.operation, "retryable": e.retryable},
        },
    )


# ============================================================================
# Shopper endpoints
# ============================================================================


@router.post(
    "/sessions",
    response_model=FinancingSessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    summary="Start financing",
)
async def create_financing_session(
    body: CreateFinancingRequest,
    service: Annotated[FinancingService, Depends(get_financing_service)],
    signer: Annotated[StatusTokenSigner, Depends(get_status_tokens)],
) -> FinancingSessionResponse:
    """Open a financing application and return the onboarding URL.

    Raises:
        HTTPException: 400 amount out of range, 409 duplicate, 502 remote failure.
    """
    try:
        started = await service.start_financing(body.to_order_details())
    except OrderAmountOutOfRangeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "AMOUNT_OUT_OF_RANGE", "message": e.message, "details": e.details},
        )
    except DuplicateSessionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error_code": "DUPLICATE_SESSION", "message": e.message},
        )
    except AvvanceApiError as e:
        logger.error("Financing request failed", order_id=body.order_id, error=str(e))
        raise _remote_failure(e)

    return FinancingSessionResponse(
        session_id=started.session_id,
        session_ref=started.session_ref,
        application_id=started.application_id,
        onboarding_url=started.onboarding_url,
        status_check_token=signer.sign(started.session_ref),
    )


@router.post(
    "/sessions/{session_ref}/status-check",
    response_model=StatusCheckResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Check financing status",
)
async def check_financing_status(
    session_ref: str,
    body: StatusCheckRequest,
    service: Annotated[FinancingService, Depends(get_financing_service)],
    signer: Annotated[StatusTokenSigner, Depends(get_status_tokens)],
) -> StatusCheckResponse:
    """Poll the provider for a session the webhook may have missed.

    Internal failures never expose provider details; the caller gets a
    generic "try again" message.
    """
    if not signer.verify(session_ref, body.token):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error_code": "INVALID_TOKEN", "message": "Invalid status check token"},
        )

    try:
        result = await service.check_status(session_ref)
    except SessionNotFoundError:
        raise _not_found(session_ref)
    except (AvvanceApiError, DomainError, OrderGatewayError, SQLAlchemyError) as e:
        logger.error(
            "Manual status check failed",
            session_ref=session_ref,
            error_type=type(e).__name__,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error_code": "STATUS_CHECK_FAILED", "message": STATUS_CHECK_UNAVAILABLE},
        )

    return StatusCheckResponse(
        state=result.state.value,
        status=result.status,
        redirect_url=result.redirect_url,
        message=result.message,
    )


# ============================================================================
# Admin endpoints
# ============================================================================


@admin_router.post(
    "/sessions/{session_ref}/refund",
    response_model=RefundResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Void or refund a financed order",
)
async def refund_financing_session(
    session_ref: str,
    service: Annotated[FinancingService, Depends(get_financing_service)],
    body: Annotated[RefundRequest | None, Body()] = None,
) -> RefundResponse:
    """Void an authorized session or refund a settled one."""
    amount = body.amount if body else None
    try:
        result = await service.refund(session_ref, amount)
    except SessionNotFoundError:
        raise _not_found(session_ref)
    except InvalidRefundStateError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error_code": "INVALID_REFUND_STATE", "message": e.message, "details": e.details},
        )
    except InvalidRefundAmountError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "INVALID_REFUND_AMOUNT", "message": e.message, "details": e.details},
        )
    except AvvanceApiError as e:
        logger.error("Refund failed", session_ref=session_ref, error=str(e))
        raise _remote_failure(e)

    return RefundResponse(
        session_id=result.session_id,
        action=result.action,
        amount=result.amount,
        status=result.status,
    )


@admin_router.get(
    "/sessions/{session_ref}",
    response_model=FinancingSessionDetail,
    responses={404: {"model": ErrorResponse}},
    summary="Get financing session",
)
async def get_financing_session(
    session_ref: str,
    service: Annotated[FinancingService, Depends(get_financing_service)],
) -> dict[str, Any]:
    """Get a session and its status history."""
    try:
        return await service.get_session(session_ref)
    except SessionNotFoundError:
        raise _not_found(session_ref)
