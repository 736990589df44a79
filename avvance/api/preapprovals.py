"""Pre-approval and price-breakdown endpoints."""

from decimal import Decimal
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status

from avvance.api.dependencies import get_fingerprints, get_preapproval_service
from avvance.api.fingerprint import FingerprintProvider
from avvance.api.schemas import (
    ErrorResponse,
    PreApprovalResponse,
    PreApprovalStatusResponse,
    StartPreApprovalRequest,
)
from avvance.application.preapproval_service import PreApprovalService
from avvance.domain.exceptions import (
    DuplicateSessionError,
    OrderAmountOutOfRangeError,
    PreApprovalNotConfiguredError,
)
from avvance.infrastructure.errors import AvvanceApiError

logger = structlog.get_logger()

router = APIRouter(tags=["Pre-approval"])


@router.post(
    "/preapprovals",
    response_model=PreApprovalResponse,
    status_code=status.HTTP_201_CREATED,
    responses={502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Start a pre-approval",
)
async def start_preapproval(
    request: Request,
    response: Response,
    service: Annotated[PreApprovalService, Depends(get_preapproval_service)],
    fingerprints: Annotated[FingerprintProvider, Depends(get_fingerprints)],
    body: Annotated[StartPreApprovalRequest | None, Body()] = None,
) -> PreApprovalResponse:
    """Request a pre-approval link for the current browser."""
    fingerprint = fingerprints.get_or_create_fingerprint(request)
    try:
        started = await service.start_preapproval(
            fingerprint.value, session_id=body.session_id if body else None
        )
    except PreApprovalNotConfiguredError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error_code": "PREAPPROVAL_NOT_CONFIGURED", "message": e.message},
        )
    except DuplicateSessionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error_code": "DUPLICATE_PREAPPROVAL", "message": e.message},
        )
    except AvvanceApiError as e:
        logger.error("Pre-approval request failed", error_type=type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error_code": "AVVANCE_API_ERROR",
                "message": "Unable to start pre-approval. Please try again.",
            },
        )

    fingerprints.persist(response, fingerprint)
    return PreApprovalResponse(
        request_id=started.request_id,
        session_id=started.session_id,
        onboarding_url=started.onboarding_url,
    )


@router.get(
    "/preapprovals/current",
    response_model=PreApprovalStatusResponse,
    summary="Current pre-approval",
)
async def current_preapproval(
    request: Request,
    service: Annotated[PreApprovalService, Depends(get_preapproval_service)],
    fingerprints: Annotated[FingerprintProvider, Depends(get_fingerprints)],
) -> PreApprovalStatusResponse:
    """Report the latest pre-approval for this browser."""
    fingerprint = fingerprints.get_fingerprint(request)
    if fingerprint is None:
        return PreApprovalStatusResponse(has_lead=False, approved=False)

    summary = await service.current_preapproval(fingerprint)
    return PreApprovalStatusResponse(
        has_lead=summary.has_lead,
        approved=summary.approved,
        status=summary.status,
        max_amount=summary.max_amount,
        expires_at=summary.expires_at,
    )


@router.get(
    "/price-breakdown",
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
    summary="Installment options for an amount",
)
async def price_breakdown(
    service: Annotated[PreApprovalService, Depends(get_preapproval_service)],
    amount: Annotated[Decimal, Query(gt=0)],
) -> dict[str, Any]:
    """Look up installment options for an amount."""
    try:
        return await service.price_breakdown(amount)
    except OrderAmountOutOfRangeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "AMOUNT_OUT_OF_RANGE", "message": e.message, "details": e.details},
        )
    except AvvanceApiError as e:
        logger.error("Price breakdown failed", error_type=type(e).__name__)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error_code": "AVVANCE_API_ERROR", "message": "Price breakdown unavailable"},
        )
