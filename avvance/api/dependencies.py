"""Dependency injection for FastAPI endpoints."""

from fastapi import Request

from avvance.api.fingerprint import FingerprintProvider
from avvance.api.security import BasicAuthVerifier, StatusTokenSigner
from avvance.application.financing_service import FinancingService
from avvance.application.preapproval_service import PreApprovalService
from avvance.application.reconciler import StatusReconciler
from avvance.container import Container


def get_container(request: Request) -> Container:
    """Get the wired components attached to the application."""
    return request.app.state.container


def get_request_id(request: Request) -> str | None:
    """Extract request ID from request state."""
    return getattr(request.state, "request_id", None)


def get_reconciler(request: Request) -> StatusReconciler:
    return get_container(request).reconciler


def get_webhook_auth(request: Request) -> BasicAuthVerifier:
    return get_container(request).webhook_auth


def get_financing_service(request: Request) -> FinancingService:
    return get_container(request).financing_service


def get_preapproval_service(request: Request) -> PreApprovalService:
    return get_container(request).preapproval_service


def get_status_tokens(request: Request) -> StatusTokenSigner:
    return get_container(request).status_tokens


def get_fingerprints(request: Request) -> FingerprintProvider:
    return get_container(request).fingerprints
