"""API middleware for the Avvance service.

Provides:
- Request ID correlation and access logging
- Admin API key authentication
- Last-resort mapping of escaped errors to JSON responses
"""

import hmac
import time
from typing import Callable
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from avvance.domain.exceptions import DomainError
from avvance.infrastructure.errors import AvvanceApiError

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"
ADMIN_PREFIX = "/admin"


def _error_body(request: Request, error_code: str, message: str) -> dict:
    return {
        "error_code": error_code,
        "message": message,
        "details": [],
        "request_id": getattr(request.state, "request_id", None),
    }


# ============================================================================
# Request ID Middleware
# ============================================================================


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tags every request with an ID and logs its completion.

    An incoming ``X-Request-ID`` is reused so webhook redeliveries and
    storefront calls can be traced end to end; otherwise a UUID is issued.
    The ID is bound into the structlog context for the request's lifetime.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        started = time.perf_counter()
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


# ============================================================================
# Admin API Key Middleware
# ============================================================================


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from a ``Bearer <token>`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AdminApiKeyMiddleware(BaseHTTPMiddleware):
    """Bearer API key check for administrative endpoints.

    Only paths under ``/admin`` are protected. Shopper-facing routes and
    the webhook (HTTP Basic) authenticate separately.
    """

    def __init__(self, app, api_key: str) -> None:
        super().__init__(app)
        self.api_key = api_key.encode()

    def _reject(self, request: Request, error_code: str, message: str) -> JSONResponse:
        logger.warning("Admin request rejected", path=request.url.path, reason=error_code)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content=_error_body(request, error_code, message),
            headers={"WWW-Authenticate": "Bearer"},
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not request.url.path.startswith(ADMIN_PREFIX):
            return await call_next(request)

        authorization = request.headers.get("Authorization")
        if not authorization:
            return self._reject(request, "UNAUTHORIZED", "Missing Authorization header")

        token = bearer_token(authorization)
        if token is None:
            return self._reject(
                request,
                "UNAUTHORIZED",
                "Invalid Authorization header format. Use 'Bearer <api_key>'",
            )

        if not self.api_key or not hmac.compare_digest(token.encode(), self.api_key):
            return self._reject(request, "INVALID_API_KEY", "Invalid API key")

        return await call_next(request)


# ============================================================================
# Error Handling Middleware
# ============================================================================


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turns errors that escaped the route handlers into JSON responses.

    Provider failures become 502 and domain errors 500, each with its own
    error code; raw exception text is logged but never returned.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except AvvanceApiError as e:
            logger.error(
                "Unhandled Avvance API error",
                path=request.url.path,
                operation=e.operation,
                error_type=type(e).__name__,
                error=str(e),
            )
            return JSONResponse(
                status_code=status.HTTP_502_BAD_GATEWAY,
                content=_error_body(request, "AVVANCE_API_ERROR", "Avvance request failed"),
            )
        except DomainError as e:
            logger.error(
                "Unhandled domain error",
                path=request.url.path,
                error_type=type(e).__name__,
                error=e.message,
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=_error_body(request, "PROCESSING_FAILED", "Request processing failed"),
            )
        except Exception as e:
            logger.exception("Unhandled exception", path=request.url.path, error=str(e))
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=_error_body(request, "INTERNAL_ERROR", "An internal error occurred"),
            )


# ============================================================================
# Middleware Setup
# ============================================================================


def setup_middleware(app: FastAPI, admin_api_key: str) -> None:
    """Install middleware; the last one added runs first.

    Args:
        app: FastAPI application instance.
        admin_api_key: Key accepted on ``/admin`` routes.
    """
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(AdminApiKeyMiddleware, api_key=admin_api_key)
    app.add_middleware(RequestIdMiddleware)
