"""Avvance financing service main application module.

This module builds the FastAPI application and configures middleware,
routers and startup/shutdown events.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from avvance.api.financing import admin_router as financing_admin_router
from avvance.api.financing import router as financing_router
from avvance.api.health import router as health_router
from avvance.api.middleware import setup_middleware
from avvance.api.preapprovals import router as preapprovals_router
from avvance.api.webhooks import router as webhooks_router
from avvance.container import Container, build_container
from avvance.infrastructure.config import get_settings
from avvance.infrastructure.logging import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup and shutdown events.

    Args:
        app: The FastAPI application instance.

    Yields:
        None after startup, cleanup happens after yield.
    """
    container: Container = app.state.container
    settings = container.settings

    # Startup
    logger.info(
        "Starting Avvance financing service",
        version=settings.api_version,
        environment=container.config.environment,
        debug=settings.debug,
    )
    if settings.cleanup_enabled:
        container.cleanup.start()

    yield

    # Shutdown
    logger.info("Shutting down Avvance financing service")
    await container.close()


def create_app(container: Container | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        container: Pre-wired components; built from settings if omitted.

    Returns:
        Configured FastAPI application.
    """
    if container is None:
        settings = get_settings()
        configure_logging(settings.log_level, settings.log_json)
        container = build_container(settings)

    app = FastAPI(
        title="Avvance Financing API",
        description="Installment financing integration for checkout",
        version=container.settings.api_version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.container = container

    # Setup custom middleware (request ID, admin API key, error handling)
    setup_middleware(app, admin_api_key=container.settings.admin_api_key)

    # Include routers
    app.include_router(health_router, tags=["Health"])
    app.include_router(webhooks_router)
    app.include_router(financing_router)
    app.include_router(financing_admin_router)
    app.include_router(preapprovals_router)

    app.add_exception_handler(HTTPException, http_exception_handler)

    return app


# ============================================================================
# Exception Handlers
# ============================================================================


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render HTTP errors as ``{error_code, message, details, request_id}``.

    Route handlers raise ``HTTPException`` with a dict detail carrying the
    error code; plain string details are reported under ``ERROR``.
    """
    detail = exc.detail if isinstance(exc.detail, dict) else {"message": str(exc.detail)}
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": detail.get("error_code", "ERROR"),
            "message": detail.get("message", ""),
            "details": detail.get("details", []),
            "request_id": getattr(request.state, "request_id", None),
        },
        headers=exc.headers,
    )


app = create_app()
