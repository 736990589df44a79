"""Health check endpoints.

Provides endpoints for monitoring service health and readiness.
"""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from avvance.api.dependencies import get_container

logger = structlog.get_logger()

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str
    service: str
    version: str
    environment: str


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Check service health.

    Returns:
        Health status with service name and version.
    """
    container = get_container(request)
    return HealthResponse(
        status="healthy",
        service="avvance-financing",
        version=container.settings.api_version,
        environment=container.config.environment,
    )


@router.get("/ready")
async def readiness_check(request: Request):
    """Check database connectivity.

    Returns:
        Readiness status, 503 when the database is unreachable.
    """
    container = get_container(request)
    try:
        async with container.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Readiness check failed", error=str(e))
        return JSONResponse(status_code=503, content={"status": "unavailable"})
    return {"status": "ready"}
