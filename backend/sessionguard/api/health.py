"""Health check endpoint with store connectivity check.

Accessible without authentication so orchestrators can probe it.
"""

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from sessionguard.api.deps import get_security
from sessionguard.container import SecurityComponents

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    store: str
    maintenance: str


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(
    response: Response,
    security: SecurityComponents = Depends(get_security),
) -> HealthResponse:
    """Returns 503 if the security store is unavailable."""
    store_healthy = await security.store.ping()

    if not store_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if store_healthy else "unhealthy",
        version=security.settings.app_version,
        store="connected" if store_healthy else "disconnected",
        maintenance="running" if security.maintenance.running else "stopped",
    )
