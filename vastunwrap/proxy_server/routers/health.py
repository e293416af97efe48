"""
Health check endpoints.
"""

import platform

from fastapi import APIRouter, Depends

from vastunwrap.common.utils import current_datetime
from vastunwrap.proxy_server.dependencies import ProxyServices, get_services
from vastunwrap.schemas.response import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(services: ProxyServices = Depends(get_services)) -> HealthResponse:
    """
    Health check endpoint.

    Returns service status and resolution cache occupancy.
    """
    return HealthResponse(
        status="ok",
        version=services.settings.app_version,
        python=platform.python_version(),
        now=current_datetime().isoformat(),
        cache_entries=len(services.cache),
    )


@router.get("/ping")
async def ping() -> dict:
    """Simple ping endpoint."""
    return {"pong": True}


@router.get("/ready")
async def readiness_check(services: ProxyServices = Depends(get_services)) -> dict:
    """Readiness check for Kubernetes."""
    if services.http_client.is_closed:
        return {"ready": False, "reason": "HTTP client closed"}
    return {"ready": True}


@router.get("/live")
async def liveness_check() -> dict:
    """Liveness check for Kubernetes."""
    return {"alive": True}
