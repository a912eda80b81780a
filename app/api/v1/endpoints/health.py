"""Health check endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel

from app.config import settings
from app.core.firebase import is_firebase_initialized
from app.core.redis_client import check_redis_connection
from app.database import check_database_connection

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    service: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Health of the service and each backing component."""

    profile_store: str
    rate_limiter: str
    identity_provider: str


def _component_status(healthy: bool) -> str:
    return "healthy" if healthy else "unhealthy"


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    """Liveness probe; does not touch any backend."""
    return HealthResponse(
        status="healthy",
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Detailed health check",
)
async def detailed_health_check() -> DetailedHealthResponse:
    """
    Readiness probe covering the profile store, Redis and Firebase.

    Redis only backs rate limiting, which fails open, so an unreachable
    Redis degrades the service rather than taking it down.

    Returns:
        Overall and per-component health
    """
    store_healthy = await check_database_connection()
    redis_healthy = await check_redis_connection()
    identity_ready = is_firebase_initialized()

    if store_healthy and identity_ready:
        overall = "healthy" if redis_healthy else "degraded"
    else:
        overall = "unhealthy"

    return DetailedHealthResponse(
        status=overall,
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
        profile_store=_component_status(store_healthy),
        rate_limiter=_component_status(redis_healthy),
        identity_provider=_component_status(identity_ready),
    )
