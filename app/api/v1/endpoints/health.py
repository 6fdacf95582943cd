"""Liveness and dependency checks."""

from typing import Literal

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from app.config import settings
from app.core.redis_client import check_redis_connection
from app.database import check_database_connection
from app.dependencies import Registry

router = APIRouter(tags=["Health"])

ComponentState = Literal["healthy", "unhealthy"]


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Dependency status plus the number of live notification sockets."""

    database: ComponentState
    redis: ComponentState
    websocket_connections: int


@router.get("/health", response_model=HealthResponse, summary="Basic health check")
async def health_check() -> HealthResponse:
    """Report that the process is up without touching any dependency."""
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    summary="Detailed health check",
    responses={503: {"model": DetailedHealthResponse}},
)
async def detailed_health_check(registry: Registry, response: Response) -> DetailedHealthResponse:
    """
    Check the database and Redis.

    Without the database nothing can be booked, so the service reports
    ``unhealthy`` with a 503. Redis only backs the doctor cache; losing it
    reports ``degraded`` and still answers 200.

    Returns:
        Per-dependency status and the open WebSocket count
    """
    db_healthy = await check_database_connection()
    redis_healthy = await check_redis_connection()

    if not db_healthy:
        overall = "unhealthy"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif not redis_healthy:
        overall = "degraded"
    else:
        overall = "healthy"

    return DetailedHealthResponse(
        status=overall,
        version=settings.app_version,
        environment=settings.environment,
        database="healthy" if db_healthy else "unhealthy",
        redis="healthy" if redis_healthy else "unhealthy",
        websocket_connections=len(registry),
    )


@router.get("/ping", summary="Simple ping")
async def ping() -> dict[str, str]:
    return {"message": "pong"}
