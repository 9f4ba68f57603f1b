"""Health check endpoints."""

import logging

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import select

from payments_api.config.env import Settings
from payments_api.db.redis_client import RedisClient
from payments_api.db.session import get_engine

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_VERSION = "0.3.0"


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
        return "up"
    except Exception as e:
        logger.error("HEALTH_DATABASE_DOWN", extra={"error_type": type(e).__name__})
        return f"down: {type(e).__name__}"


def check_redis(settings: Settings) -> str:
    """Check Redis connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        RedisClient.get_client(settings.redis_url).ping()
        return "up"
    except Exception as e:
        logger.error("HEALTH_REDIS_DOWN", extra={"error_type": type(e).__name__})
        return f"down: {type(e).__name__}"


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Liveness endpoint. Always 200; use /readyz for dependency checks.
    """
    return HealthResponse(status="healthy", version=SERVICE_VERSION, services={"api": "up"})


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(request: Request, response: Response) -> HealthResponse:
    """
    Readiness endpoint. Returns 503 if the database or Redis is down.
    """
    settings: Settings = request.app.state.settings
    services = {
        "api": "up",
        "database": check_database(),
        "redis": check_redis(settings),
    }

    if any(svc_status.startswith("down") for svc_status in services.values()):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=SERVICE_VERSION, services=services)

    return HealthResponse(status="ready", version=SERVICE_VERSION, services=services)
