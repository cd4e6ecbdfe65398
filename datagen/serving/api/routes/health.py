"""
Health Check Endpoints

Provides health and readiness checks for orchestration systems.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine

from datagen.cache import AggregateCache
from datagen.config import get_settings
from datagen.database.connection import check_database_health
from datagen.serving.api.dependencies import get_cache, get_engine_dependency

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check(
    engine: AsyncEngine = Depends(get_engine_dependency),
    cache: AggregateCache = Depends(get_cache),
) -> HealthResponse:
    """
    Health check covering database connectivity and snapshot readiness.

    Aggregates without a snapshot degrade the status; an unreachable
    database makes it unhealthy.
    """
    settings = get_settings()
    checks: Dict[str, Any] = {}
    overall_status = "healthy"

    db_health = await check_database_health(engine)
    checks["database"] = db_health
    if db_health.get("status") != "healthy":
        overall_status = "unhealthy"
    else:
        aggregates = {}
        for name in cache.names:
            info = await cache.status(name)
            aggregates[name] = info.to_dict() if info else {"status": "not_ready"}
            if info is None and overall_status == "healthy":
                overall_status = "degraded"
        checks["aggregates"] = aggregates

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Returns 200 if the application is running."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(
    response: Response,
    engine: AsyncEngine = Depends(get_engine_dependency),
) -> Dict[str, str]:
    """Returns 200 if the database answers."""
    db_health = await check_database_health(engine)
    if db_health.get("status") != "healthy":
        response.status_code = 503
        return {"status": "not_ready", "reason": "database_unavailable"}
    return {"status": "ready"}
