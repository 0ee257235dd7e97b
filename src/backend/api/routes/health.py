"""
Health check endpoint.
"""

from __future__ import annotations

import time

from datetime import UTC, datetime

from fastapi import APIRouter, Request

from api.dependencies import DB, AppSettings, Caches, UsageLog
from models.schemas.health import CacheStatsModel, DatabaseHealth, HealthResponse
from utils.db_utils import check_pool_health

router = APIRouter()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Service status with cache statistics, usage log size and database pool health.",
    responses={
        200: {
            "description": "System health status",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "version": "1.0.0",
                        "uptime_seconds": 42.5,
                        "startup_time": "2025-01-15T12:00:00+00:00",
                        "mock_mode": False,
                        "usage_records": 3,
                        "caches": {},
                        "database": {"healthy": True, "pool_size": 10, "pool_free": 8, "pool_used": 2},
                    }
                }
            },
        }
    },
)
async def health_check(
    request: Request,
    db: DB,
    caches: Caches,
    usage_log: UsageLog,
    settings: AppSettings,
) -> HealthResponse:
    """Health check endpoint."""
    database = None
    status = "healthy"
    if db is not None:
        db_health_data = await check_pool_health(db)
        database = DatabaseHealth(
            healthy=db_health_data.get("healthy", False),
            pool_size=db_health_data.get("pool_size", 0),
            pool_free=db_health_data.get("pool_free", 0),
            pool_used=db_health_data.get("pool_used", 0),
            error=db_health_data.get("error"),
        )
        # Persistence failures degrade the relay but do not stop it
        if not database.healthy:
            status = "degraded"

    started_at: float = getattr(request.app.state, "started_at", time.time())
    return HealthResponse(
        status=status,
        version=settings.app_version,
        uptime_seconds=round(time.time() - started_at, 3),
        startup_time=datetime.fromtimestamp(started_at, UTC).isoformat(),
        mock_mode=settings.mock_mode,
        usage_records=len(usage_log),
        caches={name: CacheStatsModel(**stats) for name, stats in caches.stats().items()},
        database=database,
    )
