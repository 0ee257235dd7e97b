"""
Health check API schemas.

Response models for health and cache inspection endpoints
with OpenAPI examples.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class DatabaseHealth(BaseModel):
    """Database connection pool health."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "healthy": True,
                "pool_size": 10,
                "pool_free": 8,
                "pool_used": 2,
            }
        }
    )

    healthy: bool = Field(..., description="Database is accessible")
    pool_size: int = Field(default=0, ge=0, description="Total pool size")
    pool_free: int = Field(default=0, ge=0, description="Available connections")
    pool_used: int = Field(default=0, ge=0, description="Active connections")
    error: str | None = Field(default=None, description="Error if unhealthy")


class CacheStatsModel(BaseModel):
    """Statistics for one named cache."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "size": 42,
                "memory_size": 18230,
                "max_size": 500,
                "max_memory_size": 52428800,
                "hits": 310,
                "misses": 57,
                "evictions": 0,
                "hit_rate": 0.8447,
            }
        }
    )

    size: int = Field(..., ge=0, description="Live entries")
    memory_size: int = Field(..., ge=0, description="Estimated bytes held")
    max_size: int = Field(..., ge=1, description="Entry ceiling")
    max_memory_size: int | None = Field(default=None, description="Byte budget (null = unbounded)")
    hits: int = Field(..., ge=0)
    misses: int = Field(..., ge=0)
    evictions: int = Field(..., ge=0)
    hit_rate: float = Field(..., ge=0.0, le=1.0, description="hits / (hits + misses)")


class CacheStatsResponse(BaseModel):
    """Statistics for every named cache plus the rate limiter's store."""

    caches: dict[str, CacheStatsModel]


class CacheInvalidateResponse(BaseModel):
    """Result of a pattern invalidation."""

    pattern: str
    removed: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "version": "1.0.0",
                "uptime_seconds": 3600.5,
                "startup_time": "2025-01-15T12:00:00Z",
                "mock_mode": False,
                "usage_records": 128,
                "database": {"healthy": True, "pool_size": 10, "pool_free": 8, "pool_used": 2},
            }
        }
    )

    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Overall system health status")
    version: str = Field(..., description="Application version")
    uptime_seconds: float = Field(..., description="Seconds since startup")
    startup_time: str = Field(..., description="Startup timestamp (ISO 8601)")
    mock_mode: bool = Field(default=False, description="Completions are served by the mock provider")
    usage_records: int = Field(default=0, ge=0, description="Token usage records held in memory")
    caches: dict[str, CacheStatsModel] = Field(default_factory=dict, description="Named cache statistics")
    database: DatabaseHealth | None = Field(default=None, description="Database health (null when not configured)")
