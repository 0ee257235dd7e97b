"""
Cache inspection endpoints.
"""

from __future__ import annotations

import re

from fastapi import APIRouter, Query

from api.dependencies import AppSettings, Caches, RateLimiter
from api.middleware.exception_handlers import AppException, ValidationException
from models.error_models import ErrorCode, ErrorDetail
from models.schemas.health import CacheInvalidateResponse, CacheStatsModel, CacheStatsResponse

router = APIRouter()


@router.get(
    "/cache/stats",
    response_model=CacheStatsResponse,
    summary="Cache statistics",
    description="Hit/miss/eviction counters for every named cache and the rate limiter's store.",
)
async def cache_stats(caches: Caches, rate_limiter: RateLimiter) -> CacheStatsResponse:
    stats = caches.stats()
    stats[rate_limiter.cache.name] = rate_limiter.cache.get_stats().to_dict()
    return CacheStatsResponse(caches={name: CacheStatsModel(**values) for name, values in stats.items()})


@router.delete(
    "/cache",
    response_model=CacheInvalidateResponse,
    summary="Invalidate cache entries",
    description="Delete entries whose key matches a regular expression across all named caches. Development only.",
    responses={
        404: {"description": "Not available outside development"},
        422: {"description": "Invalid pattern"},
    },
)
async def invalidate_cache(
    caches: Caches,
    settings: AppSettings,
    pattern: str = Query(..., min_length=1, description="Regular expression matched against keys"),
) -> CacheInvalidateResponse:
    if not settings.is_development:
        raise AppException(code=ErrorCode.RESOURCE_NOT_FOUND, message="Not found")

    try:
        compiled = re.compile(pattern)
    except re.error as exc:
        raise ValidationException(
            message="Invalid cache key pattern",
            errors=[ErrorDetail(field="pattern", message=str(exc), code="invalid_regex")],
        ) from exc

    removed = caches.invalidate(compiled)
    return CacheInvalidateResponse(pattern=pattern, removed=removed)
