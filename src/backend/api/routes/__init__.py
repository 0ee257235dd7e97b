"""
API Router - Aggregates all endpoints under /api.

Usage in main.py:
    from api.routes import router as api_router
    app.include_router(api_router, prefix="/api")
"""

from fastapi import APIRouter

from api.routes import agents, cache, health, usage

router = APIRouter()

# Health endpoints (no auth required, exempt from rate limiting)
router.include_router(
    health.router,
    tags=["Health"],
)

# Agent testing
router.include_router(
    agents.router,
    tags=["Agents"],
)

# Token usage
router.include_router(
    usage.router,
    tags=["Usage"],
)

# Cache inspection
router.include_router(
    cache.router,
    tags=["Cache"],
)

__all__ = ["router"]
