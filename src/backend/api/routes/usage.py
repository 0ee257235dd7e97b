"""
Token usage endpoint.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Query

from api.dependencies import UsageLog
from api.middleware.auth import CurrentUser
from models.schemas.usage import UsageResponse

router = APIRouter()


@router.get(
    "/usage",
    response_model=UsageResponse,
    response_model_by_alias=True,
    summary="Token usage",
    description="Caller's token usage summary and records, optionally since a point in time.",
    responses={
        200: {
            "description": "Usage summary",
            "content": {
                "application/json": {
                    "example": {
                        "summary": {"requests": 2, "promptTokens": 84, "completionTokens": 60, "totalTokens": 144},
                        "records": [],
                        "since": "2025-01-15T00:00:00Z",
                    }
                }
            },
        },
        401: {"description": "Authentication required"},
    },
)
async def get_usage(
    usage_log: UsageLog,
    user: CurrentUser,
    since: datetime | None = Query(default=None, description="ISO 8601 start time (inclusive); naive values are UTC"),
) -> UsageResponse:
    """Get the caller's token usage."""
    if since is not None and since.tzinfo is None:
        since = since.replace(tzinfo=UTC)

    return UsageResponse(
        summary=usage_log.summarize(user.id, since),
        records=usage_log.records(user.id, since),
        since=since,
    )
