"""
Standardized error response models for Agent Workbench API.

Provides consistent error formatting across JSON endpoints and the streaming
relay, with support for request tracking and error categorization.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Application-specific error codes for categorization."""

    # Authentication errors (1xxx)
    AUTH_REQUIRED = "AUTH_1001"
    AUTH_INVALID_TOKEN = "AUTH_1002"
    AUTH_EXPIRED_TOKEN = "AUTH_1003"

    # Validation errors (2xxx)
    VALIDATION_ERROR = "VAL_2001"
    VALIDATION_MISSING_FIELD = "VAL_2002"
    VALIDATION_INVALID_FORMAT = "VAL_2003"

    # Resource errors (3xxx)
    RESOURCE_NOT_FOUND = "RES_3001"
    AGENT_NOT_FOUND = "RES_3002"

    # Agent configuration errors (4xxx)
    MISSING_SYSTEM_PROMPT = "CFG_4001"
    MISSING_MESSAGE = "CFG_4002"
    MISSING_API_KEY = "CFG_4003"

    # Streaming errors (5xxx)
    STREAM_TIMEOUT = "STR_5001"
    STREAM_IDLE_TIMEOUT = "STR_5002"

    # Rate limiting (6xxx)
    RATE_LIMITED = "RATE_6001"

    # External service errors (7xxx)
    EXTERNAL_SERVICE_ERROR = "EXT_7001"
    EXTERNAL_TIMEOUT = "EXT_7002"
    EXTERNAL_RATE_LIMITED = "EXT_7003"
    UPSTREAM_AUTH = "EXT_7004"
    UPSTREAM_SERVER = "EXT_7005"
    OPENAI_ERROR = "EXT_7010"

    # Database errors (8xxx)
    DATABASE_ERROR = "DB_8001"
    DATABASE_CONNECTION_FAILED = "DB_8002"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "INT_9001"
    INTERNAL_CONFIGURATION_ERROR = "INT_9002"
    INTERNAL_UNEXPECTED = "INT_9999"


class ErrorDetail(BaseModel):
    """Detailed information about a specific validation or sub-error."""

    field: str | None = None
    message: str
    code: str | None = None
    value: Any | None = Field(default=None, exclude=True)  # Excluded from response for security


class ErrorResponse(BaseModel):
    """Standardized error response model for REST endpoints.

    The ``error`` field is always the human-readable message string so that
    clients can display it directly; metadata sits alongside it.

    Example response:
    {
        "error": "Agent system prompt is required",
        "code": "CFG_4001",
        "request_id": "req_abc123",
        "timestamp": "2025-01-15T10:30:00Z",
        "path": "/api/agents/test"
    }
    """

    code: ErrorCode
    message: str
    request_id: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: list[ErrorDetail] | None = None
    path: str | None = None
    requires_credentials: bool | None = None
    # Debug info - only included in development mode
    debug: dict[str, Any] | None = Field(default=None, exclude=True)

    def to_dict(self, include_debug: bool = False) -> dict[str, Any]:
        """Convert to dictionary for JSON response.

        Args:
            include_debug: Include debug information (only in development)
        """
        data = self.model_dump(exclude_none=True, mode="json")
        data["error"] = data.pop("message")
        if include_debug and self.debug:
            data["debug"] = self.debug
        return data


# HTTP status code mappings for error codes
ERROR_CODE_TO_STATUS: dict[ErrorCode, int] = {
    # 400 Bad Request
    ErrorCode.MISSING_SYSTEM_PROMPT: 400,
    ErrorCode.MISSING_MESSAGE: 400,
    ErrorCode.MISSING_API_KEY: 400,
    # 401 Unauthorized
    ErrorCode.AUTH_REQUIRED: 401,
    ErrorCode.AUTH_INVALID_TOKEN: 401,
    ErrorCode.AUTH_EXPIRED_TOKEN: 401,
    ErrorCode.UPSTREAM_AUTH: 401,
    # 404 Not Found
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.AGENT_NOT_FOUND: 404,
    # 422 Unprocessable Entity
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.VALIDATION_MISSING_FIELD: 422,
    ErrorCode.VALIDATION_INVALID_FORMAT: 422,
    # 429 Too Many Requests
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.EXTERNAL_RATE_LIMITED: 429,
    # 500 Internal Server Error
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.INTERNAL_CONFIGURATION_ERROR: 500,
    ErrorCode.INTERNAL_UNEXPECTED: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.DATABASE_CONNECTION_FAILED: 500,
    # 502 Bad Gateway
    ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCode.UPSTREAM_SERVER: 502,
    ErrorCode.OPENAI_ERROR: 502,
    # 504 Gateway Timeout
    ErrorCode.EXTERNAL_TIMEOUT: 504,
    ErrorCode.STREAM_TIMEOUT: 504,
    ErrorCode.STREAM_IDLE_TIMEOUT: 504,
}


def get_status_code(error_code: ErrorCode) -> int:
    """Get HTTP status code for an error code."""
    return ERROR_CODE_TO_STATUS.get(error_code, 500)


__all__ = [
    "ERROR_CODE_TO_STATUS",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "get_status_code",
]
