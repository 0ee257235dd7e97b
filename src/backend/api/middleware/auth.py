from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from api.middleware.exception_handlers import AuthenticationError
from api.middleware.request_context import update_request_context
from api.services.auth_service import AuthService
from core.constants import LOCALHOST_HOSTS, get_settings
from models.api_models import UserInfo
from models.error_models import ErrorCode
from utils.logger import logger

bearer_scheme = HTTPBearer(auto_error=False)


def _is_localhost(request: Request) -> bool:
    """Check if the request originates from localhost."""
    host = request.client.host if request.client else ""
    return host in LOCALHOST_HOSTS


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_request_user(request: Request) -> UserInfo | None:
    """Resolve the caller from an optional bearer token.

    Invalid tokens resolve to anonymous here; protected routes reject
    anonymous callers through get_current_user.
    """
    settings = get_settings()
    auth = AuthService(settings)

    token = _bearer_token(request)
    if token:
        try:
            return auth.user_from_token(token)
        except ValueError as exc:
            logger.debug(f"Ignoring bearer token: {exc}")
            return None

    if settings.allow_localhost_noauth and _is_localhost(request):
        return auth.default_user()
    return None


class AuthContextMiddleware(BaseHTTPMiddleware):
    """Attach the resolved caller to request.state.user for downstream layers."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        user = resolve_request_user(request)
        request.state.user = user
        if user:
            update_request_context(user_id=user.id)
        return await call_next(request)


async def get_optional_user(request: Request) -> UserInfo | None:
    """Caller resolved by AuthContextMiddleware, or resolved now if it did not run."""
    if hasattr(request.state, "user"):
        user: UserInfo | None = request.state.user
        return user
    return resolve_request_user(request)


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> UserInfo:
    """Authenticate incoming REST requests."""
    user = await get_optional_user(request)
    if user:
        return user

    if credentials is not None:
        raise AuthenticationError(message="Invalid token", code=ErrorCode.AUTH_INVALID_TOKEN)
    raise AuthenticationError(message="Authentication required", code=ErrorCode.AUTH_REQUIRED)


CurrentUser = Annotated[UserInfo, Depends(get_current_user)]
OptionalUser = Annotated[UserInfo | None, Depends(get_optional_user)]
