from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from core.constants import ACCESS_TOKEN_EXPIRES_MINUTES, Settings, get_settings
from models.api_models import UserInfo


class AuthService:
    """Issues and validates the bearer tokens the workbench accepts.

    Token issuance lives with the wider user system; this service only needs
    to read claims back into a UserInfo (and mint tokens for local tooling).
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def issue_access_token(self, user: UserInfo, expires_minutes: int = ACCESS_TOKEN_EXPIRES_MINUTES) -> str:
        expires_at = datetime.now(UTC) + timedelta(minutes=expires_minutes)
        payload = {
            "sub": user.id,
            "email": user.email,
            "name": user.display_name,
            "type": "access",
            "exp": expires_at,
        }
        token: str = jwt.encode(payload, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)
        return token

    def decode_access_token(self, token: str) -> dict[str, Any]:
        """Decode and validate an access token."""
        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
            )
        except JWTError as exc:
            raise ValueError("Invalid token") from exc

        if payload.get("type") != "access":
            raise ValueError("Invalid token type")
        if not payload.get("sub"):
            raise ValueError("Token has no subject")
        return payload

    def user_from_token(self, token: str) -> UserInfo:
        payload = self.decode_access_token(token)
        return UserInfo(
            id=str(payload["sub"]),
            email=payload.get("email"),
            display_name=payload.get("name"),
        )

    def default_user(self) -> UserInfo:
        """User assumed for unauthenticated localhost requests in development."""
        return UserInfo(id=self.settings.default_user_id)
