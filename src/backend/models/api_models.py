"""
Shared API models for Agent Workbench.
"""

from __future__ import annotations

from pydantic import BaseModel


class UserInfo(BaseModel):
    """Public user information."""

    id: str
    email: str | None = None
    display_name: str | None = None


__all__ = ["UserInfo"]
