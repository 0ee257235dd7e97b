"""Fixtures for route tests against the fully assembled application."""

from __future__ import annotations

from collections.abc import Generator

import pytest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.main import create_app
from api.services.auth_service import AuthService
from core.constants import Settings
from models.api_models import UserInfo


@pytest.fixture
def app() -> FastAPI:
    return create_app()


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    """TestClient with the lifespan running (caches, storage, services built)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(settings: Settings) -> dict[str, str]:
    token = AuthService(settings).issue_access_token(UserInfo(id="7", email="dev@example.com"))
    return {"Authorization": f"Bearer {token}"}
