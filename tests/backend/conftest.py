"""Shared test fixtures for Agent Workbench test suite.

Settings are patched before collection so that modules reading them at import
time (api.main) never touch real environment files.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Generator
from typing import Any
from unittest.mock import patch

import pytest

from core.constants import Settings

TEST_SETTINGS: dict[str, Any] = {
    "app_env": "development",
    "app_version": "1.0.0-test",
    "openai_api_key": None,
    "openai_base_url": None,
    "mock_mode": True,
    "debug": False,
    "enable_content_logging": False,
    "database_url": "",
    "jwt_secret": "test-jwt-secret",
    "jwt_algorithm": "HS256",
    "allow_localhost_noauth": True,
    "default_user_id": "1",
    "rate_limit_enabled": True,
    "rate_limit_window_seconds": 60.0,
    "rate_limit_max_authenticated": 120,
    "rate_limit_max_anonymous": 30,
    "rate_limit_status_code": 429,
    "rate_limit_headers": True,
    "stream_idle_timeout": 30.0,
    "stream_max_duration": 300.0,
    "completion_max_retries": 2,
    "completion_retry_delay": 1.0,
    "config_hot_reload": False,
}


def make_settings(**overrides: Any) -> Settings:
    """Settings instance built without reading env files."""
    return Settings.model_construct(**{**TEST_SETTINGS, **overrides})


# ============================================================================
# EARLY INITIALIZATION: Runs before test collection
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Patch get_settings before any test module imports application code."""
    test_settings = make_settings()

    cfg: Any = config
    cfg._test_settings = test_settings

    patcher = patch("core.constants.get_settings", return_value=test_settings)
    patcher.start()
    cfg._settings_patcher = patcher


def pytest_unconfigure(config: pytest.Config) -> None:
    """Clean up settings patch after all tests complete."""
    patcher = getattr(config, "_settings_patcher", None)
    if patcher:
        patcher.stop()


# ============================================================================
# Test Isolation: Settings Management
# ============================================================================


@pytest.fixture(autouse=True)
def settings(request: pytest.FixtureRequest) -> Generator[Settings, None, None]:
    """The patched settings object, restored to test defaults after each test.

    Tests may assign attributes directly (``settings.mock_mode = False``).
    """
    test_settings: Settings = request.config._test_settings  # type: ignore[attr-defined]
    yield test_settings
    for name, value in TEST_SETTINGS.items():
        setattr(test_settings, name, value)


# ============================================================================
# Fake Upstream
# ============================================================================


class FakeProvider:
    """Scriptable completion provider for relay and route tests."""

    is_mock = False

    def __init__(
        self,
        chunks: list[str] | None = None,
        *,
        fail_after: int | None = None,
        error: BaseException | None = None,
        complete_results: list[Any] | None = None,
    ) -> None:
        self.chunks = chunks or []
        self.fail_after = fail_after
        self.error = error
        self.complete_results = list(complete_results or [])
        self.complete_calls = 0
        self.stream_closed = False
        self.requests: list[Any] = []

    async def complete(self, request: Any) -> Any:
        self.requests.append(request)
        self.complete_calls += 1
        outcome = self.complete_results.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def stream(self, request: Any) -> AsyncIterator[str]:
        self.requests.append(request)
        try:
            for index, chunk in enumerate(self.chunks):
                if self.fail_after is not None and index == self.fail_after:
                    assert self.error is not None
                    raise self.error
                yield chunk
            if self.fail_after is not None and self.fail_after >= len(self.chunks):
                assert self.error is not None
                raise self.error
        finally:
            self.stream_closed = True


@pytest.fixture
def fake_provider() -> Callable[..., FakeProvider]:
    """Build a FakeProvider: fake_provider(["Hello", " world"], fail_after=1, error=exc)."""
    return FakeProvider
