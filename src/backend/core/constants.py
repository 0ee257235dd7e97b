"""
Constants and configuration for Agent Workbench.
Centralizes all magic numbers and configuration values.
Includes Pydantic validation for environment variables.
"""

from __future__ import annotations

import os
import threading

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import (
    DotEnvSettingsSource,
    PydanticBaseSettingsSource,
)

# ============================================================================
# Project Paths
# ============================================================================

#: Project root directory (parent of src/)
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent

# ============================================================================
# Completion Defaults
# ============================================================================

#: Model used when neither the stored agent nor the request names one.
DEFAULT_MODEL = "gpt-4o"

#: Sampling temperature used when none is supplied.
DEFAULT_TEMPERATURE = 0.7

#: Completion budget for direct test calls that do not specify one.
DEFAULT_MAX_TOKENS = 1000

#: Completion budget for stored agents saved without a max_tokens value.
AGENT_DEFAULT_MAX_TOKENS = 2048

#: Characters per token for the streaming usage heuristic.
#: The upstream stream does not report per-chunk usage, so streamed token
#: counts are estimates. Non-streaming calls use provider-reported counts.
CHARS_PER_TOKEN = 4

#: System prompt and message used by the credential verification probe.
VERIFY_SYSTEM_PROMPT = "You are a helpful assistant."
VERIFY_USER_MESSAGE = "Hello, are you working?"
VERIFY_MAX_TOKENS = 50
VERIFY_SUCCESS_MESSAGE = "Successfully connected to OpenAI API"

#: Characters of the first user message used as a new conversation's title.
CONVERSATION_TITLE_LENGTH = 50

#: Canned reply returned by the mock provider when no upstream key is configured.
MOCK_RESPONSE_TEMPLATE = (
    "This is a mock response from the {model} agent. "
    "Configure an OpenAI API key in your settings to receive real completions."
)

# ============================================================================
# Cache Configuration
# ============================================================================


@dataclass(frozen=True, slots=True)
class CachePreset:
    """Construction parameters for one named cache.

    Attributes:
        name: Registry name (also used as the metrics label)
        default_ttl: Seconds an entry lives unless set() overrides it
        max_size: Maximum number of live entries
        use_lru: LRU eviction when True, nearest-to-expiry otherwise
    """

    name: str
    default_ttl: float
    max_size: int
    use_lru: bool = True


#: Named caches created by the CacheRegistry at startup.
#: Static content uses expiry-ordered eviction since its entries rarely get re-read.
CACHE_PRESETS: tuple[CachePreset, ...] = (
    CachePreset("user", default_ttl=5 * 60.0, max_size=1000),
    CachePreset("agent", default_ttl=2 * 60.0, max_size=500),
    CachePreset("prompt", default_ttl=3 * 60.0, max_size=200),
    CachePreset("conversation", default_ttl=60.0, max_size=100),
    CachePreset("api_key", default_ttl=5 * 60.0, max_size=1000),
    CachePreset("static", default_ttl=60 * 60.0, max_size=200, use_lru=False),
)

#: Default aggregate byte budget per cache (50MB).
CACHE_MAX_MEMORY_SIZE = 50 * 1024 * 1024

#: Size charged for values that cannot be serialized for estimation (1KB).
CACHE_FALLBACK_ENTRY_SIZE = 1024

#: Fraction of the count and byte ceilings an LRU eviction pass frees down to.
#: Evicting below the ceiling leaves slack so the next few inserts skip eviction.
CACHE_EVICTION_HEADROOM = 0.9

#: TTL for the rate limiter's backing cache. Windows are written with their
#: own shorter TTL, so this only bounds entries that are never rewritten.
RATE_LIMIT_CACHE_TTL = 60 * 60.0

#: Maximum identities tracked by the rate limiter before eviction kicks in.
RATE_LIMIT_CACHE_MAX_SIZE = 10000

# ============================================================================
# Usage Log Configuration
# ============================================================================

#: Maximum token usage records kept in memory. Oldest records are dropped first.
USAGE_LOG_MAX_RECORDS = 10000

# ============================================================================
# Authentication
# ============================================================================

#: Lifetime of access tokens minted by AuthService.issue_access_token.
ACCESS_TOKEN_EXPIRES_MINUTES = 60

#: Client hosts treated as local for the development no-auth fallback.
LOCALHOST_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})

# ============================================================================
# Logging Configuration
# ============================================================================

#: Maximum size in bytes for log files before rotation (10MB).
LOG_MAX_SIZE = 10 * 1024 * 1024

#: Number of application log backups to retain during rotation.
LOG_BACKUP_COUNT_APP = 5

#: Number of error log backups to retain during rotation.
LOG_BACKUP_COUNT_ERRORS = 3

#: Maximum characters to show in log previews for user input/response.
LOG_PREVIEW_LENGTH = 50

#: Length of generated logger instance IDs (hex characters).
INSTANCE_ID_LENGTH = 8

# ============================================================================
# Error Messages
# ============================================================================

ERROR_MISSING_SYSTEM_PROMPT = "Agent system prompt is required"
ERROR_MISSING_MESSAGE = "Message is required"
ERROR_AGENT_NOT_FOUND = "Agent {agent_id} not found"
ERROR_MISSING_API_KEY = "No API key found. Please add your OpenAI API key in the settings page."
ERROR_UPSTREAM_AUTH = "Invalid or expired OpenAI API key. Please update your API key in settings."
ERROR_UPSTREAM_RATE_LIMITED = "OpenAI API rate limit exceeded. Please try again later."
ERROR_UPSTREAM_SERVER = "OpenAI service is temporarily unavailable. Please try again later."
ERROR_STREAM_TIMEOUT = "Response took too long to complete"
ERROR_STREAM_IDLE_TIMEOUT = "Timed out waiting for the model to respond"
ERROR_UPSTREAM_GENERIC = "OpenAI API error: {detail}"
ERROR_RATE_LIMITED = "Rate limit exceeded. Please slow down your requests."

# ============================================================================
# Environment Configuration with Pydantic Validation
# ============================================================================

#: Valid environment names for configuration loading
Environment = Literal["development", "production", "test"]

#: Backend source directory for .env file resolution
_BACKEND_DIR = Path(__file__).parent.parent

#: Development-only JWT secret. Rejected in production.
_DEFAULT_JWT_SECRET = "change-me-in-prod"


def _get_env_files() -> list[Path]:
    """Determine which .env files to load based on APP_ENV.

    Load order (later files override earlier - pydantic-settings last-wins):
    1. .env (base defaults) - lowest priority
    2. .env.{environment} (environment-specific overrides)
    3. .env.local (local developer overrides, gitignored) - highest priority

    Returns:
        List of Path objects for env files that exist.
    """
    env_name = os.getenv("APP_ENV", "development").lower()
    if env_name not in ("development", "production", "test"):
        env_name = "development"

    candidates = [
        _BACKEND_DIR / ".env",
        _BACKEND_DIR / f".env.{env_name}",
        _BACKEND_DIR / ".env.local",
    ]
    return [p for p in candidates if p.exists()]


def _reload_dotenv_into_environ() -> None:
    """Reload our dotenv files into os.environ so environment-specific values win.

    Must be called BEFORE Settings() instantiation.
    """
    from dotenv import load_dotenv

    for env_file in _get_env_files():
        load_dotenv(env_file, override=True)


class Settings(BaseSettings):
    """Environment settings with validation and environment-specific file support.

    Configuration priority (highest to lowest):
    1. Values passed to Settings() constructor
    2. Environment variables (standard Docker/K8s behavior)
    3. .env.local > .env.{APP_ENV} > .env (dotenv files, last wins)

    The upstream credential is optional: per-user keys stored in the database
    take precedence, and mock mode covers local development without any key.
    """

    # Environment identification
    app_env: Environment = Field(default="development", description="Application environment")
    app_version: str = Field(default="1.0.0", description="Application version")

    # Upstream completion provider
    openai_api_key: str | None = Field(default=None, description="Fallback OpenAI API key")
    openai_base_url: str | None = Field(default=None, description="Custom OpenAI-compatible endpoint")
    mock_mode: bool = Field(
        default=False,
        description="Serve canned completions when no API key resolves (testing without upstream)",
    )

    # Debug and logging
    debug: bool = Field(default=False, description="Enable debug logging")
    enable_content_logging: bool = Field(
        default=False,
        description="Include redacted message previews in logs",
    )

    # Database (empty string disables persistence)
    database_url: str = Field(
        default="",
        description="PostgreSQL connection string; leave empty to run without persistence",
    )
    db_pool_min_size: int = Field(default=2, description="Minimum PostgreSQL connections")
    db_pool_max_size: int = Field(default=10, description="Maximum PostgreSQL connections")
    db_command_timeout: float = Field(default=60.0, description="Default query timeout (seconds)")
    db_connection_timeout: float = Field(default=10.0, description="Connection acquire timeout (seconds)")

    # API server
    api_port: int = Field(default=8000, description="FastAPI port")
    api_host: str = Field(default="0.0.0.0", description="FastAPI host")
    cors_allow_origins: str = Field(default="*", description="Comma-separated allowed CORS origins")
    cors_allow_credentials: bool = Field(default=True, description="Allow credentials on CORS requests")

    # Auth collaborator
    jwt_secret: str = Field(default=_DEFAULT_JWT_SECRET, description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    allow_localhost_noauth: bool = Field(
        default=True,
        description="Treat localhost requests without a token as the default user (development)",
    )
    default_user_id: str = Field(default="1", description="User id assumed for localhost no-auth requests")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, description="Enable request rate limiting")
    rate_limit_window_seconds: float = Field(default=60.0, description="Rate limit window length (seconds)")
    rate_limit_max_authenticated: int = Field(default=120, description="Requests per window for signed-in users")
    rate_limit_max_anonymous: int = Field(default=30, description="Requests per window for anonymous clients")
    rate_limit_status_code: int = Field(default=429, description="Status code for rejected requests")
    rate_limit_headers: bool = Field(default=True, description="Attach X-RateLimit-* headers to responses")

    # Streaming relay
    stream_idle_timeout: float = Field(
        default=30.0,
        description="Maximum gap between upstream chunks before the stream is aborted (seconds)",
    )
    stream_max_duration: float = Field(
        default=300.0,
        description="Maximum end-to-end streaming duration (seconds)",
    )

    # Non-streaming retry
    completion_max_retries: int = Field(default=2, description="Retries for retryable non-streaming failures")
    completion_retry_delay: float = Field(default=1.0, description="Linear backoff step between retries (seconds)")

    # HTTP client timeouts
    http_read_timeout: float = Field(default=120.0, description="HTTP read timeout for upstream calls (seconds)")

    # Graceful shutdown
    shutdown_timeout: float = Field(default=30.0, description="Maximum time to wait for graceful shutdown (seconds)")

    # Hot-reload support (development only)
    config_hot_reload: bool = Field(
        default=False,
        description="Enable configuration hot-reloading (development only, has performance cost)",
    )

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings source priority for environment-specific config.

        Priority (highest to lowest):
        1. init_settings - Values passed to Settings() constructor
        2. env_settings - Environment variables
        3. dotenv files - .env.local > .env.{APP_ENV} > .env (last-wins in list)
        """
        dotenv_source = DotEnvSettingsSource(
            settings_cls,
            env_file=_get_env_files(),
            env_file_encoding="utf-8",
        )
        return (init_settings, env_settings, dotenv_source)

    @field_validator("app_env", mode="before")
    @classmethod
    def validate_app_env(cls, v: str | None) -> str:
        """Validate and normalize APP_ENV value."""
        if v is None:
            return "development"
        normalized = str(v).lower()
        if normalized not in ("development", "production", "test"):
            raise ValueError(f"app_env must be 'development', 'production', or 'test', got '{v}'")
        return normalized

    @field_validator("openai_api_key")
    @classmethod
    def validate_openai_api_key(cls, v: str | None) -> str | None:
        """Basic validation of OpenAI API key format."""
        if v is not None and (not v or len(v) < 10):
            raise ValueError("Invalid OpenAI API key format")
        return v

    @field_validator("rate_limit_window_seconds", "stream_idle_timeout", "stream_max_duration")
    @classmethod
    def validate_positive_duration(cls, v: float) -> float:
        """Durations must be positive."""
        if v <= 0:
            raise ValueError("duration must be greater than zero")
        return v

    @field_validator("rate_limit_max_authenticated", "rate_limit_max_anonymous")
    @classmethod
    def validate_request_ceiling(cls, v: int) -> int:
        """Request ceilings must allow at least one request."""
        if v < 1:
            raise ValueError("rate limit ceilings must be at least 1")
        return v

    @field_validator("jwt_secret")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Validate JWT secret meets minimum security requirements."""
        if not v or len(v) < 8:
            raise ValueError("jwt_secret must be at least 8 characters")
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> Settings:
        """Reject development conveniences in production."""
        if self.app_env == "production":
            if self.jwt_secret == _DEFAULT_JWT_SECRET:
                raise ValueError(
                    "Configuration Error: jwt_secret must be changed from default in production.\n"
                    "Set JWT_SECRET to a secure random string in your .env.production file."
                )
            if self.allow_localhost_noauth:
                raise ValueError(
                    "Configuration Error: allow_localhost_noauth must be False in production.\n"
                    "Set ALLOW_LOCALHOST_NOAUTH=false in your .env.production file."
                )
            if self.mock_mode:
                raise ValueError("Configuration Error: mock_mode cannot be enabled in production.")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """CORS origins as a list."""
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @property
    def persistence_enabled(self) -> bool:
        """Whether a database is configured."""
        return bool(self.database_url)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    @property
    def is_test(self) -> bool:
        """Check if running in test mode."""
        return self.app_env == "test"


# ============================================================================
# Settings Management (Thread-safe with Hot-Reload Support)
# ============================================================================


class _SettingsManager:
    """Thread-safe settings manager with optional hot-reload support."""

    __slots__ = ("_instance", "_lock")

    def __init__(self) -> None:
        self._instance: Settings | None = None
        self._lock = threading.Lock()

    def get(self) -> Settings:
        """Get settings instance, reloading on each call when hot-reload is enabled.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        if self._instance is not None and not self._instance.config_hot_reload:
            return self._instance

        with self._lock:
            if self._instance is not None and not self._instance.config_hot_reload:
                return self._instance

            _reload_dotenv_into_environ()
            self._instance = Settings()
            return self._instance

    def reload(self) -> Settings:
        """Force reload settings from environment files."""
        with self._lock:
            _reload_dotenv_into_environ()
            self._instance = Settings()
            return self._instance

    def clear(self) -> None:
        """Clear cached settings instance (used by tests)."""
        with self._lock:
            self._instance = None


# Module-level singleton manager
_settings_manager = _SettingsManager()


def get_settings() -> Settings:
    """Get settings instance with optional hot-reload support.

    This is the primary entry point for accessing application settings.
    Settings are validated at startup and cached for performance.

    Raises:
        ValueError: If required configuration is missing or invalid.
    """
    return _settings_manager.get()


def reload_settings() -> Settings:
    """Force reload settings from environment files."""
    return _settings_manager.reload()


def clear_settings_cache() -> None:
    """Clear cached settings instance."""
    _settings_manager.clear()
