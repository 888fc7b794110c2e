"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from admission_gate.adapters.rate_limit.base import RateLimitConfig


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and not os.getenv("TESTING"):
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class RateLimitSettings(BaseSettings):
    """Sliding-window quota applied to every guarded route."""

    enabled: bool = Field(
        True,
        description="Enable admission control on guarded routes",
    )
    max_requests: int = Field(
        10,
        description="Maximum number of requests allowed per window (per identifier)",
        ge=1,
    )
    window_ms: int = Field(
        10_000,
        description="Sliding window length in milliseconds",
        ge=1,
    )
    cleanup_interval_ms: int | None = Field(
        None,
        description="In-memory cleanup period in milliseconds (default: 5x window)",
        ge=1,
    )
    fail_open: bool = Field(
        False,
        description="Admit requests when the shared backend is unreachable",
    )
    key_prefix: str = Field(
        "rate-limit:",
        description="Redis key prefix for per-identifier sorted sets",
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )

    def to_config(self) -> RateLimitConfig:
        """Build the engine-level configuration."""
        return RateLimitConfig(
            max_requests=self.max_requests,
            window_ms=self.window_ms,
            cleanup_interval_ms=self.cleanup_interval_ms,
            fail_open=self.fail_open,
        )


class RedisSettings(BaseSettings):
    """Shared backend location. Leave ``url`` unset for in-memory limiting."""

    url: str | None = Field(
        None,
        description="Redis URL, e.g. redis://localhost:6379/0",
    )
    connect_timeout_ms: int = Field(
        2000,
        description="Connect timeout for the startup PING in milliseconds",
        ge=1,
    )
    operation_timeout_ms: int = Field(
        1000,
        description="Upper bound for one rate limit round trip in milliseconds",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log output: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int | None = Field(
        10_485_760,
        description="Rotate the log file at this size (None disables rotation)",
    )
    backup_count: int = Field(5, description="Number of rotated files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    title: str = Field(
        "Admission Gate",
        description="Service title shown in OpenAPI docs",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=AppSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
