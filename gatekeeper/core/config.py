"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Settings are validated once at startup. Any invalid threshold or limit is
reported as a ConfigurationError and prevents the service from starting.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from gatekeeper.core.errors import ConfigurationError


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and not os.getenv("TESTING"):
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _split_csv(value: object) -> object:
    """Split comma-separated env strings into a list of trimmed entries."""

    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    name: str = Field(
        "Gatekeeper",
        description="Service name reported in OpenAPI metadata and logs",
    )
    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    admission_enabled: bool = Field(
        True,
        description="Run the admission engine on protected routes",
    )
    trust_forwarded_for: bool = Field(
        True,
        description="Use the first X-Forwarded-For entry as the client IP",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Sliding window limits per scope."""

    window_ms: int = Field(
        60_000,
        description="Width of the sliding window in milliseconds",
        ge=1,
    )
    per_ip_max: int = Field(
        200,
        description="Maximum requests per window for a single client IP",
        ge=0,
    )
    per_user_max: int = Field(
        100,
        description="Maximum requests per window for an authenticated user",
        ge=0,
    )
    per_endpoint_max: int = Field(
        500,
        description="Default maximum requests per window for endpoint-scoped gates",
        ge=0,
    )
    fail_open_remaining: int = Field(
        999,
        description="Remaining count reported when the counter store is unavailable",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class AbuseSettings(BaseSettings):
    """Progressive blocking thresholds."""

    threshold: int = Field(
        5,
        description="Violations within one hour that trigger a temporary block",
        ge=1,
    )
    block_duration_minutes: int = Field(
        5,
        description="Block duration once the threshold is reached",
        ge=1,
    )
    progressive_block_duration_minutes: int = Field(
        15,
        description="Block duration once violations reach twice the threshold",
        ge=1,
    )
    block_cache_ttl_seconds: int = Field(
        300,
        description="Upper bound for the cached is-blocked flag, also used for permanent blocks",
        ge=1,
    )
    sweep_interval_seconds: int = Field(
        300,
        description="Interval between expired block sweeps (0 disables the sweeper)",
        ge=0,
    )
    permanent_block_retry_after_seconds: int = Field(
        300,
        description="Retry-After reported for blocks without an unblock time",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="ABUSE_",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def _progressive_not_shorter(self) -> "AbuseSettings":
        if self.progressive_block_duration_minutes < self.block_duration_minutes:
            raise ValueError(
                "progressive_block_duration_minutes must be >= block_duration_minutes"
            )
        return self


class AccessListSettings(BaseSettings):
    """Static allow/deny lists. Entries are exact IPs or IPv4 CIDR ranges."""

    whitelist_internal_ips: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["127.0.0.1", "::1"],
        description="Comma-separated internal IPs/CIDRs that bypass all checks",
    )
    whitelist_admin_ips: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["127.0.0.1"],
        description="Comma-separated admin IPs/CIDRs that bypass all checks",
    )
    blacklist_ips: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Comma-separated IPs/CIDRs that are always denied",
    )
    admin_role: str = Field(
        "admin",
        description="Token role that bypasses rate and abuse checks",
    )

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )

    @field_validator(
        "whitelist_internal_ips", "whitelist_admin_ips", "blacklist_ips", mode="before"
    )
    @classmethod
    def _parse_csv(cls, value: object) -> object:
        return _split_csv(value)


class RedisSettings(BaseSettings):
    """Fast counter store connection."""

    enabled: bool = Field(
        True,
        description="Use Redis; when false an in-process counter store is used",
    )
    url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL",
    )
    socket_timeout_seconds: float = Field(
        0.5,
        description="Upper bound for every Redis round trip",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class MongoSettings(BaseSettings):
    """Durable block store connection."""

    enabled: bool = Field(
        True,
        description="Use MongoDB; when false an in-process block store is used",
    )
    uri: str = Field(
        "mongodb://localhost:27017",
        description="MongoDB connection URI",
    )
    database: str = Field(
        "gatekeeper",
        description="Database holding block records",
    )
    block_collection: str = Field(
        "blocked_entities",
        description="Collection holding one record per blocked entity",
    )
    timeout_ms: int = Field(
        500,
        description="Upper bound for server selection and each operation",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
    )


class AuthSettings(BaseSettings):
    """Bearer token verification."""

    jwt_secret: str = Field(
        "change-me",
        description="Shared secret used to verify HS* tokens",
    )
    jwt_algorithm: str = Field(
        "HS256",
        description="Accepted JWT signing algorithm",
    )

    model_config = SettingsConfigDict(
        env_prefix="AUTH_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    output: str = Field("stdout", description="stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(10_485_760, description="Rotate file after this size (0 disables)")
    backup_count: int = Field(5, description="Rotated files to keep")
    request_id_header: str = Field("X-Request-ID", description="Correlation id header")

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=AppSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    abuse: AbuseSettings = Field(default_factory=AbuseSettings)
    access_lists: AccessListSettings = Field(default_factory=AccessListSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


def load_settings() -> Settings:
    """Build and validate settings from the environment.

    Returns:
        Settings: Fully validated configuration.

    Raises:
        ConfigurationError: If any group fails validation.
    """

    try:
        return Settings()
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in err['loc']) or 'settings'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ConfigurationError(
            code="invalid_configuration",
            message="; ".join(problems),
            details={"hint": "Check RATE_LIMIT_*, ABUSE_* and list settings"},
        ) from exc


# Global settings instance - composed from domain-specific settings
settings = load_settings()
