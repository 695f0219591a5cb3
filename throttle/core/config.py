"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Every policy value is validated once at startup; nothing is merged or
defaulted at call time.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from throttle.services.policy import FOUNDATION_TIER, Policy

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


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Static type checkers treat BaseSettings fields as constructor arguments,
    which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_rate_limit_settings() -> "RateLimitSettings":
    return RateLimitSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class PolicySettings(BaseModel):
    """Raw policy values as they appear in configuration."""

    max_attempts: int = Field(..., ge=1, description="Attempts allowed per window")
    window_seconds: float = Field(..., gt=0, description="Counting window length in seconds")
    block_seconds: float = Field(
        0.0,
        ge=0,
        description="Lockout length once max_attempts is exceeded (0 = no lockout)",
    )

    def to_policy(self) -> Policy:
        return Policy(
            max_attempts=self.max_attempts,
            window_seconds=self.window_seconds,
            block_seconds=self.block_seconds,
        )


def _default_tiers() -> dict[str, PolicySettings]:
    return {
        FOUNDATION_TIER: PolicySettings(max_attempts=60, window_seconds=3600),
        "performance": PolicySettings(max_attempts=120, window_seconds=3600),
        "transformation": PolicySettings(max_attempts=180, window_seconds=3600),
    }


def _default_endpoint_policy() -> PolicySettings:
    return PolicySettings(max_attempts=100, window_seconds=3600)


def _default_auth_policy() -> PolicySettings:
    # 5 attempts per 15 minutes, then locked out for an hour.
    return PolicySettings(max_attempts=5, window_seconds=15 * 60, block_seconds=60 * 60)


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required",
    )
    api_keys: str | None = Field(
        None,
        description=(
            "Comma-separated list of valid API keys, each optionally suffixed "
            "with ':<tier>' (e.g. 'key1:performance,key2')"
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Rate limiting and quota configuration."""

    enabled: bool = Field(
        True,
        description="Enable per-identity API quotas",
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* headers on responses and Retry-After on 429",
    )
    trusted_proxies: str | None = Field(
        None,
        description="Comma-separated IPs/CIDRs whose X-Forwarded-For header is trusted",
    )
    default_tier: str = Field(
        FOUNDATION_TIER,
        description="Tier applied to anonymous callers and unknown tier names",
    )
    tiers: dict[str, PolicySettings] = Field(
        default_factory=_default_tiers,
        description="Tier name to quota policy (JSON in the environment)",
    )
    endpoint_default: PolicySettings = Field(
        default_factory=_default_endpoint_policy,
        description="Per-endpoint quota for endpoints without their own rule",
    )
    endpoints: dict[str, PolicySettings] = Field(
        default_factory=dict,
        description="Endpoint name to per-endpoint quota override (JSON in the environment)",
    )
    login: PolicySettings = Field(
        default_factory=_default_auth_policy,
        description="Policy for login attempts per identifier",
    )
    registration: PolicySettings = Field(
        default_factory=_default_auth_policy,
        validation_alias=AliasChoices("RATE_LIMIT_REGISTRATION", "RATE_LIMIT_REGISTER"),
        description="Policy for registration attempts per email",
    )
    shard_count: int = Field(
        64,
        ge=1,
        description="Number of independently locked partitions in the in-memory store",
    )
    sweep_interval_seconds: float = Field(
        60.0,
        ge=0,
        description="Minimum seconds between sweeps of expired state (0 disables)",
    )
    eviction_grace_seconds: float = Field(
        0.0,
        ge=0,
        description="Extra seconds expired state is kept before eviction",
    )
    quota_fail_open: bool = Field(
        True,
        description=(
            "When the state store is unavailable, let API requests through "
            "(true) or answer 503 (false)"
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        env_nested_delimiter="__",
        case_sensitive=False,
        populate_by_name=True,
    )

    @field_validator("tiers")
    @classmethod
    def _tiers_not_empty(cls, value: dict[str, PolicySettings]) -> dict[str, PolicySettings]:
        if not value:
            raise ValueError("at least one tier must be configured")
        return value

    @field_validator("endpoints")
    @classmethod
    def _endpoint_names_not_blank(
        cls, value: dict[str, PolicySettings]
    ) -> dict[str, PolicySettings]:
        if any(not name.strip() for name in value):
            raise ValueError("endpoint names must not be blank")
        return value

    @model_validator(mode="after")
    def _default_tier_exists(self) -> "RateLimitSettings":
        names = {name.strip().lower() for name in self.tiers}
        if self.default_tier.strip().lower() not in names:
            raise ValueError(f"default_tier {self.default_tier!r} is not one of the configured tiers")
        return self


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log destination: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(0, ge=0, description="Rotate log file at this size (0 = never)")
    backup_count: int = Field(5, ge=0, description="Rotated log files to keep")
    request_id_header: str = Field("X-Request-ID", description="Correlation id header name")

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
