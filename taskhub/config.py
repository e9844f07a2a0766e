from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from taskhub.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_ACCESS_SECRET = "change-me-in-production-access"
PLACEHOLDER_REFRESH_SECRET = "change-me-in-production-refresh"
MIN_PRODUCTION_SECRET_LENGTH = 32

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdwy]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "": 1,
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
    "y": 365 * 24 * 60 * 60,
}


def parse_duration(value: str | int) -> int:
    """Convert a duration such as ``15m`` or ``30d`` to seconds.

    Bare integers are read as seconds. Raises ``ValueError`` for anything else.
    """

    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int):
        if value <= 0:
            raise ValueError(f"duration must be positive: {value!r}")
        return value
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return amount * _DURATION_UNITS[match.group(2).lower()]


class Environment(str, Enum):
    """Deployment environments recognised by the settings loader."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"
    PROD = "prod"

    @property
    def is_production_like(self) -> bool:
        return self in {Environment.STAGING, Environment.PRODUCTION, Environment.PROD}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings loaded from the process environment and ``.env``."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field("postgresql://localhost:5432/taskhub", "DATABASE_URL")
    database_pool_min: int = env_field(2, "DB_POOL_MIN", ge=1)
    database_pool_max: int = env_field(10, "DB_POOL_MAX", ge=1)
    database_connect_timeout_seconds: float = env_field(5.0, "DB_CONNECT_TIMEOUT", gt=0)
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviour; never allowed in production-like environments.",
    )

    access_token_secret: str = env_field(PLACEHOLDER_ACCESS_SECRET, "JWT_ACCESS_TOKEN_SECRET")
    refresh_token_secret: str = env_field(PLACEHOLDER_REFRESH_SECRET, "JWT_REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("taskhub", "JWT_ISSUER")
    jwt_audience: str = env_field("taskhub-clients", "JWT_AUDIENCE")
    access_token_ttl: str = env_field(
        "15m", "ACCESS_TOKEN_TTL", description="Access token lifetime, e.g. 15m"
    )
    refresh_token_ttl: str = env_field(
        "30d", "REFRESH_TOKEN_TTL", description="Refresh token lifetime, e.g. 30d"
    )
    password_reset_ttl: str = env_field(
        "1h",
        "PASSWORD_RESET_TTL",
        description="Reset code lifetime; must fall between 15 and 60 minutes",
    )

    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")
    expose_reset_codes: bool = env_field(
        False,
        "EXPOSE_RESET_CODES",
        description="Return reset codes in API responses (no mail delivery is wired)",
    )
    audit_to_store: bool = env_field(True, "AUDIT_TO_STORE")

    auth_rate_limit_per_window: int = env_field(5, "AUTH_RATE_LIMIT_MAX_REQUESTS", ge=1)
    auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    cors_allow_origins: str = env_field(
        "http://localhost:3000,http://localhost:5173", "CORS_ALLOW_ORIGINS"
    )
    debug_errors: bool = env_field(False, "DEBUG_ERRORS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _normalise_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("access_token_ttl", "refresh_token_ttl")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("password_reset_ttl")
    @classmethod
    def _validate_reset_ttl(cls, value: str) -> str:
        seconds = parse_duration(value)
        if seconds < 15 * 60 or seconds > 60 * 60:
            raise ValueError("PASSWORD_RESET_TTL must be between 15 and 60 minutes")
        return value

    @model_validator(mode="after")
    def _validate_secrets(self) -> "Settings":
        if not self.access_token_secret or not self.refresh_token_secret:
            raise ValueError("JWT access and refresh secrets must be non-empty")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("JWT access and refresh secrets must differ")
        if self.database_pool_min > self.database_pool_max:
            raise ValueError("DB_POOL_MIN cannot exceed DB_POOL_MAX")
        if self.environment.is_production_like:
            placeholders = {PLACEHOLDER_ACCESS_SECRET, PLACEHOLDER_REFRESH_SECRET}
            for label, secret in (
                ("JWT_ACCESS_TOKEN_SECRET", self.access_token_secret),
                ("JWT_REFRESH_TOKEN_SECRET", self.refresh_token_secret),
            ):
                if secret in placeholders:
                    raise ValueError(f"{label} still uses the placeholder value")
                if len(secret) < MIN_PRODUCTION_SECRET_LENGTH:
                    raise ValueError(
                        f"{label} must be at least {MIN_PRODUCTION_SECRET_LENGTH} characters"
                    )
            if self.test_mode:
                raise ValueError("TEST_MODE cannot be enabled in a production environment")
        elif self.access_token_secret == PLACEHOLDER_ACCESS_SECRET:
            logger.warning("jwt_placeholder_secret_in_use", environment=self.environment.value)
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_duration(self.access_token_ttl)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_duration(self.refresh_token_ttl)

    @property
    def password_reset_ttl_seconds(self) -> int:
        return parse_duration(self.password_reset_ttl)

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
