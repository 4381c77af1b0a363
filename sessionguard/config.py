from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sessionguard.logging import get_logger
from sessionguard.service.errors import ConfigurationError

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


class SigningAlgorithm(str, Enum):
    """HMAC algorithms accepted for access tokens."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"


def parse_duration(value: str) -> int:
    """Convert a duration string such as ``15m`` or ``7d`` to seconds.

    Raises:
        ValueError: if the string does not match ``^\\d+[smhd]$``.
    """
    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid duration format: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token lifecycle engine."""

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_algorithm: SigningAlgorithm = env_field(SigningAlgorithm.HS256, "JWT_ALGORITHM")
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Allowance for clock skew when checking token expiry",
    )
    access_token_ttl: str = env_field("15m", "ACCESS_TOKEN_TTL")
    refresh_token_ttl: str = env_field("7d", "REFRESH_TOKEN_TTL")

    enable_blacklist: bool = env_field(True, "ENABLE_BLACKLIST")
    enable_rate_limit: bool = env_field(True, "ENABLE_RATE_LIMIT")
    enable_progressive_delay: bool = env_field(True, "ENABLE_PROGRESSIVE_DELAY")
    max_concurrent_sessions: int | None = env_field(
        5,
        "MAX_CONCURRENT_SESSIONS",
        description="Per-user session cap enforced at login; 0 or unset disables it",
    )

    # Defaults follow the strict preset: 3 failures in 15 minutes lock for 1 hour
    rate_limit_window_ms: int = env_field(15 * 60 * 1000, "RATE_LIMIT_WINDOW_MS")
    rate_limit_max_attempts: int = env_field(3, "RATE_LIMIT_MAX_ATTEMPTS")
    rate_limit_lockout_ms: int = env_field(60 * 60 * 1000, "RATE_LIMIT_LOCKOUT_MS")
    rate_limit_reset_on_success: bool = env_field(True, "RATE_LIMIT_RESET_ON_SUCCESS")

    max_devices_per_user: int = env_field(10, "MAX_DEVICES_PER_USER")
    max_sessions_per_device: int = env_field(3, "MAX_SESSIONS_PER_DEVICE")
    require_verification_for_new_device: bool = env_field(
        True, "REQUIRE_VERIFICATION_FOR_NEW_DEVICE"
    )

    blacklist_cleanup_interval_seconds: float = env_field(
        60.0, "BLACKLIST_CLEANUP_INTERVAL_SECONDS"
    )
    session_cleanup_interval_seconds: float = env_field(
        300.0, "SESSION_CLEANUP_INTERVAL_SECONDS"
    )
    storage_timeout_seconds: float = env_field(
        5.0,
        "STORAGE_TIMEOUT_SECONDS",
        description="Deadline for a single storage call; exceeding it is a failure",
    )

    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")

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
        return load_settings(**merged)

    @field_validator("jwt_secret")
    @classmethod
    def _validate_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT secret is required")
        if len(value) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT secret must be at least {MIN_SECRET_LENGTH} characters long"
            )
        return value

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: SigningAlgorithm) -> SigningAlgorithm:
        return SigningAlgorithm(value)

    @field_validator("access_token_ttl", "refresh_token_ttl")
    @classmethod
    def _validate_ttl(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator(
        "rate_limit_window_ms",
        "rate_limit_max_attempts",
        "rate_limit_lockout_ms",
        "max_devices_per_user",
        "max_sessions_per_device",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("max_concurrent_sessions")
    @classmethod
    def _validate_session_cap(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator(
        "blacklist_cleanup_interval_seconds",
        "session_cleanup_interval_seconds",
        "storage_timeout_seconds",
    )
    @classmethod
    def _validate_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_duration(self.access_token_ttl)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_duration(self.refresh_token_ttl)


def load_settings(**values: Any) -> Settings:
    """Build settings, turning validation failures into ConfigurationError."""

    try:
        return Settings(**values)
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        logger.error("settings_invalid", fields=fields)
        raise ConfigurationError(
            f"Invalid configuration: {', '.join(fields) or 'settings'}",
            detail={"errors": [err["msg"] for err in exc.errors()]},
        ) from exc


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
