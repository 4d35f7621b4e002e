from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from innosistemas.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than the digest size are rejected
MIN_JWT_SECRET_BYTES = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and admission core."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        gt=0,
        description="Per-call Redis timeout; a timeout is treated like any storage failure",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and the in-memory TTL store fallback.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_seconds: int = env_field(
        3600, "ACCESS_TOKEN_TTL_SECONDS", ge=1, description="Access token TTL in seconds"
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 3600,
        "REFRESH_TOKEN_TTL_SECONDS",
        ge=1,
        description="Refresh token TTL in seconds; also the session record TTL",
    )

    # Rate limits: general traffic
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_capacity: int = env_field(100, "RATE_LIMIT_CAPACITY", ge=1)
    rate_limit_refill_tokens: int = env_field(100, "RATE_LIMIT_REFILL_TOKENS", ge=1)
    rate_limit_refill_period_seconds: float = env_field(
        60.0, "RATE_LIMIT_REFILL_PERIOD_SECONDS", gt=0
    )
    # Rate limits: login / refresh / register traffic
    auth_rate_limit_capacity: int = env_field(10, "AUTH_RATE_LIMIT_CAPACITY", ge=1)
    auth_rate_limit_refill_tokens: int = env_field(
        10, "AUTH_RATE_LIMIT_REFILL_TOKENS", ge=1
    )
    auth_rate_limit_refill_period_seconds: float = env_field(
        60.0, "AUTH_RATE_LIMIT_REFILL_PERIOD_SECONDS", gt=0
    )
    rate_limit_stripes: int = env_field(
        64, "RATE_LIMIT_STRIPES", ge=1, description="Lock stripes for the bucket map"
    )
    rate_limit_prune_interval_seconds: float = env_field(
        0.0,
        "RATE_LIMIT_PRUNE_INTERVAL_SECONDS",
        ge=0,
        description="How often full buckets are dropped from memory; 0 disables pruning",
    )
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Key anonymous rate limits on X-Forwarded-For / X-Real-IP",
    )

    identity_seed_path: str | None = env_field(
        None,
        "IDENTITY_SEED_PATH",
        description="JSON file of identities loaded into the in-memory identity store",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value.encode("utf-8")) < MIN_JWT_SECRET_BYTES:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_BYTES} bytes for HS256"
                )
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; using an ephemeral secret for this process",
        )
        return secrets.token_urlsafe(64)


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
