from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, model_validator

from keyward.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session lifecycle core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/keyward", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_root: str | None = env_field(
        None,
        "MEMORY_STORE_ROOT",
        description="Directory for the memory store JSON snapshot; unset keeps state in-process only",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("keyward", "JWT_ISSUER")
    jwt_audience: str = env_field("keyward-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", ge=1
    )
    session_ttl_minutes: int = env_field(
        60 * 24 * 7,
        "SESSION_TTL_MINUTES",
        ge=1,
        description="Lifetime of a session and therefore of its refresh secret",
    )
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh secret on every refresh and invalidate the old one",
    )

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lock_duration_minutes: int = env_field(15, "LOCK_DURATION_MINUTES", ge=1)

    email_verification_ttl_minutes: int = env_field(
        60 * 24, "EMAIL_VERIFICATION_TTL_MINUTES", ge=1
    )
    password_reset_ttl_minutes: int = env_field(
        60, "PASSWORD_RESET_TTL_MINUTES", ge=1
    )

    # Argon2id cost parameters; memory cost is in KiB.
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM", ge=1)
    argon2_hash_length: int = env_field(32, "ARGON2_HASH_LENGTH", ge=16)
    argon2_salt_length: int = env_field(16, "ARGON2_SALT_LENGTH", ge=8)

    hash_timeout_seconds: float = env_field(10.0, "HASH_TIMEOUT_SECONDS", gt=0)
    storage_timeout_seconds: float = env_field(5.0, "STORAGE_TIMEOUT_SECONDS", gt=0)

    audit_async: bool = env_field(
        False,
        "AUDIT_ASYNC",
        description="Queue audit events to a background writer instead of writing inline",
    )
    audit_queue_size: int = env_field(1000, "AUDIT_QUEUE_SIZE", ge=1)

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

    @model_validator(mode="after")
    def _require_jwt_secret(self) -> "Settings":
        # A missing signing key is fatal at startup, never per request.
        if not self.jwt_secret:
            logger.error("jwt_secret_missing")
            raise ValueError(
                "JWT_SECRET is required; set it in the environment or .env file"
            )
        if len(self.jwt_secret) < _MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
            )
        return self


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
