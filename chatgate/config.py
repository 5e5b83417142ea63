from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatgate.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TTL_SECONDS = 30 * 24 * 3600
REFRESH_TOKEN_TTL_SECONDS = 90 * 24 * 3600
SSO_TICKET_TTL_SECONDS = 60
SESSION_TTL_DAYS = 7

DEFAULT_PROTECTED_PREFIXES = ["/home", "/api/conversations", "/api/message"]


class RefreshRotation(str, Enum):
    """How a consumed refresh token is treated after rotation.

    - STATELESS: the old token stays valid until its own expiry
    - ONE_TIME: the old token's jti is claimed in the ledger and rejected on reuse
    """

    STATELESS = "stateless"
    ONE_TIME = "one_time"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Process-wide configuration, built once at startup and never mutated."""

    app_env: str = env_field("development", "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/chatgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/chatgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (sync Redis client, memory fallbacks)",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_seconds: int = env_field(
        ACCESS_TOKEN_TTL_SECONDS,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Default TTL for access tokens and the session_token cookie",
    )
    refresh_token_ttl_seconds: int = env_field(
        REFRESH_TOKEN_TTL_SECONDS,
        "REFRESH_TOKEN_TTL_SECONDS",
        description="TTL for refresh tokens and the refresh_token cookie",
    )
    sso_ticket_ttl_seconds: int = env_field(
        SSO_TICKET_TTL_SECONDS,
        "SSO_TICKET_TTL_SECONDS",
        description="TTL for one-time SSO handoff tickets; they travel in URLs",
    )
    session_ttl_days: int = env_field(SESSION_TTL_DAYS, "SESSION_TTL_DAYS")
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")
    refresh_rotation: RefreshRotation = env_field(
        RefreshRotation.STATELESS, "REFRESH_ROTATION"
    )
    sso_single_use: bool = env_field(True, "SSO_SINGLE_USE")

    protected_prefixes: list[str] = env_field(
        list(DEFAULT_PROTECTED_PREFIXES), "PROTECTED_PREFIXES"
    )
    root_path: str = env_field("/", "ROOT_PATH")
    landing_path: str = env_field("/home", "LANDING_PATH")
    sso_fallback_path: str = env_field("/mini", "SSO_FALLBACK_PATH")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def cookie_secure(self) -> bool:
        return self.is_production

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

    @field_validator(
        "use_memory_store",
        "allow_redis_fallback_dev",
        "test_mode",
        "sso_single_use",
        mode="before",
    )
    @classmethod
    def _parse_flag(cls, value: Any) -> bool:
        return _as_bool(value)

    @field_validator("refresh_rotation")
    @classmethod
    def _validate_rotation(cls, value: RefreshRotation) -> RefreshRotation:
        return RefreshRotation(value)

    @field_validator("protected_prefixes", mode="before")
    @classmethod
    def _split_prefixes(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",")]
        prefixes = []
        for prefix in value or []:
            if not prefix:
                continue
            if not prefix.startswith("/"):
                raise ValueError(f"protected prefix must start with '/': {prefix!r}")
            prefixes.append(prefix.rstrip("/") or "/")
        return prefixes

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "sso_ticket_ttl_seconds",
        "session_ttl_days",
    )
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL values must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/chatgate"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated


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
