from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Credential store implementations."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    api_prefix: str = env_field("/api", "API_PREFIX")
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    data_dir: str = env_field("/srv/sessionguard", "DATA_DIR")
    persist_memory_store: bool = env_field(
        True,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to DATA_DIR/state on every change",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    client_url: str = env_field("http://localhost:5173", "CLIENT_URL")
    test_mode: bool = env_field(False, "TEST_MODE")

    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON", description="One JSON object per log line")
    log_dev_mode: bool = env_field(False, "LOG_DEV_MODE", description="Coloured console logs")

    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", ge=1, description="Lifetime of signed access tokens"
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", ge=1, description="Absolute lifetime of a refresh session"
    )
    max_refresh_sessions: int = env_field(
        5, "MAX_REFRESH_SESSIONS", ge=1, description="Refresh sessions kept per account"
    )

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", ge=1)

    # argon2id cost; defaults sit in the same range as bcrypt cost 12
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    store_write_retries: int = env_field(
        3,
        "STORE_WRITE_RETRIES",
        ge=1,
        description="Attempts for a versioned read-modify-write before giving up",
    )

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

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = (value or "INFO").strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return level

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            return ""
        return "/" + value.strip("/")

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        # Persist a generated secret so tokens stay valid across restarts
        self.jwt_secret = _load_or_create_secret(Path(self.data_dir))
        return self


def _load_or_create_secret(data_dir: Path) -> str:
    secret_path = data_dir / ".jwt_secret"
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(data_dir, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(data_dir))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Write to a temp file then rename
        fd, tmp_path = tempfile.mkstemp(dir=str(data_dir), prefix=".jwt_secret_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make DATA_DIR writable"
        ) from exc
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
