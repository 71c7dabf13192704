from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from eventauth.logging import get_logger
from eventauth.storage.models import Role

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and .env."""

    database_url: str = env_field(
        "postgresql://localhost:5432/eventauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field("/srv/eventauth", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, sync Redis client).",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Refresh token signing secret; derived from JWT_SECRET when unset",
    )
    jwt_issuer: str = env_field("event-manager-api", "JWT_ISSUER")
    jwt_audience: str = env_field("event-manager-app", "JWT_AUDIENCE")
    jwt_expires_in: str = env_field("1h", "JWT_EXPIRES_IN")
    jwt_refresh_expires_in: str = env_field("7d", "JWT_REFRESH_EXPIRES_IN")
    jwt_remember_me_expires_in: str = env_field("30d", "JWT_REMEMBER_ME_EXPIRES_IN")
    jwt_clock_skew_seconds: int = env_field(0, "JWT_CLOCK_SKEW_SECONDS", ge=0)

    # Sessions and accounts
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS", gt=0)
    remember_me_session_days: int = env_field(30, "REMEMBER_ME_SESSION_DAYS", gt=0)
    default_role: str = env_field(Role.ONSITE.value, "DEFAULT_ROLE")
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS", ge=0)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", gt=0)

    # Password hashing (argon2id work factor)
    hash_time_cost: int = env_field(3, "HASH_TIME_COST", ge=1)
    hash_memory_cost: int = env_field(65536, "HASH_MEMORY_COST", ge=8)
    hash_parallelism: int = env_field(4, "HASH_PARALLELISM", ge=1)

    # CSRF
    csrf_token_ttl_minutes: int = env_field(60, "CSRF_TOKEN_TTL_MINUTES", gt=0)
    csrf_exempt_paths: list[str] = env_field(
        ["/api/docs", "/health"], "CSRF_EXEMPT_PATHS"
    )

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    trusted_proxy_hops: int = env_field(
        0,
        "TRUSTED_PROXY_HOPS",
        ge=0,
        description="Reverse proxies in front of the app; X-Forwarded-For is ignored when 0",
    )
    rate_limit_window_seconds: int = env_field(900, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    request_timeout_seconds: float = env_field(30, "REQUEST_TIMEOUT_SECONDS", gt=0)
    cleanup_interval_seconds: int = env_field(3600, "CLEANUP_INTERVAL_SECONDS", gt=0)

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

    @property
    def refresh_secret(self) -> str:
        return self.jwt_refresh_secret or f"{self.jwt_secret}_refresh"

    @field_validator("cors_allow_origins", "csrf_exempt_paths", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("default_role")
    @classmethod
    def _validate_default_role(cls, value: str) -> str:
        return Role.parse(value).value

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _validate_refresh_secret(cls, value: str | None) -> str | None:
        if value and len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_REFRESH_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return value or None

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so tokens stay valid across restarts
        state_dir = Path(os.getenv("STATE_DIR", "/srv/eventauth"))
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may be owned by another user (e.g. a mounted volume)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_dir),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= MIN_JWT_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make STATE_DIR writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
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
