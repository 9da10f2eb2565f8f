from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from portalauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environment; drives cookie attributes and dev-only token transport."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(filename: str, env_name: str) -> str:
    """Load or generate a secret persisted under SHARED_FS_ROOT.

    Keeps tokens and in-flight OAuth states valid across restarts when the
    operator has not supplied the secret through the environment.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/portalauth"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Atomic write: temp file then rename
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
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
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set {env_name} env var or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallbacks used by the test suite",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    database_url: str = env_field(
        "postgresql://localhost:5432/portalauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/portalauth", "SHARED_FS_ROOT")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("portalauth", "JWT_ISSUER")
    jwt_audience: str = env_field("portal-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", ge=1)

    # OAuth transaction state
    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)
    state_ttl_seconds: int = env_field(
        600,
        "STATE_TTL_SECONDS",
        ge=30,
        description="Maximum age of an encrypted OAuth state payload",
    )

    # Identity provider
    oidc_issuer_url: str = env_field("http://localhost:9000", "OIDC_ISSUER_URL")
    oidc_client_id: str = env_field("portalauth", "OIDC_CLIENT_ID")
    oidc_client_secret: str | None = env_field(None, "OIDC_CLIENT_SECRET")
    oidc_redirect_uri: str = env_field(
        "http://localhost:8000/v1/auth/callback", "OIDC_REDIRECT_URI"
    )
    oidc_scope: str = env_field("openid email", "OIDC_SCOPE")
    oidc_admin_api_url: str | None = env_field(
        None,
        "OIDC_ADMIN_API_URL",
        description="Base URL of the provider's administrative API; admin calls are skipped when unset",
    )
    oidc_admin_api_token: str | None = env_field(None, "OIDC_ADMIN_API_TOKEN")
    provider_timeout_seconds: float = env_field(10.0, "PROVIDER_TIMEOUT_SECONDS", gt=0)
    provider_admin_timeout_seconds: float = env_field(
        5.0, "PROVIDER_ADMIN_TIMEOUT_SECONDS", gt=0
    )
    discovery_max_attempts: int = env_field(3, "DISCOVERY_MAX_ATTEMPTS", ge=1)
    discovery_base_delay_seconds: float = env_field(
        1.0, "DISCOVERY_BASE_DELAY_SECONDS", ge=0
    )

    # Portals
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    investor_portal_url: str = env_field("http://localhost:3001", "INVESTOR_PORTAL_URL")
    issuer_portal_url: str = env_field("http://localhost:3002", "ISSUER_PORTAL_URL")
    admin_portal_url: str = env_field("http://localhost:3003", "ADMIN_PORTAL_URL")
    cookie_domain: str | None = env_field(
        None,
        "COOKIE_DOMAIN",
        description="Shared parent domain for session cookies, e.g. .example.com",
    )
    cors_allow_origins: str | None = env_field(
        None,
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated extra origins; portal URLs are always allowed",
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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"prod", "production"}:
                return Environment.PRODUCTION
            if lowered in {"dev", "development", "local", "test"}:
                return Environment.DEVELOPMENT
        return value

    @field_validator("oidc_issuer_url", "frontend_url", "investor_portal_url",
                     "issuer_portal_url", "admin_portal_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_secret(".jwt_secret", "JWT_SECRET")

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _persisted_secret(".session_secret", "SESSION_SECRET")

    def allowed_origins(self) -> list[str]:
        origins = [
            self.frontend_url,
            self.investor_portal_url,
            self.issuer_portal_url,
            self.admin_portal_url,
        ]
        if self.cors_allow_origins:
            origins.extend(
                origin.strip().rstrip("/")
                for origin in self.cors_allow_origins.split(",")
                if origin.strip()
            )
        return list(dict.fromkeys(origins))


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
