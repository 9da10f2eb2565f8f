from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from portalauth.config import get_settings, reset_settings_cache
from portalauth.logging import get_logger
from portalauth.service.audit import AuditRecorder
from portalauth.service.auth import AuthService
from portalauth.service.identity_provider import IdentityProviderGateway
from portalauth.service.state_codec import StateCodec
from portalauth.service.tokens import TokenEngine
from portalauth.storage.memory import MemoryStore
from portalauth.storage.postgres import PostgresStore
from portalauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, provider_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required to track consumed login states across instances; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; consumed login states "
                    "are tracked in this process only."
                ),
                mode=fallback_mode,
            )

        self.gateway = IdentityProviderGateway(self.settings, transport=provider_transport)
        self.codec = StateCodec(
            self.settings.session_secret,
            self.settings.state_ttl_seconds,
            cache=self.cache,
        )
        self.audit = AuditRecorder(self.store)
        self.tokens = TokenEngine(self.store, self.settings, self.audit)
        self.auth = AuthService(
            self.store,
            self.gateway,
            self.codec,
            self.tokens,
            self.audit,
            self.settings,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            oidc_issuer=self.settings.oidc_issuer_url,
            provider_admin_api=bool(self.settings.oidc_admin_api_url),
        )

    async def aclose(self) -> None:
        await self.auth.drain_side_calls(timeout=self.settings.provider_admin_timeout_seconds)
        await self.gateway.close()
        if self.cache is not None:
            await self.cache.close()
        if hasattr(self.store, "close"):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the first check skips the lock once the
    runtime exists, the second prevents two threads creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_quietly(previous: Runtime) -> None:
    try:
        if isinstance(previous.cache, SyncRedisCache):
            previous.cache.client.close()
            previous.cache = None
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(previous.aclose())
        except RuntimeError:
            asyncio.run(previous.aclose())
    except Exception as exc:
        # Connections may already be closed by the test that owned them
        logger.debug("runtime_close_failed", error_type=type(exc).__name__)


def reset_runtime_for_tests(
    provider_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_quietly(runtime)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(provider_transport=provider_transport)
        return runtime
