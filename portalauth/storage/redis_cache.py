from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

_STATE_KEY_PREFIX = "auth:oauth_state:"


class RedisCache:
    """Thin Redis wrapper for consumed OAuth transaction ids."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def consume_state_id(self, transaction_id: str, ttl_seconds: int) -> bool:
        """Record a transaction id as consumed; False when it was already consumed.

        SET NX makes the first consumer win across all processes sharing Redis.
        """
        acquired = await self.client.set(
            f"{_STATE_KEY_PREFIX}{transaction_id}", "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(acquired)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def consume_state_id(self, transaction_id: str, ttl_seconds: int) -> bool:
        acquired = self.client.set(
            f"{_STATE_KEY_PREFIX}{transaction_id}", "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(acquired)

    async def close(self) -> None:
        self.client.close()
