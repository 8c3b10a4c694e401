from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

_BLACKLIST_PREFIX = "auth:blacklist:"


class RedisCache:
    """Thin Redis wrapper holding the token revocation list."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling revocation checks."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def revoke_token(self, token_id: str, ttl_seconds: int) -> None:
        """Mark ``token_id`` revoked for ``ttl_seconds``; non-positive TTLs are ignored."""
        if ttl_seconds > 0:
            await self.client.set(
                f"{_BLACKLIST_PREFIX}{token_id}", "revoked", ex=ttl_seconds
            )

    async def is_token_revoked(self, token_id: str) -> bool:
        return bool(await self.client.exists(f"{_BLACKLIST_PREFIX}{token_id}"))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a sync client internally to avoid event loop binding issues in
    pytest, while exposing the same awaitable methods as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def revoke_token(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(
                f"{_BLACKLIST_PREFIX}{token_id}", "revoked", ex=ttl_seconds
            )

    async def is_token_revoked(self, token_id: str) -> bool:
        return bool(self._sync_client.exists(f"{_BLACKLIST_PREFIX}{token_id}"))

    async def close(self) -> None:
        self._sync_client.close()
