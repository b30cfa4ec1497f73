from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


def _revoked_key(token_hash: str) -> str:
    return f"auth:revoked:{token_hash}"


class RedisCache:
    """Thin Redis wrapper for the token revocation list."""

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

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def revoke_token(self, token_hash: str, ttl_seconds: int) -> None:
        """Record a token hash as revoked until its natural expiry."""
        if ttl_seconds > 0:
            await self.client.set(_revoked_key(token_hash), "1", ex=ttl_seconds)

    async def is_token_revoked(self, token_hash: str) -> bool:
        return bool(await self.client.exists(_revoked_key(token_hash)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Revocation cache over the blocking Redis client.

    The runtime selects it under ``TEST_MODE``, where each test drives its own
    event loop and a loop-bound asyncio client would break between tests. Its
    methods stay ``async`` so callers await it exactly like ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client: Redis = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def revoke_token(self, token_hash: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(_revoked_key(token_hash), "1", ex=ttl_seconds)

    async def is_token_revoked(self, token_hash: str) -> bool:
        return bool(self._sync_client.exists(_revoked_key(token_hash)))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
