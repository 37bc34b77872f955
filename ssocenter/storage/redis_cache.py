from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

BLACKLIST_PREFIX = "blacklist:"


class RedisCache:
    """Thin Redis wrapper for the session blacklist."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(session_token_id: str) -> str:
        return f"{BLACKLIST_PREFIX}{session_token_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # A short-lived synchronous client keeps the async client off the
        # temporary event loop used during startup.
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

    async def blacklist(self, session_token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(self._key(session_token_id), "1", ex=ttl_seconds)

    async def is_blacklisted(self, session_token_id: str) -> bool:
        return bool(await self.client.get(self._key(session_token_id)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited
    exactly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = RedisCache.DEFAULT_OPERATION_TIMEOUT

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def blacklist(self, session_token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(RedisCache._key(session_token_id), "1", ex=ttl_seconds)

    async def is_blacklisted(self, session_token_id: str) -> bool:
        return bool(self.client.get(RedisCache._key(session_token_id)))

    async def close(self) -> None:
        """Close Redis connection."""
        self.client.close()


__all__ = ["BLACKLIST_PREFIX", "RedisCache", "SyncRedisCache"]
