from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis


def _denylist_key(jti: str) -> str:
    return f"auth:access:denylist:{jti}"


class RedisCache:
    """Redis mirror of the revocation registry for O(1) hot-path checks.

    Entries carry a TTL equal to the remaining token lifetime, so Redis
    prunes them by itself once the token would have expired anyway.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Remaining seconds until ``expires_at``; 0 once it has passed."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_token(self, jti: str, expires_at: datetime) -> bool:
        ttl = self._ttl_seconds(expires_at)
        if ttl <= 0:
            return False
        await self.client.set(_denylist_key(jti), "1", ex=ttl)
        return True

    async def is_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(_denylist_key(jti)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable methods as RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def denylist_token(self, jti: str, expires_at: datetime) -> bool:
        ttl = RedisCache._ttl_seconds(expires_at)
        if ttl <= 0:
            return False
        self.client.set(_denylist_key(jti), "1", ex=ttl)
        return True

    async def is_token_denylisted(self, jti: str) -> bool:
        return bool(self.client.exists(_denylist_key(jti)))

    async def close(self) -> None:
        self.client.close()
