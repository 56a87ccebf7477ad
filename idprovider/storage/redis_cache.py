from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper mirroring the access-token blacklist."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``; zero or negative means already dead."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return int((expires_at - datetime.now(timezone.utc)).total_seconds())

    @staticmethod
    def _denylist_key(token: str) -> str:
        # Tokens are hashed so raw credentials never sit in Redis keyspace
        digest = hashlib.sha256(token.encode()).hexdigest()
        return f"auth:access:denylist:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_access_token(self, token: str, expires_at: datetime) -> None:
        """Mirror a blacklist entry with a TTL equal to the token's remaining life."""
        ttl = self._ttl_seconds(expires_at)
        if ttl > 0:
            await self.client.set(self._denylist_key(token), "1", ex=ttl)

    async def is_access_token_denylisted(self, token: str) -> bool:
        return bool(await self.client.exists(self._denylist_key(token)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so callers await it exactly like
    ``RedisCache``.
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

    async def denylist_access_token(self, token: str, expires_at: datetime) -> None:
        ttl = RedisCache._ttl_seconds(expires_at)
        if ttl > 0:
            self._sync_client.set(RedisCache._denylist_key(token), "1", ex=ttl)

    async def is_access_token_denylisted(self, token: str) -> bool:
        return bool(self._sync_client.exists(RedisCache._denylist_key(token)))

    async def close(self) -> None:
        self._sync_client.close()
