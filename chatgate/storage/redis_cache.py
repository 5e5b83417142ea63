from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the session cache and the consumed-token ledger."""

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
        """Compute a safe TTL from an absolute expiry timestamp.

        Naive timestamps are treated as UTC. The result is clamped to at least
        one second because Redis rejects zero or negative expiries.
        """

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _ledger_key(token_id: str) -> str:
        return f"auth:token:consumed:{token_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def claim_token(self, token_id: str, ttl_seconds: int) -> bool:
        """Atomically mark ``token_id`` consumed; True only for the first caller."""
        created = await self.client.set(
            self._ledger_key(token_id), "1", ex=max(1, int(ttl_seconds)), nx=True
        )
        return bool(created)

    async def is_token_consumed(self, token_id: str) -> bool:
        return bool(await self.client.exists(self._ledger_key(token_id)))

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        await pipe.execute()

    async def revoke_session(self, session_id: str) -> None:
        await self.client.delete(f"auth:session:{session_id}")

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes async methods so callers can await it exactly like
    :class:`RedisCache`.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

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

    async def claim_token(self, token_id: str, ttl_seconds: int) -> bool:
        created = self._sync_client.set(
            RedisCache._ledger_key(token_id), "1", ex=max(1, int(ttl_seconds)), nx=True
        )
        return bool(created)

    async def is_token_consumed(self, token_id: str) -> bool:
        return bool(self._sync_client.exists(RedisCache._ledger_key(token_id)))

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = RedisCache._ttl_seconds(expires_at)
        pipe = self._sync_client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        pipe.execute()

    async def revoke_session(self, session_id: str) -> None:
        self._sync_client.delete(f"auth:session:{session_id}")

    async def close(self) -> None:
        self._sync_client.close()
