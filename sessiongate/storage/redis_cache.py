from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding short-lived verification codes."""

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
        """Seconds until ``expires_at``, clamped to at least 1 for Redis."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _code_key(tenant_id: str, target: str) -> str:
        return f"verify:{tenant_id}:{target}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_verification_code(
        self, tenant_id: str, target: str, code: str, expires_at: datetime
    ) -> None:
        await self.client.set(
            self._code_key(tenant_id, target), code, ex=self._ttl_seconds(expires_at)
        )

    async def pop_verification_code(self, tenant_id: str, target: str) -> Optional[str]:
        """Atomically get and delete a code so it can only be used once."""
        return await self.client.getdel(self._code_key(tenant_id, target))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
