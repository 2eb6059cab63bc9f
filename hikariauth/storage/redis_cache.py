from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for sessions, one-time token mirrors and counters.

    All keys are namespaced with ``prefix`` so several deployments can share
    one Redis database.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and first-hit EXPIRE in one round trip so concurrent requests from
    # the same IP cannot undercount or leave a counter without a TTL.
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
elseif redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "hikari:",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._key(key))

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(self._key(key)))

    async def increment(self, key: str, ttl_seconds: int) -> int:
        result = await self._increment(
            keys=[self._key(key)], args=[max(1, int(ttl_seconds))]
        )
        return int(result)

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(self._key(key), max(1, int(ttl_seconds))))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(self._key(key)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
