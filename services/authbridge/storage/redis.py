"""
Redis credential backend for authbridge.

Records live under a key prefix with no TTL: sessions carry their own
expiry and ambient tokens are replaced, not expired.
"""

import redis.asyncio as aioredis

from authbridge.logging_config import get_logger
from authbridge.redis.client import close_redis, get_redis_health

logger = get_logger(__name__)


class RedisBackend:
    """Credential backend backed by Redis."""

    def __init__(self, client: aioredis.Redis, key_prefix: str = "ab:cred:") -> None:
        self._redis = client
        self._prefix = key_prefix

    async def get(self, key: str) -> str | None:
        return await self._redis.get(self._prefix + key)

    async def put(self, key: str, value: str) -> None:
        await self._redis.set(self._prefix + key, value)

    async def delete(self, key: str) -> bool:
        return await self._redis.delete(self._prefix + key) > 0

    async def keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        async for raw in self._redis.scan_iter(match=f"{self._prefix}{prefix}*", count=100):
            key = raw if isinstance(raw, str) else raw.decode()
            keys.append(key[len(self._prefix) :])
        return sorted(keys)

    async def healthy(self) -> bool:
        return await get_redis_health(self._redis)

    async def close(self) -> None:
        await close_redis(self._redis)
