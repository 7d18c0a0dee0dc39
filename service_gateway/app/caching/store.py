"""
Key-value store adapter used by the cache layer and the rate limiter.
"""

from typing import List, Optional, Protocol, Tuple

import redis.asyncio as redis

from shared.logging import get_logger


class KeyValueStore(Protocol):
    """Minimal store contract: get, set-with-expiry, delete, scan."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl: int) -> None:
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def scan(self, pattern: str) -> List[str]:
        ...

    async def increment(self, key: str, ttl: int) -> Tuple[int, int]:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class RedisStore:
    """Redis implementation of :class:`KeyValueStore`.

    Connections come from a shared pool; every call checks one out for the
    duration of a single round trip. Errors are raised to the caller, which
    decides whether to fail open.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        max_connections: int = 50,
        scan_count: int = 500,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.max_connections = max_connections
        self.scan_count = scan_count
        self.logger = get_logger("gateway.store")
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                max_connections=self.max_connections,
                decode_responses=True,
            )
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        client = await self._get_redis()
        value = await client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        client = await self._get_redis()
        await client.set(key, value, ex=int(ttl))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        client = await self._get_redis()
        return int(await client.delete(*keys))

    async def scan(self, pattern: str) -> List[str]:
        """Collect keys matching a glob pattern with SCAN (never KEYS)."""
        client = await self._get_redis()
        keys = []
        async for key in client.scan_iter(match=pattern, count=self.scan_count):
            keys.append(key.decode("utf-8") if isinstance(key, bytes) else key)
        return keys

    async def increment(self, key: str, ttl: int) -> Tuple[int, int]:
        """Increment a counter, starting its expiry window on first hit.

        Returns the new count and the seconds left in the window.
        """
        client = await self._get_redis()
        async with client.pipeline(transaction=True) as pipeline:
            pipeline.incr(key)
            pipeline.ttl(key)
            count, remaining = await pipeline.execute()

        if remaining is None or remaining < 0:
            await client.expire(key, int(ttl))
            remaining = int(ttl)
        return int(count), int(remaining)

    async def ping(self) -> bool:
        client = await self._get_redis()
        return bool(await client.ping())

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis store closed")
