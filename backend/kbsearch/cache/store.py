"""
Persistent Cache Store (L2)

Key/value store with native TTL support. The cache engine only relies on
the PersistentCacheStore protocol; RedisCacheStore is the production
implementation on top of redis.asyncio.

Every method raises CacheFault on failure; callers never retry.
"""

import logging
from typing import List, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from kbsearch.config import settings
from kbsearch.exceptions import CacheFault

logger = logging.getLogger(__name__)


class PersistentCacheStore(Protocol):
    """Boundary of the shared persistent tier."""

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, *keys: str) -> int: ...

    async def keys(self, pattern: str) -> List[str]: ...


class RedisCacheStore:
    """
    Redis-backed persistent tier.

    Uses SETEX for native expiry and SCAN (never KEYS) for pattern listing.
    """

    SCAN_COUNT = 500

    def __init__(
        self,
        redis_url: str = None,
        password: Optional[str] = None,
        client: Optional[aioredis.Redis] = None
    ):
        """
        Initialize the store.

        Args:
            redis_url: redis://host:port/db (uses settings.REDIS_URL if not provided)
            password: Optional Redis password
            client: Pre-built client (tests, shared pools)
        """
        self.redis_url = redis_url or settings.REDIS_URL
        if client is None and not self.redis_url:
            raise ValueError("RedisCacheStore requires a redis_url or a client")

        self._client = client or aioredis.from_url(
            self.redis_url,
            password=password or settings.REDIS_PASSWORD,
            decode_responses=True
        )
        logger.info(f"Redis cache store initialized: {self.redis_url or 'injected client'}")

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds < 1:
            raise ValueError(f"SETEX {key} needs a TTL of at least one second, got {ttl_seconds}")
        try:
            await self._client.setex(key, int(ttl_seconds), value)
        except RedisError as e:
            raise CacheFault(f"SETEX {key} failed: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise CacheFault(f"GET {key} failed: {e}") from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self._client.delete(*keys)
        except RedisError as e:
            raise CacheFault(f"DEL of {len(keys)} keys failed: {e}") from e

    async def keys(self, pattern: str) -> List[str]:
        try:
            return [key async for key in self._client.scan_iter(match=pattern, count=self.SCAN_COUNT)]
        except RedisError as e:
            raise CacheFault(f"SCAN {pattern} failed: {e}") from e

    async def ping(self) -> bool:
        """Health check; False instead of raising."""
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()
