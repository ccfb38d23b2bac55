"""
Key-value caching for results, progress records and provider responses

Implements:
- Async key-value contract with per-entry TTL
- In-memory backend with max-size eviction and statistics
- Redis backend that degrades to a miss/no-op when Redis is unreachable
- Small synchronous TTL memo for block numbers and token metadata
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class KeyValueCache:
    """Async key-value cache contract; values are JSON-compatible."""

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl_seconds: int = 60) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCache(KeyValueCache):
    """
    In-process cache with TTL

    Features:
    - Per-entry expiry
    - Oldest-entry eviction once max_items is reached
    - Hit/miss statistics
    """

    def __init__(self, max_items: int = 10000, clock: Callable[[], float] = time.time):
        self.max_items = max_items
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self.stats = {
            'hits': 0,
            'misses': 0,
            'evictions': 0
        }

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.stats['misses'] += 1
            return None

        payload, expires_at = entry
        if self._clock() >= expires_at:
            self._evict(key)
            self.stats['misses'] += 1
            return None

        self.stats['hits'] += 1
        # Stored as JSON so callers never share mutable state with the cache
        return json.loads(payload)

    async def set(self, key: str, value: Any, ttl_seconds: int = 60) -> None:
        if key not in self._entries and len(self._entries) >= self.max_items:
            self._evict_oldest()
        self._entries[key] = (json.dumps(value), self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()
        logger.info("Memory cache cleared")

    def get_stats(self) -> Dict:
        total_requests = self.stats['hits'] + self.stats['misses']
        hit_rate = self.stats['hits'] / total_requests if total_requests > 0 else 0

        return {
            'hits': self.stats['hits'],
            'misses': self.stats['misses'],
            'evictions': self.stats['evictions'],
            'hit_rate': hit_rate,
            'size': len(self._entries),
            'max_items': self.max_items
        }

    def _evict(self, key: str):
        if key in self._entries:
            del self._entries[key]
            self.stats['evictions'] += 1

    def _evict_oldest(self):
        if not self._entries:
            return
        oldest_key = min(self._entries.items(), key=lambda item: item[1][1])[0]
        self._evict(oldest_key)


class RedisCache(KeyValueCache):
    """Redis-backed cache; errors are logged and treated as a miss or no-op."""

    def __init__(self, client: aioredis.Redis):
        self.redis = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisCache":
        return cls(aioredis.Redis.from_url(redis_url, decode_responses=True))

    async def get(self, key: str) -> Optional[Any]:
        try:
            data = await self.redis.get(key)
            if data:
                return json.loads(data)
        except Exception as e:
            logger.error(f"Redis get error for {key}: {e}")

        return None

    async def set(self, key: str, value: Any, ttl_seconds: int = 60) -> None:
        try:
            await self.redis.setex(key, ttl_seconds, json.dumps(value))
        except Exception as e:
            logger.error(f"Redis set error for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except Exception as e:
            logger.error(f"Redis delete error for {key}: {e}")

    async def close(self) -> None:
        await self.redis.aclose()


def build_cache(redis_url: str = "") -> KeyValueCache:
    """Redis when a URL is configured, otherwise process memory."""
    if redis_url:
        logger.info("Using Redis cache")
        return RedisCache.from_url(redis_url)
    logger.info("REDIS_URL not set, using in-memory cache")
    return MemoryCache()


class TTLCache:
    """Synchronous memo with expiry, used for block numbers and token metadata."""

    def __init__(self, ttl_seconds: float = 3600, max_items: int = 10000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_items = max_items
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        if key not in self._entries and len(self._entries) >= self.max_items:
            oldest = min(self._entries.items(), key=lambda item: item[1][1])[0]
            del self._entries[oldest]
        self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
