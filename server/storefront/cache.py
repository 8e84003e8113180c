"""
Cache backends used by the signing-key cache and the rate limiter.

Both consumers talk to the Cache interface only, so the in-memory backend
(per-process, lost on deploy) can be swapped for the Redis backend (shared
across instances) through settings without touching business logic.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Optional, Tuple

import redis.asyncio as aioredis

from .settings import settings

logger = logging.getLogger(__name__)


class Cache(ABC):
    """Key/value cache with per-entry TTL (seconds)."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def evict(self, key: str) -> None:
        ...

    async def incr(self, key: str, ttl: float) -> int:
        """
        Increment a counter, starting a new one with `ttl` if absent.

        The TTL is only applied when the counter is created, which gives
        fixed-window semantics.
        """
        current = await self.get(key)
        value = int(current or 0) + 1
        await self.set(key, value, ttl if current is None else None)
        return value

    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until `key` expires, or None when unknown."""
        return None

    async def close(self) -> None:
        return None


class MemoryCache(Cache):
    """
    Bounded in-process cache.

    Entries expire after their TTL; when `max_entries` is reached the oldest
    entry is evicted first.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        default_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        # key -> (value, expires_at or None)
        self._entries: "OrderedDict[str, Tuple[Any, Optional[float]]]" = OrderedDict()
        self._lock = asyncio.Lock()

    def _expired(self, expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and expires_at <= now

    def _purge_expired(self, now: float) -> None:
        stale = [k for k, (_, exp) in self._entries.items() if self._expired(exp, now)]
        for key in stale:
            del self._entries[key]

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at, self._clock()):
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        async with self._lock:
            now = self._clock()
            ttl = ttl if ttl is not None else self.default_ttl
            if key in self._entries:
                # Keep the original expiry when no TTL is given (counters)
                _, old_expiry = self._entries.pop(key)
                expires_at = now + ttl if ttl is not None else old_expiry
            else:
                expires_at = now + ttl if ttl is not None else None
            if len(self._entries) >= self.max_entries:
                self._purge_expired(now)
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
            self._entries[key] = (value, expires_at)

    async def evict(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def incr(self, key: str, ttl: float) -> int:
        async with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None or self._expired(entry[1], now):
                if len(self._entries) >= self.max_entries:
                    self._purge_expired(now)
                while len(self._entries) >= self.max_entries:
                    self._entries.popitem(last=False)
                self._entries[key] = (1, now + ttl)
                return 1
            value, expires_at = entry
            self._entries[key] = (int(value) + 1, expires_at)
            return int(value) + 1

    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until `key` expires, or None if absent/non-expiring."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry[1] is None:
                return None
            return max(0.0, entry[1] - self._clock())

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache(Cache):
    """Shared cache over redis.asyncio; values are stored as JSON."""

    def __init__(self, client, prefix: str = "storefront:"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "storefront:") -> "RedisCache":
        client = aioredis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=5)
        return cls(client, prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if ttl is not None:
            await self._client.set(self._key(key), json.dumps(value), ex=max(1, int(ttl)))
        else:
            await self._client.set(self._key(key), json.dumps(value), keepttl=True)

    async def evict(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def incr(self, key: str, ttl: float) -> int:
        full_key = self._key(key)
        value = await self._client.incr(full_key)
        if value == 1:
            await self._client.expire(full_key, max(1, int(ttl)))
        return int(value)

    async def ttl(self, key: str) -> Optional[float]:
        remaining = await self._client.ttl(self._key(key))
        return float(remaining) if remaining and remaining > 0 else None

    async def close(self) -> None:
        await self._client.aclose()


def create_cache(max_entries: int = 1000, default_ttl: Optional[float] = None) -> Cache:
    """Build the cache backend selected by settings."""
    if settings.cache_backend == "redis":
        logger.info(f"Using Redis cache backend at {settings.redis_url}")
        return RedisCache.from_url(settings.redis_url)
    return MemoryCache(max_entries=max_entries, default_ttl=default_ttl)
