"""Caching for market reads.

Reserve data and flash-loan premiums change slowly compared with how often
transitions are planned, so adapters keep them for a configurable TTL instead
of reading them from chain on every request.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, TypeVar, Optional

from lending.config import get_settings

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """Cache entry with TTL tracking."""
    value: T
    created_at: float
    ttl_seconds: float

    def is_expired(self) -> bool:
        return time.time() - self.created_at > self.ttl_seconds


class TTLCache(Generic[T]):
    """Key/value cache whose entries expire after a TTL and are dropped lazily."""

    def __init__(self, default_ttl_seconds: float = 60.0):
        self._cache: Dict[str, CacheEntry[T]] = {}
        self._default_ttl = default_ttl_seconds

    def get(self, key: str) -> Optional[T]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._cache[key]
            return None
        return entry.value

    def set(self, key: str, value: T, ttl_seconds: float | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        self._cache[key] = CacheEntry(value=value, created_at=time.time(), ttl_seconds=ttl)

    async def get_or_fetch(self, key: str, fetch: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value or await ``fetch()`` and cache its result.

        Args:
            key: Cache key
            fetch: Coroutine factory called on a miss

        Returns:
            Cached or freshly fetched value
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await fetch()
        self.set(key, value)
        return value

    def delete(self, key: str) -> bool:
        return self._cache.pop(key, None) is not None

    def clear(self) -> int:
        count = len(self._cache)
        self._cache.clear()
        return count

    def __len__(self) -> int:
        return len(self._cache)


# Singleton instances
_reserve_cache: TTLCache | None = None
_fee_cache: TTLCache | None = None


def get_reserve_cache() -> TTLCache:
    """Cache of per-market reserve data, keyed by ``<protocol>:<chain>:<market>``."""
    global _reserve_cache
    if _reserve_cache is None:
        _reserve_cache = TTLCache(default_ttl_seconds=get_settings().reserve_cache_ttl_seconds)
    return _reserve_cache


def get_fee_cache() -> TTLCache:
    """Cache of flash-loan fee rates, keyed by ``<venue>:<chain>``."""
    global _fee_cache
    if _fee_cache is None:
        _fee_cache = TTLCache(default_ttl_seconds=get_settings().reserve_cache_ttl_seconds)
    return _fee_cache
