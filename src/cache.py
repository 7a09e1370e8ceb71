"""
TTL result cache.

Backs the claimable-amount cache (30s) and the detection dedup cache (6h).
Entries expire lazily on read and in bulk through cleanup_expired().

Usage:
    from cache import TTLCache

    cache = TTLCache(default_ttl=30.0)
    cache.set("chapter-1_0xabc", check)
    hit = cache.get("chapter-1_0xabc")
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")

_MISSING = object()


@dataclass
class CacheEntry(Generic[T]):
    """A cache entry with value and expiration."""
    value: T
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hitRate": round(self.hit_rate, 4),
        }


class TTLCache(Generic[T]):
    """
    Thread-safe in-memory cache with per-entry expiry.

    When max_size is reached the entry closest to expiry is evicted.
    """

    def __init__(
        self,
        default_ttl: float | None = None,
        max_size: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self._lock = threading.Lock()
        self.stats = CacheStats()

    def get(self, key: str, default: Any = None) -> T | Any:
        entry = self.get_entry(key)
        return default if entry is None else entry.value

    def get_entry(self, key: str) -> CacheEntry[T] | None:
        """Return the live entry for key, counting a hit or miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(self._clock()):
                del self._entries[key]
                entry = None
            if entry is None:
                self.stats.misses += 1
                return None
            self.stats.hits += 1
            return entry

    def set(self, key: str, value: T, ttl: float | None = _MISSING) -> CacheEntry[T]:
        """Store value. ttl=None stores without expiry; omitted uses default_ttl."""
        effective_ttl = self.default_ttl if ttl is _MISSING else ttl
        now = self._clock()
        entry = CacheEntry(
            value=value,
            expires_at=now + effective_ttl if effective_ttl is not None else None,
        )
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_one()
            self._entries[key] = entry
        return entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
            return len(keys)

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in expired:
                del self._entries[k]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict_one(self) -> None:
        if not self._entries:
            return
        victim = min(
            self._entries,
            key=lambda k: self._entries[k].expires_at or float("inf"),
        )
        del self._entries[victim]
        self.stats.evictions += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        return {"size": len(self), "maxSize": self.max_size, **self.stats.to_dict()}
