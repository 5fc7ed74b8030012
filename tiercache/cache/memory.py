"""In-process memory cache with LRU eviction and TTL expiry."""

import asyncio
import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional

from ..core.config import MemoryCacheConfig
from ..monitoring.logging import get_logger
from ..utils.scheduling import PeriodicTask

logger = get_logger(__name__)

# bytes charged for an entry whose value cannot be serialised
UNSIZED_ENTRY_ESTIMATE = 1024


@dataclass
class CacheEntry:
    """A single memory-tier entry."""
    key: str
    value: Any
    created_at: float
    expires_at: float
    last_accessed: float
    hit_count: int = 0
    tags: FrozenSet[str] = field(default_factory=frozenset)

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "last_accessed": self.last_accessed,
            "hit_count": self.hit_count,
            "tags": sorted(self.tags),
        }


@dataclass
class CacheStats:
    """Derived memory-tier statistics."""
    total_entries: int = 0
    hit_rate: float = 0.0
    miss_rate: float = 0.0
    memory_usage: int = 0
    avg_response_time: float = 0.0
    eviction_count: int = 0
    expired_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "hit_rate": self.hit_rate,
            "miss_rate": self.miss_rate,
            "memory_usage": self.memory_usage,
            "avg_response_time": self.avg_response_time,
            "eviction_count": self.eviction_count,
            "expired_count": self.expired_count,
        }


class MemoryCache:
    """Bounded key/value store with LRU eviction, TTL expiry and tag invalidation.

    Recency is tracked with a monotonically increasing access counter per key;
    eviction removes the key with the lowest counter. Values are returned by
    reference, callers must treat them as read-only.
    """

    def __init__(self, config: MemoryCacheConfig = None, clock: Callable[[], float] = time.time):
        self.config = config or MemoryCacheConfig()
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._access_order: Dict[str, int] = {}
        self._access_counter = 0
        self._lock = threading.RLock()
        self._reset_counters()

        self._cleanup_task: Optional[PeriodicTask] = None
        if self.config.cleanup_interval > 0:
            self._cleanup_task = PeriodicTask(
                self.config.cleanup_interval, self.cleanup_expired, name="memory-cache-cleanup"
            ).start()

    def _reset_counters(self):
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expired = 0
        self._hit_requests = 0
        self._total_response_time = 0.0

    def _touch(self, key: str):
        self._access_counter += 1
        self._access_order[key] = self._access_counter

    def _remove(self, key: str) -> bool:
        self._access_order.pop(key, None)
        return self._cache.pop(key, None) is not None

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when absent or expired."""
        start_time = time.perf_counter()
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._record_miss()
                return None

            now = self._clock()
            if entry.is_expired(now):
                self._remove(key)
                self._expired += 1
                self._record_miss()
                return None

            entry.last_accessed = now
            entry.hit_count += 1
            self._touch(key)

            if self.config.enable_stats:
                self._hits += 1
                self._hit_requests += 1
                self._total_response_time += time.perf_counter() - start_time
            return entry.value

    def _record_miss(self):
        if self.config.enable_stats:
            self._misses += 1

    def set(self, key: str, value: Any, ttl: Optional[float] = None, tags: Iterable[str] = ()):
        """Store ``value`` for ``ttl`` seconds (default TTL when falsy)."""
        if self.config.max_size == 0:
            return
        if ttl is not None and ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl}")

        with self._lock:
            now = self._clock()
            expires_at = now + (ttl or self.config.default_ttl)

            if len(self._cache) >= self.config.max_size and key not in self._cache:
                self._evict_lru()

            self._cache[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                expires_at=expires_at,
                last_accessed=now,
                hit_count=0,
                tags=frozenset(tags or ()),
            )
            self._touch(key)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._remove(key)

    def has(self, key: str) -> bool:
        """Expiry-aware membership test that does not count as a hit or miss."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                self._remove(key)
                self._expired += 1
                return False
            return True

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Remove every entry carrying at least one of ``tags``."""
        tag_set = set(tags)
        if not tag_set:
            return 0
        with self._lock:
            doomed = [key for key, entry in self._cache.items() if entry.tags & tag_set]
            for key in doomed:
                self._remove(key)
        if doomed:
            logger.debug("Invalidated memory entries by tag", tags=sorted(tag_set), count=len(doomed))
        return len(doomed)

    def clear(self):
        """Drop all entries and reset statistics."""
        with self._lock:
            self._cache.clear()
            self._access_order.clear()
            self._reset_counters()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._cache.keys())

    def size(self) -> int:
        return len(self._cache)

    def __len__(self) -> int:
        return len(self._cache)

    def get_stats(self) -> CacheStats:
        with self._lock:
            total_requests = self._hits + self._misses
            hit_rate = self._hits / total_requests if total_requests > 0 else 0.0
            miss_rate = 1.0 - hit_rate if total_requests > 0 else 0.0
            avg_response_time = (
                self._total_response_time / self._hit_requests if self._hit_requests > 0 else 0.0
            )
            entries = list(self._cache.values())
            stats = CacheStats(
                total_entries=len(entries),
                hit_rate=round(hit_rate, 4),
                miss_rate=round(miss_rate, 4),
                memory_usage=0,
                avg_response_time=avg_response_time,
                eviction_count=self._evictions,
                expired_count=self._expired,
            )
        stats.memory_usage = self._estimate_memory_usage(entries)
        return stats

    async def warm_cache(self, entries: List[Dict[str, Any]]):
        """Populate entries from ``{"key", "fetcher", "ttl", "tags"}`` dicts.

        Failures are logged per entry; the call itself never raises.
        """
        async def warm_one(item: Dict[str, Any]):
            key = item["key"]
            fetcher: Callable[[], Awaitable[Any]] = item["fetcher"]
            try:
                value = await fetcher()
                self.set(key, value, item.get("ttl"), item.get("tags") or ())
            except Exception as e:
                logger.warning("Failed to warm memory cache", key=key, error=str(e))

        await asyncio.gather(*(warm_one(item) for item in entries), return_exceptions=True)

    def cleanup_expired(self) -> int:
        """Remove every expired entry regardless of access pattern."""
        with self._lock:
            now = self._clock()
            expired_keys = [key for key, entry in self._cache.items() if entry.is_expired(now)]
            for key in expired_keys:
                self._remove(key)
            self._expired += len(expired_keys)
        if expired_keys:
            logger.debug("Expired memory entries removed", count=len(expired_keys))
        return len(expired_keys)

    def _evict_lru(self):
        if not self._access_order:
            return
        oldest_key = min(self._access_order, key=self._access_order.__getitem__)
        self._remove(oldest_key)
        self._evictions += 1
        logger.debug("Evicted least recently used entry", key=oldest_key)

    @staticmethod
    def _estimate_memory_usage(entries: List[CacheEntry]) -> int:
        total_size = 0
        for entry in entries:
            try:
                # two bytes per character, a rough UTF-16 figure
                total_size += len(json.dumps(entry.to_dict(), default=str)) * 2
            except (TypeError, ValueError, RecursionError):
                total_size += UNSIZED_ENTRY_ESTIMATE
        return total_size

    def destroy(self):
        """Stop the cleanup timer and release all entries."""
        if self._cleanup_task is not None:
            self._cleanup_task.stop()
            self._cleanup_task = None
        self.clear()
