"""
TTL read cache for idempotent backend responses.
"""
import threading
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .core import CacheEntry, RequestKey

logger = logging.getLogger("cache.manager")


class ResponseCache:
    """
    In-memory response cache keyed by (method, path).

    Expiry is checked lazily on lookup; a stale entry is dropped when found.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            ttl_seconds: Default time-to-live for stored entries
            clock: Monotonic time source (seconds)
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[RequestKey, CacheEntry] = {}
        self._cache_lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "expired": 0}

    def lookup(self, key: RequestKey) -> Tuple[bool, Any]:
        """
        Returns:
            (hit, data); data is meaningless on a miss
        """
        now = self._clock()
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return False, None
            if not entry.is_fresh(now):
                del self._cache[key]
                self._stats["expired"] += 1
                logger.info(f"CACHE EXPIRED: {key} [age={entry.age_seconds(now):.1f}s]")
                return False, None
            self._stats["hits"] += 1
            logger.debug(f"CACHE HIT: {key} [age={entry.age_seconds(now):.1f}s]")
            return True, entry.data

    def get(self, key: RequestKey, default: Any = None) -> Any:
        hit, data = self.lookup(key)
        return data if hit else default

    def store(self, key: RequestKey, data: Any, ttl_seconds: Optional[float] = None) -> None:
        entry = CacheEntry(
            data=data,
            stored_at=self._clock(),
            ttl_seconds=self.ttl_seconds if ttl_seconds is None else ttl_seconds,
        )
        with self._cache_lock:
            self._cache[key] = entry

    def invalidate(self, key: RequestKey) -> bool:
        """
        Invalidate a specific cache entry.

        Returns:
            True if entry was found and removed
        """
        with self._cache_lock:
            if key in self._cache:
                del self._cache[key]
                logger.info(f"Invalidated cache: {key}")
                return True
            return False

    def clear(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        with self._cache_lock:
            count = len(self._cache)
            self._cache.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    def __len__(self) -> int:
        with self._cache_lock:
            return len(self._cache)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._cache_lock:
            total = self._stats["hits"] + self._stats["misses"] + self._stats["expired"]
            hit_rate = (self._stats["hits"] / total * 100) if total > 0 else 0
            return {
                "entries": len(self._cache),
                **self._stats,
                "hit_rate_percent": round(hit_rate, 1),
            }
