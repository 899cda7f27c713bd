"""
Routing result cache.

Bounded in-memory memo of request fingerprint -> routing result.  Entries
expire after a TTL and the least recently used entry is evicted once the
cache is full.  Every operation takes the same lock because even a read
updates recency order.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Mapping, Optional, Tuple

from pydantic import BaseModel

from unirouter.config import get_settings

logger = logging.getLogger(__name__)


class CacheStats(BaseModel):
    """Aggregate cache statistics.

    Attributes:
        hits: Lookups that returned a fresh entry.
        misses: Lookups that found nothing or an expired entry.
        hit_rate: Ratio of hits to total lookups (0.0 if no lookups).
        entry_count: Current number of entries.
        evictions: Entries dropped to respect ``max_size``.
        max_size: Configured capacity.
        ttl_seconds: Configured time-to-live.
    """

    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    entry_count: int = 0
    evictions: int = 0
    max_size: int = 0
    ttl_seconds: float = 0.0


class RouteCache:
    """Thread-safe LRU cache with per-entry TTL.

    Args:
        max_size: Maximum number of entries.  Defaults to
            ``settings.cache.max_entries``.
        ttl_seconds: Time-to-live in seconds.  Defaults to
            ``settings.cache.ttl_seconds``.

    Raises:
        ValueError: If *max_size* is not positive.
    """

    def __init__(self, max_size: Optional[int] = None, ttl_seconds: Optional[float] = None) -> None:
        settings = get_settings().cache
        self.max_size = max_size if max_size is not None else settings.max_entries
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.ttl_seconds
        if self.max_size <= 0:
            raise ValueError("max_size must be positive")

        # key -> (expires_at, value), oldest first
        self._store: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @staticmethod
    def generate_key(fingerprint: Mapping[str, Any]) -> str:
        """Derive a deterministic MD5 key from a fingerprint mapping.

        Args:
            fingerprint: JSON-serialisable request attributes.

        Returns:
            Hex-encoded MD5 digest.
        """
        payload = json.dumps(fingerprint, sort_keys=True, default=str)
        return hashlib.md5(payload.encode("utf-8")).hexdigest()

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value for *key*, or ``None``.

        An expired entry is deleted and counted as a miss.  A hit moves
        the entry to the most recently used position.
        """
        with self._lock:
            item = self._store.get(key)
            if item is None:
                self._misses += 1
                return None

            expires_at, value = item
            if time.monotonic() >= expires_at:
                del self._store[key]
                self._misses += 1
                logger.debug("Cache entry expired", extra={"cache_key": key})
                return None

            self._store.move_to_end(key)
            self._hits += 1
            return value

    def set(self, key: str, value: Any) -> None:
        """Store *value* under *key*, evicting the LRU entry if full."""
        with self._lock:
            if key in self._store:
                self._store.move_to_end(key)
            self._store[key] = (time.monotonic() + self.ttl_seconds, value)
            while len(self._store) > self.max_size:
                evicted_key, _ = self._store.popitem(last=False)
                self._evictions += 1
                logger.debug("Cache entry evicted", extra={"cache_key": evicted_key})

    def invalidate(self, key: str) -> bool:
        """Remove one entry.

        Returns:
            ``True`` if an entry was removed, ``False`` otherwise.
        """
        with self._lock:
            if key in self._store:
                del self._store[key]
                logger.info("Cache entry invalidated", extra={"cache_key": key})
                return True
        return False

    def clear(self) -> int:
        """Remove all entries.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            count = len(self._store)
            self._store.clear()
        logger.info("Cache cleared", extra={"entries_removed": count})
        return count

    def cleanup_expired(self) -> int:
        """Remove all expired entries.

        Returns:
            Number of entries removed.
        """
        now = time.monotonic()
        with self._lock:
            expired_keys = [key for key, (expires_at, _) in self._store.items() if now >= expires_at]
            for key in expired_keys:
                del self._store[key]

        if expired_keys:
            logger.info("Expired entries cleaned up", extra={"count": len(expired_keys)})
        return len(expired_keys)

    def stats(self) -> CacheStats:
        """Return aggregate cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / total if total > 0 else 0.0,
                entry_count=len(self._store),
                evictions=self._evictions,
                max_size=self.max_size,
                ttl_seconds=self.ttl_seconds,
            )

    @property
    def size(self) -> int:
        """Current number of entries, expired ones included."""
        with self._lock:
            return len(self._store)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            item = self._store.get(key)  # type: ignore[arg-type]
            return item is not None and time.monotonic() < item[0]
