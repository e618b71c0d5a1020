"""
Thread-safe in-process cache used for computed script hashes.
"""
import threading
import time
import weakref
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional, Tuple

import structlog

logger = structlog.get_logger()


class LRUCache:
    """Thread-safe LRU cache with TTL support."""

    def __init__(self, max_size: int = 1000, default_ttl: int = 3600):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self.cache = OrderedDict()
        self.timestamps = {}
        self.lock = threading.RLock()

    def get(self, key: Hashable) -> Optional[Any]:
        """Get value from cache with TTL check."""
        with self.lock:
            if key in self.cache:
                if self.default_ttl and time.time() - self.timestamps[key] > self.default_ttl:
                    del self.cache[key]
                    del self.timestamps[key]
                    return None

                # Move to end (most recently used)
                self.cache.move_to_end(key)
                return self.cache[key]
            return None

    def set(self, key: Hashable, value: Any) -> None:
        """Set value in cache."""
        with self.lock:
            if key in self.cache:
                self.cache.move_to_end(key)
            elif len(self.cache) >= self.max_size:
                oldest_key = next(iter(self.cache))
                del self.cache[oldest_key]
                del self.timestamps[oldest_key]

            self.cache[key] = value
            self.timestamps[key] = time.time()

    def delete(self, key: Hashable) -> None:
        """Delete key from cache."""
        with self.lock:
            self.cache.pop(key, None)
            self.timestamps.pop(key, None)

    def delete_where(self, predicate: Callable[[Hashable], bool]) -> int:
        """Delete every key matching predicate, returning how many were removed."""
        with self.lock:
            doomed = [key for key in self.cache if predicate(key)]
            for key in doomed:
                del self.cache[key]
                del self.timestamps[key]
            return len(doomed)

    def clear(self) -> None:
        """Clear all cache entries."""
        with self.lock:
            self.cache.clear()
            self.timestamps.clear()

    def __len__(self) -> int:
        with self.lock:
            return len(self.cache)


class HashCache:
    """
    Cache of computed hashes keyed by (source, algorithm).

    Owned by a HashEngine instance. Lookup-or-compute is serialized per key so
    concurrent scans asking for the same source fetch it once; different keys
    compute in parallel. A key lock lives only while some caller holds or
    waits on it.
    """

    def __init__(self, max_size: int = 2000, ttl_seconds: int = 3600):
        self._entries = LRUCache(max_size=max_size, default_ttl=ttl_seconds)
        self._key_locks: "weakref.WeakValueDictionary[Tuple[str, str], threading.Lock]" = \
            weakref.WeakValueDictionary()
        self._guard = threading.Lock()

    def _lock_for(self, key: Tuple[str, str]) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def get(self, source: str, algorithm: str) -> Optional[Any]:
        return self._entries.get((source, algorithm))

    def put(self, source: str, algorithm: str, value: Any) -> None:
        self._entries.set((source, algorithm), value)

    def get_or_compute(self, source: str, algorithm: str, compute: Callable[[], Any],
                       should_cache: Callable[[Any], bool] = lambda value: True) -> Any:
        """
        Return the cached value for (source, algorithm) or compute and store it.

        Values rejected by should_cache (failed fetches) are returned but not stored.
        """
        key = (source, algorithm)
        cached = self._entries.get(key)
        if cached is not None:
            return cached

        with self._lock_for(key):
            # Another worker may have filled it while we waited
            cached = self._entries.get(key)
            if cached is not None:
                return cached

            value = compute()
            if should_cache(value):
                self._entries.set(key, value)
            return value

    def invalidate(self, source: str) -> int:
        """Drop every algorithm's entry for source."""
        removed = self._entries.delete_where(lambda key: key[0] == source)
        if removed:
            logger.debug("Hash cache invalidated", source=source, entries=removed)
        return removed

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
