# core/cache.py

import logging
import threading
import time
from typing import Any, Callable, Hashable, Optional

import cachetools

logger = logging.getLogger(__name__)

_MISSING = object()


class TTLCache:
    """
    Time-limited, size-bounded cache owned by whoever constructs it.

    Entries expire ttl_seconds after they were stored. When max_entries is
    reached the least recently used entry is evicted. Storage is a
    cachetools.TTLCache; access goes through a lock since cachetools
    caches are not thread-safe.
    """

    def __init__(self, ttl_seconds: float = 60.0, max_entries: int = 128,
                 clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries = cachetools.TTLCache(maxsize=max_entries, ttl=ttl_seconds, timer=clock)
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            value = self._entries.get(key, _MISSING)
            if value is _MISSING:
                self.misses += 1
                return default
            self.hits += 1
            return value

    def set(self, key: Hashable, value: Any):
        with self._lock:
            self._entries[key] = value

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = compute()
            self.set(key, value)
        return value

    def invalidate(self, key: Optional[Hashable] = None):
        """Drop one entry, or everything when no key is given"""
        with self._lock:
            if key is None:
                self._entries.clear()
                logger.debug("Cache cleared")
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)
