"""
Card Engine — Bounded In-Memory TTL Cache

Fronts Scryfall's per-card endpoint so card-detail lookups don't re-fetch the
same card on every view. Per-process only, rebuilt empty on restart.

Eviction: when full, the oldest entry by insertion order is removed (FIFO).
Expired entries are dropped lazily on get(); purge_expired() is an optional
compaction pass.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

V = TypeVar("V")


class TtlCache(Generic[V]):
    """
    Thread-safe key -> value cache with per-entry TTL and a max entry count.

    Usage:
        cache: TtlCache[ScryfallLiveData] = TtlCache(ttl_seconds=4 * 3600, max_size=5000)
        cache.set("abc", data)
        cache.get("abc")  # -> data, or None once 4h have passed
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")

        self._ttl = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._store: OrderedDict[str, tuple[V, float]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> V | None:
        """Return the cached value, or None if absent or expired."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._store[key]
                return None
            return value

    def set(self, key: str, value: V) -> None:
        """Insert or refresh an entry, evicting the oldest one if full."""
        with self._lock:
            if key in self._store:
                # Refreshing moves the key to the back of the insertion order
                del self._store[key]
            elif len(self._store) >= self._max_size:
                self._store.popitem(last=False)
            self._store[key] = (value, self._clock() + self._ttl)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._store)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def purge_expired(self) -> int:
        """
        Drop every expired entry.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._store.items() if now >= expires_at]
            for key in expired:
                del self._store[key]

        if expired:
            logger.debug("ttl_cache_purged", removed=len(expired), remaining=len(self._store))
        return len(expired)
