"""
Process-local cache tier: small, bounded LRU with per-entry expiry.

Patterns use the same glob syntax as Redis SCAN MATCH (``*``, ``?``,
``[...]``) so one invalidation pattern works against both tiers.
"""

from __future__ import annotations

import fnmatch
import threading
import time
from collections import OrderedDict
from typing import Any, Callable

from services.reco.models import CacheEntry


class _Miss:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


class LocalTier:

    def __init__(
        self,
        max_entries: int = 2048,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str, category: str) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return MISS
            if entry.expired(now) or entry.category != category:
                del self._entries[key]
                return MISS
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: str, value: Any, category: str, ttl: float) -> None:
        entry = CacheEntry(key, value, category, self._clock(), ttl)
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, pattern: str) -> list[str]:
        with self._lock:
            doomed = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for k in doomed:
                del self._entries[k]
        return doomed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
