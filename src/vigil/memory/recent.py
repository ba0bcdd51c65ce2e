from __future__ import annotations

import fnmatch
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol

log = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_TTL_SECONDS = 8 * 3600.0


class RecentMemoryStore(Protocol):
    """Bounded, time-expiring key/value store for the recent tier.

    Capacity is bounded both by entry count and by TTL.  On overflow the
    entry with the oldest timestamp is evicted.  Expired keys read as misses.
    """

    async def put(self, key: str, value: Any, ttl: Optional[float] = None,
                  timestamp: Optional[float] = None) -> None:
        ...

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def replace(self, key: str, value: Any) -> bool:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def list_keys(self, pattern: str = "*") -> List[str]:
        ...

    async def count(self) -> int:
        ...


@dataclass
class _Entry:
    value: Any
    timestamp: float
    expires_at: Optional[float]

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class InMemoryRecentStore:
    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES,
                 default_ttl: Optional[float] = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.time) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    async def put(self, key: str, value: Any, ttl: Optional[float] = None,
                  timestamp: Optional[float] = None) -> None:
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        entry = _Entry(
            value=value,
            timestamp=now if timestamp is None else timestamp,
            expires_at=(now + ttl) if ttl is not None else None,
        )
        with self._lock:
            self._entries[key] = entry
            if len(self._entries) > self.max_entries:
                self._purge_expired(now)
            while len(self._entries) > self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].timestamp)
                del self._entries[oldest]
                log.debug("Recent store over capacity, evicted %s", oldest)

    async def get(self, key: str) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired(now):
                del self._entries[key]
                return None
            return entry.value

    async def replace(self, key: str, value: Any) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expired(now):
                return False
            entry.value = value
            return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def list_keys(self, pattern: str = "*") -> List[str]:
        now = self._clock()
        with self._lock:
            return [
                k for k, e in self._entries.items()
                if not e.expired(now) and fnmatch.fnmatchcase(k, pattern)
            ]

    async def count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for e in self._entries.values() if not e.expired(now))

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_expired(self._clock())

    def _purge_expired(self, now: float) -> int:
        expired = [k for k, e in self._entries.items() if e.expired(now)]
        for k in expired:
            del self._entries[k]
        return len(expired)
