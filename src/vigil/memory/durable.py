from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from typing import Callable, Iterator, List, Optional, Protocol

from vigil.memory.models import MemoryItem, MemoryKind, utcnow

log = logging.getLogger(__name__)


class DurableMemoryStore(Protocol):
    """Append-mostly, unbounded store for consolidated knowledge and events.

    ``get`` counts as use: it advances ``access_count``/``last_accessed_at``
    on the stored record and returns the updated copy.  ``store`` overwrites
    on id.
    """

    async def store(self, item: MemoryItem) -> str:
        ...

    async def get(self, item_id: str) -> Optional[MemoryItem]:
        ...

    async def exists(self, item_id: str) -> bool:
        ...

    async def search_by_keyword(self, query: str, limit: int = 10) -> List[MemoryItem]:
        ...

    async def list_by_kind(self, kind: MemoryKind, limit: int = 50) -> List[MemoryItem]:
        ...

    async def list_recent(self, limit: int = 100) -> List[MemoryItem]:
        ...

    async def count(self) -> int:
        ...


def partition_key(item: MemoryItem) -> date:
    return item.timestamp.date()


def keyword_match(item: MemoryItem, query: str) -> bool:
    q = query.lower()
    return (
        q in item.content.lower()
        or q in item.summary.lower()
        or any(q in t for t in item.tags)
    )


class InMemoryDurableStore:
    """Day-partitioned in-process durable store.

    Items live in per-day partitions so recency scans stop early; ``_index``
    maps every id to its partition so ``get`` is O(1) at any age.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._partitions: dict[date, dict[str, MemoryItem]] = {}
        self._index: dict[str, date] = {}
        self._lock = threading.Lock()

    async def store(self, item: MemoryItem) -> str:
        record = item.copy()
        day = partition_key(record)
        with self._lock:
            previous = self._index.get(record.id)
            if previous is not None and previous != day:
                self._partitions[previous].pop(record.id, None)
            self._partitions.setdefault(day, {})[record.id] = record
            self._index[record.id] = day
        log.debug("Stored durable item %s (%s) in partition %s", record.id, record.kind.value, day)
        return record.id

    async def get(self, item_id: str) -> Optional[MemoryItem]:
        with self._lock:
            day = self._index.get(item_id)
            if day is None:
                return None
            record = self._partitions[day][item_id]
            record.touch(self._clock())
            return record.copy()

    async def exists(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._index

    async def search_by_keyword(self, query: str, limit: int = 10) -> List[MemoryItem]:
        return self._scan(lambda item: keyword_match(item, query), limit)

    async def list_by_kind(self, kind: MemoryKind, limit: int = 50) -> List[MemoryItem]:
        return self._scan(lambda item: item.kind is kind, limit)

    async def list_recent(self, limit: int = 100) -> List[MemoryItem]:
        return self._scan(lambda item: True, limit)

    async def count(self) -> int:
        with self._lock:
            return len(self._index)

    def _scan(self, predicate: Callable[[MemoryItem], bool], limit: int) -> List[MemoryItem]:
        out: List[MemoryItem] = []
        if limit <= 0:
            return out
        with self._lock:
            for item in self._newest_first():
                if predicate(item):
                    out.append(item.copy())
                    if len(out) >= limit:
                        break
        return out

    def _newest_first(self) -> Iterator[MemoryItem]:
        for day in sorted(self._partitions, reverse=True):
            items = sorted(self._partitions[day].values(), key=lambda i: i.timestamp, reverse=True)
            yield from items
