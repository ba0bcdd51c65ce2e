"""Embedding-backed similarity search over the two memory collections.

The index embeds each item's content at write time and the query text at
search time, ranks candidates by cosine similarity and returns only results
at or above ``min_score``.  Blank text never reaches the embedding service;
it maps to a zero vector, which scores 0.0 against everything.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from typing import List, Optional, Protocol, Sequence

from vigil.memory.models import Collection, MemoryItem, ScoredItem, SearchFilters
from vigil.models.embeddings import Embedder
from vigil.resilience import INFERENCE_POLICY, ResilientCaller

log = logging.getLogger(__name__)


class SemanticIndex(Protocol):
    async def index(self, item: MemoryItem, collection: Collection) -> None:
        ...

    async def search(
        self,
        query_text: str,
        collection: Collection,
        max_results: int = 10,
        min_score: float = 0.0,
        filters: Optional[SearchFilters] = None,
    ) -> List[ScoredItem]:
        ...

    async def get_all_recent(self, collection: Collection, max_results: int = 50) -> List[MemoryItem]:
        ...

    async def delete(self, item_id: str, collection: Collection) -> bool:
        ...

    async def count(self) -> int:
        ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between *a* and *b*; 0.0 if either is a zero vector."""
    if len(a) != len(b):
        raise ValueError(f"vector length mismatch: {len(a)} != {len(b)}")
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


class EmbeddingGateway:
    """Embeds text through the inference-class retry policy.

    Shared by every :class:`SemanticIndex` implementation so the blank-text
    rule and the retry budget are applied in one place.
    """

    def __init__(self, embedder: Embedder, caller: Optional[ResilientCaller] = None,
                 cancel: Optional[asyncio.Event] = None) -> None:
        self.embedder = embedder
        self.dimensions = embedder.dimensions
        self._caller = caller or ResilientCaller(INFERENCE_POLICY)
        self._cancel = cancel

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            return [0.0] * self.dimensions
        return await self._caller.call(
            lambda: self.embedder.embed(text),
            cancel=self._cancel,
            description="embedding",
        )


class InMemorySemanticIndex:
    """Brute-force cosine index held in process memory."""

    def __init__(self, embeddings: EmbeddingGateway) -> None:
        self._embeddings = embeddings
        self._collections: dict[Collection, dict[str, MemoryItem]] = {c: {} for c in Collection}
        self._lock = threading.Lock()

    async def index(self, item: MemoryItem, collection: Collection) -> None:
        record = item.copy()
        record.embedding = await self._embeddings.embed(record.content)
        with self._lock:
            self._collections[collection][record.id] = record
        log.debug("Indexed %s into %s", record.id, collection.value)

    async def search(
        self,
        query_text: str,
        collection: Collection,
        max_results: int = 10,
        min_score: float = 0.0,
        filters: Optional[SearchFilters] = None,
    ) -> List[ScoredItem]:
        if max_results <= 0:
            return []
        query = await self._embeddings.embed(query_text)
        with self._lock:
            candidates = list(self._collections[collection].values())
        scored: List[ScoredItem] = []
        for item in candidates:
            if filters is not None and not filters.matches(item):
                continue
            score = cosine_similarity(query, item.embedding or [0.0] * len(query))
            if score >= min_score:
                scored.append(ScoredItem(item=item.copy(), score=score))
        scored.sort(key=lambda s: s.score, reverse=True)
        return scored[:max_results]

    async def get_all_recent(self, collection: Collection, max_results: int = 50) -> List[MemoryItem]:
        with self._lock:
            items = sorted(self._collections[collection].values(),
                           key=lambda i: i.timestamp, reverse=True)
        return [i.copy() for i in items[:max(0, max_results)]]

    async def delete(self, item_id: str, collection: Collection) -> bool:
        with self._lock:
            return self._collections[collection].pop(item_id, None) is not None

    async def count(self) -> int:
        with self._lock:
            return sum(len(c) for c in self._collections.values())

