"""Routes memory writes to the right tier and builds reasoning context.

:class:`MemoryTieringService` is the only writer the control loop and the
consolidation service talk to.  A new item goes to the recent tier with an
awaited write and to the ``short-term`` semantic collection through the
background pool.  Durable writes (promotions and learnings) are awaited and
indexed into ``long-term`` the same fire-and-forget way.

Reads combine both tiers: :meth:`MemoryTieringService.build_combined_context`
renders recent items followed by semantically relevant durable items as the
text handed to the reasoning call.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional

from vigil.errors import OperationCancelled
from vigil.memory.durable import DurableMemoryStore
from vigil.memory.models import (
    Collection,
    ConsolidatedLearning,
    MemoryItem,
    MemoryKind,
    ScoredItem,
    SearchFilters,
    summarize,
    utcnow,
)
from vigil.memory.recent import RecentMemoryStore
from vigil.memory.semantic import SemanticIndex
from vigil.resilience import STORAGE_POLICY, ResilientCaller

if TYPE_CHECKING:
    from vigil.orchestrator.background import BackgroundWriter

log = logging.getLogger(__name__)

RECENT_KEY_PREFIX = "recent:"
PROMOTED_TAG = "promoted"

_BASE_IMPORTANCE: Dict[MemoryKind, float] = {
    MemoryKind.OBSERVATION: 0.3,
    MemoryKind.DECISION: 0.7,
    MemoryKind.REFLECTION: 0.8,
    MemoryKind.SUCCESS: 0.7,
    MemoryKind.FAILURE: 0.6,
    MemoryKind.LEARNING: 0.9,
}
_LONG_CONTENT_CHARS = 200
_LONG_CONTENT_BOOST = 0.1
_OUTPUT_BOOST = 0.2

# Recent items at or above this importance are shown in full.
FULL_CONTENT_RECENT = 0.8
# Same, for durable items in the relevant-experience section.
FULL_CONTENT_RELEVANT = 0.7


def compute_importance(kind: MemoryKind, content: str, output: Optional[str] = None) -> float:
    """Deterministic importance score for a new item."""
    score = _BASE_IMPORTANCE[kind]
    if len(content) > _LONG_CONTENT_CHARS:
        score += _LONG_CONTENT_BOOST
    if output:
        score += _OUTPUT_BOOST
    return round(min(1.0, score), 4)


def recent_key(item_id: str) -> str:
    return f"{RECENT_KEY_PREFIX}{item_id}"


@dataclass
class MemorySearchResponse:
    """Result of :meth:`MemoryTieringService.search_memories`.

    ``error`` is set (and ``results`` empty) when the search failed.
    """

    query: str
    results: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MemoryTieringService:
    """Orchestrates writes into recent/durable tiers and the semantic index.

    Args:
        recent: The bounded recent tier.
        durable: The unbounded durable tier.
        semantic: Semantic index, or ``None`` when semantic search is disabled.
        background: Pool for fire-and-forget index writes.  With ``None`` each
            index write runs as its own task whose failure is logged.
        storage_caller: Retry wrapper for recent/durable store I/O.
        cancel: Shutdown event observed by every retried call.
        long_term_min_score: Threshold for the relevant-experience section.
        similar_task_min_score: Threshold for :meth:`find_similar_completed_task`.
    """

    def __init__(
        self,
        recent: RecentMemoryStore,
        durable: DurableMemoryStore,
        semantic: Optional[SemanticIndex] = None,
        background: Optional[BackgroundWriter] = None,
        *,
        storage_caller: Optional[ResilientCaller] = None,
        cancel: Optional[asyncio.Event] = None,
        long_term_min_score: float = 0.7,
        similar_task_min_score: float = 0.85,
    ) -> None:
        self.recent = recent
        self.durable = durable
        self.semantic = semantic
        self.background = background
        self._storage = storage_caller or ResilientCaller(STORAGE_POLICY)
        self._cancel = cancel
        self.long_term_min_score = long_term_min_score
        self.similar_task_min_score = similar_task_min_score

    @property
    def storage_caller(self) -> ResilientCaller:
        return self._storage

    @property
    def semantic_enabled(self) -> bool:
        return self.semantic is not None

    # -- writes ---------------------------------------------------------------

    async def record(
        self,
        kind: MemoryKind,
        content: str,
        *,
        summary: Optional[str] = None,
        tags: Iterable[str] = (),
        output: Optional[str] = None,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> MemoryItem:
        """Create an item, write it to the recent tier and queue its indexing."""
        item = MemoryItem(
            kind=kind,
            content=content,
            summary=summary or "",
            tags=set(tags) | {kind.value},
            importance=compute_importance(kind, content, output),
            metadata=dict(metadata or {}),
        )
        if output:
            item.metadata.setdefault("output", summarize(output, 500))
        await self._put_recent(item)
        self._index_later(item, Collection.SHORT_TERM)
        log.debug("Recorded %s %s (importance=%.2f)", kind.value, item.id, item.importance)
        return item

    async def store_durable(self, item: MemoryItem) -> str:
        item_id = await self._storage.call(
            lambda: self.durable.store(item), cancel=self._cancel, description="durable store"
        )
        self._index_later(item, Collection.LONG_TERM)
        return item_id

    async def store_learning(self, learning: ConsolidatedLearning,
                             metadata: Optional[Mapping[str, str]] = None) -> MemoryItem:
        item = learning.to_memory_item()
        item.metadata.update(metadata or {})
        await self.store_durable(item)
        log.info("Stored learning %s on topic %r (confidence=%.2f)",
                 item.id, learning.topic, learning.confidence)
        return item

    async def mark_promoted(self, item: MemoryItem) -> bool:
        """Tag the recent copy of *item* as promoted.  False if it has expired."""
        key = recent_key(item.id)
        raw = await self._storage.call(
            lambda: self.recent.get(key), cancel=self._cancel, description="recent get"
        )
        if raw is None:
            return False
        current = MemoryItem.from_dict(raw)
        current.add_tags([PROMOTED_TAG])
        current.metadata["promoted_at"] = utcnow().isoformat()
        item.add_tags([PROMOTED_TAG])
        return await self._storage.call(
            lambda: self.recent.replace(key, current.to_dict(include_embedding=False)),
            cancel=self._cancel,
            description="recent replace",
        )

    async def _put_recent(self, item: MemoryItem) -> None:
        await self._storage.call(
            lambda: self.recent.put(
                recent_key(item.id),
                item.to_dict(include_embedding=False),
                timestamp=item.timestamp.timestamp(),
            ),
            cancel=self._cancel,
            description="recent put",
        )

    def _index_later(self, item: MemoryItem, collection: Collection) -> None:
        if self.semantic is None:
            return
        semantic = self.semantic
        snapshot = item.copy()
        description = f"index {snapshot.id} into {collection.value}"
        if self.background is not None:
            self.background.submit(lambda: semantic.index(snapshot, collection), description)
            return
        # No pool: run detached so the caller still never waits on the index.
        task = asyncio.get_running_loop().create_task(semantic.index(snapshot, collection))
        task.add_done_callback(lambda t: _log_index_result(t, description))

    # -- reads ----------------------------------------------------------------

    async def recent_items(self, limit: int = 50) -> List[MemoryItem]:
        """Live recent-tier items, newest first."""
        keys = await self._storage.call(
            lambda: self.recent.list_keys(f"{RECENT_KEY_PREFIX}*"),
            cancel=self._cancel,
            description="recent list",
        )
        items: List[MemoryItem] = []
        for key in keys:
            raw = await self._storage.call(
                lambda k=key: self.recent.get(k), cancel=self._cancel, description="recent get"
            )
            if raw is not None:
                items.append(MemoryItem.from_dict(raw))
        items.sort(key=lambda i: i.timestamp, reverse=True)
        return items[:max(0, limit)]

    async def durable_recent(self, limit: int = 100) -> List[MemoryItem]:
        return await self._storage.call(
            lambda: self.durable.list_recent(limit), cancel=self._cancel, description="durable list"
        )

    async def durable_exists(self, item_id: str) -> bool:
        return await self._storage.call(
            lambda: self.durable.exists(item_id), cancel=self._cancel, description="durable exists"
        )

    async def relevant_durable(self, query: str, max_results: int = 15, *,
                               observe_stop: bool = True) -> List[ScoredItem]:
        """Durable items related to *query*.

        Semantic search over ``long-term`` when enabled, otherwise keyword
        search of the durable store (scored 1.0 for a direct hit).  With
        *observe_stop* false the keyword search keeps working after shutdown.
        """
        if max_results <= 0:
            return []
        if self.semantic is not None:
            return await self.semantic.search(
                query, Collection.LONG_TERM, max_results=max_results,
                min_score=self.long_term_min_score,
            )
        seen: Dict[str, ScoredItem] = {}
        for word in _keywords(query):
            hits = await self._storage.call(
                lambda w=word: self.durable.search_by_keyword(w, max_results),
                cancel=self._cancel if observe_stop else None,
                description="durable keyword search",
            )
            for hit in hits:
                seen.setdefault(hit.id, ScoredItem(item=hit, score=1.0))
            if len(seen) >= max_results:
                break
        ordered = sorted(seen.values(), key=lambda s: s.item.timestamp, reverse=True)
        return ordered[:max_results]

    async def build_combined_context(
        self,
        task_description: str,
        max_recent: int = 30,
        max_relevant: int = 15,
    ) -> str:
        """Render recent items, then relevant durable experience, as text.

        A failing section is logged and left out; the other still renders.
        """
        try:
            recent = await self.recent_items(max_recent)
        except OperationCancelled:
            raise
        except Exception:
            log.error("Failed to read recent context", exc_info=True)
            recent = []
        try:
            relevant = await self.relevant_durable(task_description, max_relevant)
        except OperationCancelled:
            raise
        except Exception:
            log.error("Failed to search relevant experience", exc_info=True)
            relevant = []

        lines: List[str] = []
        if recent:
            lines += ["## Recent Context", ""]
            for item in recent:
                lines.append(f"- [{item.kind.label}] {item.summary}")
                if item.importance >= FULL_CONTENT_RECENT and item.content != item.summary:
                    lines.append(f"  {item.content}")
            lines.append("")
        if relevant:
            lines += ["## Relevant Past Experience", ""]
            for scored in relevant:
                item = scored.item
                lines.append(f"- [{item.kind.label}] {item.summary} (relevance: {scored.score:.2f})")
                if item.importance >= FULL_CONTENT_RELEVANT and item.content != item.summary:
                    lines.append(f"  {item.content}")
            lines.append("")
        return "\n".join(lines)

    async def find_similar_completed_task(self, description: str) -> Optional[ScoredItem]:
        """Best ``success`` item in ``long-term`` scoring at least the similar-task threshold."""
        if self.semantic is None or not description.strip():
            return None
        try:
            results = await self.semantic.search(
                description,
                Collection.LONG_TERM,
                max_results=5,
                min_score=self.similar_task_min_score,
                filters=SearchFilters(kinds=frozenset({MemoryKind.SUCCESS})),
            )
        except OperationCancelled:
            raise
        except Exception:
            log.error("Similar-task search failed", exc_info=True)
            return None
        if not results:
            return None
        best = max(results, key=lambda s: s.score)
        log.info("Found similar completed task %s (score=%.3f)", best.item.id, best.score)
        return best

    async def search_memories(
        self,
        query: str,
        max_results: int = 10,
        min_score: float = 0.7,
    ) -> MemorySearchResponse:
        """Search both collections for *query*.  Never raises.

        Failures, including a search abandoned on shutdown, come back as a
        response with ``error`` set.
        """
        try:
            if self.semantic is None:
                hits = await self.relevant_durable(query, max_results, observe_stop=False)
            else:
                merged: Dict[str, ScoredItem] = {}
                for collection in (Collection.LONG_TERM, Collection.SHORT_TERM):
                    for hit in await self.semantic.search(
                        query, collection, max_results=max_results, min_score=min_score
                    ):
                        prior = merged.get(hit.item.id)
                        if prior is None or hit.score > prior.score:
                            merged[hit.item.id] = hit
                hits = sorted(merged.values(), key=lambda s: s.score, reverse=True)[:max_results]
        except Exception as exc:
            log.error("Memory search failed for %r", query, exc_info=True)
            return MemorySearchResponse(query=query, error=str(exc) or type(exc).__name__)
        return MemorySearchResponse(query=query, results=[_row(hit) for hit in hits])

    async def get_memory_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "durable_count": 0,
            "semantic_count": 0,
            "semantic_enabled": self.semantic_enabled,
            "recent_count": 0,
        }
        errors: List[str] = []
        for key, fn in (
            ("durable_count", self.durable.count),
            ("recent_count", self.recent.count),
            ("semantic_count", self.semantic.count if self.semantic is not None else None),
        ):
            if fn is None:
                continue
            try:
                stats[key] = await fn()
            except Exception as exc:
                log.warning("Could not read %s: %s", key, exc)
                errors.append(f"{key}: {exc}")
        if errors:
            stats["error"] = "; ".join(errors)
        return stats


def _row(hit: ScoredItem) -> Dict[str, Any]:
    item = hit.item
    return {
        "id": item.id,
        "kind": item.kind.value,
        "summary": item.summary,
        "timestamp": item.timestamp.isoformat(),
        "importance": item.importance,
        "tags": sorted(item.tags),
        "score": round(hit.score, 4),
    }


def _keywords(text: str, limit: int = 5) -> List[str]:
    words: List[str] = []
    for raw in text.lower().split():
        word = raw.strip(".,;:!?\"'()[]{}")
        if len(word) > 3 and word not in words:
            words.append(word)
    return words[:limit]


def _log_index_result(task: asyncio.Task, description: str) -> None:
    if task.cancelled():
        log.warning("Semantic write cancelled: %s", description)
        return
    exc = task.exception()
    if exc is not None:
        log.error("Semantic write failed: %s", description, exc_info=exc)
