from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Direction,
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    OrderBy,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    Range,
    VectorParams,
)

from vigil.memory.models import Collection, MemoryItem, ScoredItem, SearchFilters
from vigil.memory.semantic import EmbeddingGateway
from vigil.resilience import STORAGE_POLICY, ResilientCaller

log = logging.getLogger(__name__)

T = TypeVar("T")

_EPOCH_FIELD = "timestamp_epoch"


def build_filter(filters: Optional[SearchFilters]) -> Optional[Filter]:
    """Translate :class:`SearchFilters` into a Qdrant payload filter."""
    if filters is None:
        return None
    must: List[Any] = []
    if filters.kinds:
        must.append(FieldCondition(key="kind", match=MatchAny(any=sorted(k.value for k in filters.kinds))))
    if filters.tags:
        must.append(FieldCondition(key="tags", match=MatchAny(any=sorted(t.lower() for t in filters.tags))))
    if filters.min_importance is not None:
        must.append(FieldCondition(key="importance", range=Range(gte=filters.min_importance)))
    if filters.from_time is not None or filters.to_time is not None:
        must.append(FieldCondition(
            key=_EPOCH_FIELD,
            range=Range(
                gte=filters.from_time.timestamp() if filters.from_time else None,
                lte=filters.to_time.timestamp() if filters.to_time else None,
            ),
        ))
    return Filter(must=must) if must else None


class QdrantSemanticIndex:
    """Semantic index with one Qdrant collection per memory collection.

    The client is synchronous; every call runs in the default executor
    under the storage retry policy.  Payloads are the item's JSON form plus
    an epoch timestamp for range filters and ordering.
    """

    def __init__(self, url: str, embeddings: EmbeddingGateway, prefix: str = "vigil",
                 storage_caller: Optional[ResilientCaller] = None,
                 cancel: Optional[asyncio.Event] = None) -> None:
        self.url = url
        self.prefix = prefix
        self.dimensions = embeddings.dimensions
        self._embeddings = embeddings
        self._storage = storage_caller or ResilientCaller(STORAGE_POLICY)
        self._cancel = cancel
        self._client: QdrantClient | None = None

    def collection_name(self, collection: Collection) -> str:
        return f"{self.prefix}-{collection.value}"

    def _ensure_client(self) -> QdrantClient:
        if self._client is None:
            raise RuntimeError("QdrantSemanticIndex not initialized. Call initialize() first.")
        return self._client

    async def _io(self, fn: Callable[[], T], description: str) -> T:
        loop = asyncio.get_running_loop()
        return await self._storage.call(
            lambda: loop.run_in_executor(None, fn), cancel=self._cancel, description=description
        )

    async def initialize(self) -> None:
        """Connect and create any missing collections."""
        self._client = QdrantClient(url=self.url)
        client = self._client
        existing = await self._io(
            lambda: {c.name for c in client.get_collections().collections}, "qdrant list collections"
        )
        for collection in Collection:
            name = self.collection_name(collection)
            if name in existing:
                log.info("Using existing Qdrant collection: %s", name)
                continue
            await self._io(
                lambda n=name: client.create_collection(
                    collection_name=n,
                    vectors_config=VectorParams(size=self.dimensions, distance=Distance.COSINE),
                ),
                "qdrant create collection",
            )
            await self._io(
                lambda n=name: client.create_payload_index(
                    collection_name=n, field_name=_EPOCH_FIELD, field_schema=PayloadSchemaType.FLOAT
                ),
                "qdrant create payload index",
            )
            log.info("Created Qdrant collection: %s (dims=%d)", name, self.dimensions)

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    async def index(self, item: MemoryItem, collection: Collection) -> None:
        client = self._ensure_client()
        vector = await self._embeddings.embed(item.content)
        payload: Dict[str, Any] = item.to_dict(include_embedding=False)
        payload[_EPOCH_FIELD] = item.timestamp.timestamp()
        point = PointStruct(id=item.id, vector=vector, payload=payload)
        await self._io(
            lambda: client.upsert(collection_name=self.collection_name(collection), points=[point]),
            "qdrant upsert",
        )

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
        client = self._ensure_client()
        vector = await self._embeddings.embed(query_text)
        if not any(vector):
            # A zero query scores 0.0 against every item.
            if min_score > 0.0:
                return []
            recent = await self.get_all_recent(collection, max_results)
            return [ScoredItem(item=i, score=0.0) for i in recent if filters is None or filters.matches(i)]
        points = await self._io(
            lambda: client.query_points(
                collection_name=self.collection_name(collection),
                query=vector,
                limit=max_results,
                query_filter=build_filter(filters),
                score_threshold=min_score,
                with_payload=True,
            ).points,
            "qdrant query",
        )
        return [
            ScoredItem(item=MemoryItem.from_dict(_payload_item(p.payload)), score=float(p.score))
            for p in points
            if p.score is not None and p.score >= min_score
        ]

    async def get_all_recent(self, collection: Collection, max_results: int = 50) -> List[MemoryItem]:
        if max_results <= 0:
            return []
        client = self._ensure_client()
        records, _ = await self._io(
            lambda: client.scroll(
                collection_name=self.collection_name(collection),
                limit=max_results,
                with_payload=True,
                with_vectors=False,
                order_by=OrderBy(key=_EPOCH_FIELD, direction=Direction.DESC),
            ),
            "qdrant scroll",
        )
        return [MemoryItem.from_dict(_payload_item(r.payload)) for r in records]

    async def delete(self, item_id: str, collection: Collection) -> bool:
        client = self._ensure_client()
        name = self.collection_name(collection)
        found = await self._io(lambda: client.retrieve(collection_name=name, ids=[item_id]), "qdrant retrieve")
        if not found:
            return False
        await self._io(
            lambda: client.delete(collection_name=name, points_selector=PointIdsList(points=[item_id])),
            "qdrant delete",
        )
        return True

    async def count(self) -> int:
        client = self._ensure_client()
        total = 0
        for collection in Collection:
            result = await self._io(
                lambda c=collection: client.count(collection_name=self.collection_name(c), exact=True),
                "qdrant count",
            )
            total += result.count
        return total

    @property
    def is_connected(self) -> bool:
        return self._client is not None


def _payload_item(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    data = dict(payload or {})
    data.pop(_EPOCH_FIELD, None)
    return data
