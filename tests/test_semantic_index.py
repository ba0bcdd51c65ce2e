"""Tests for cosine search, the embedding gateway and the Qdrant adapter."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from helpers import MappingEmbedder, fast_caller, unit
from vigil.errors import RetryBudgetExhausted
from vigil.memory.models import Collection, MemoryItem, MemoryKind, SearchFilters
from vigil.memory.semantic import EmbeddingGateway, InMemorySemanticIndex, cosine_similarity
from vigil.models.embeddings import EmbeddingError
from vigil.resilience import INFERENCE_POLICY
from vigil.storage.qdrant import QdrantSemanticIndex, build_filter


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 0.0])


@pytest.mark.asyncio
async def test_blank_text_never_reaches_embedder():
    embedder = MappingEmbedder()
    gateway = EmbeddingGateway(embedder, fast_caller(INFERENCE_POLICY))
    assert await gateway.embed("   ") == [0.0, 0.0]
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_gateway_retries_transient_embedding_errors():
    embedder = MagicMock()
    embedder.dimensions = 2
    embedder.embed = AsyncMock(side_effect=[EmbeddingError("busy", status_code=503), [1.0, 0.0]])
    gateway = EmbeddingGateway(embedder, fast_caller(INFERENCE_POLICY))
    assert await gateway.embed("hello") == [1.0, 0.0]
    assert embedder.embed.await_count == 2


@pytest.mark.asyncio
async def test_gateway_gives_up_after_budget():
    embedder = MagicMock()
    embedder.dimensions = 2
    embedder.embed = AsyncMock(side_effect=EmbeddingError("busy", status_code=429))
    gateway = EmbeddingGateway(embedder, fast_caller(INFERENCE_POLICY))
    with pytest.raises(RetryBudgetExhausted):
        await gateway.embed("hello")
    assert embedder.embed.await_count == INFERENCE_POLICY.max_retries + 1


@pytest.mark.asyncio
async def test_search_ranks_and_applies_threshold():
    embedder = MappingEmbedder({
        "query": [1.0, 0.0],
        "close": unit(0.95),
        "medium": unit(0.75),
        "far": unit(0.2),
    })
    index = InMemorySemanticIndex(EmbeddingGateway(embedder, fast_caller(INFERENCE_POLICY)))
    for text in ("far", "medium", "close"):
        await index.index(MemoryItem(kind=MemoryKind.OBSERVATION, content=text), Collection.LONG_TERM)

    results = await index.search("query", Collection.LONG_TERM, max_results=10, min_score=0.7)
    assert [r.item.content for r in results] == ["close", "medium"]
    assert results[0].score == pytest.approx(0.95)

    assert await index.search("query", Collection.SHORT_TERM) == []
    assert await index.search("query", Collection.LONG_TERM, max_results=0) == []
    assert len(await index.search("query", Collection.LONG_TERM, max_results=1)) == 1


@pytest.mark.asyncio
async def test_search_filters_by_kind_and_importance():
    embedder = MappingEmbedder(default=[1.0, 0.0])
    index = InMemorySemanticIndex(EmbeddingGateway(embedder, fast_caller(INFERENCE_POLICY)))
    await index.index(MemoryItem(kind=MemoryKind.SUCCESS, content="a", importance=0.9), Collection.LONG_TERM)
    await index.index(MemoryItem(kind=MemoryKind.DECISION, content="b", importance=0.9), Collection.LONG_TERM)
    await index.index(MemoryItem(kind=MemoryKind.SUCCESS, content="c", importance=0.2), Collection.LONG_TERM)

    filters = SearchFilters(kinds=frozenset({MemoryKind.SUCCESS}), min_importance=0.5)
    results = await index.search("x", Collection.LONG_TERM, filters=filters)
    assert [r.item.content for r in results] == ["a"]


@pytest.mark.asyncio
async def test_get_all_recent_delete_and_count(semantic):
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    items = [
        MemoryItem(kind=MemoryKind.OBSERVATION, content=f"n{i}", timestamp=base + timedelta(minutes=i))
        for i in range(3)
    ]
    for item in items:
        await semantic.index(item, Collection.SHORT_TERM)
    recent = await semantic.get_all_recent(Collection.SHORT_TERM, 2)
    assert [i.content for i in recent] == ["n2", "n1"]
    assert await semantic.count() == 3
    assert await semantic.delete(items[0].id, Collection.SHORT_TERM) is True
    assert await semantic.delete(items[0].id, Collection.SHORT_TERM) is False
    assert await semantic.count() == 2


def test_build_filter():
    assert build_filter(None) is None
    assert build_filter(SearchFilters()) is None
    f = build_filter(SearchFilters(kinds=frozenset({MemoryKind.SUCCESS}), min_importance=0.5))
    assert len(f.must) == 2
    assert f.must[0].key == "kind"
    assert f.must[0].match.any == ["success"]
    assert f.must[1].range.gte == 0.5


@pytest.fixture
def mock_qdrant():
    """Mock Qdrant client."""
    client = MagicMock()
    client.get_collections = MagicMock()
    client.upsert = MagicMock()
    client.query_points = MagicMock()
    client.delete = MagicMock()
    client.count = MagicMock()
    return client


@pytest.fixture
def qdrant_index(mock_qdrant):
    embedder = MappingEmbedder({"query": [1.0, 0.0]})
    index = QdrantSemanticIndex(
        "http://localhost:6333",
        EmbeddingGateway(embedder, fast_caller(INFERENCE_POLICY)),
        storage_caller=fast_caller(),
    )
    index._client = mock_qdrant
    return index


@pytest.mark.asyncio
async def test_qdrant_requires_initialize():
    index = QdrantSemanticIndex("http://localhost:6333", EmbeddingGateway(MappingEmbedder()))
    assert index.is_connected is False
    with pytest.raises(RuntimeError, match="not initialized"):
        await index.count()


@pytest.mark.asyncio
async def test_qdrant_index_writes_payload(qdrant_index, mock_qdrant):
    item = MemoryItem(kind=MemoryKind.DECISION, content="restart the worker")
    await qdrant_index.index(item, Collection.SHORT_TERM)
    kwargs = mock_qdrant.upsert.call_args.kwargs
    assert kwargs["collection_name"] == "vigil-short-term"
    point = kwargs["points"][0]
    assert point.payload["kind"] == "decision"
    assert point.payload["timestamp_epoch"] == pytest.approx(item.timestamp.timestamp())


@pytest.mark.asyncio
async def test_qdrant_search_maps_points(qdrant_index, mock_qdrant):
    item = MemoryItem(kind=MemoryKind.SUCCESS, content="rotated logs")
    payload = item.to_dict(include_embedding=False)
    payload["timestamp_epoch"] = item.timestamp.timestamp()
    mock_qdrant.query_points.return_value = SimpleNamespace(
        points=[SimpleNamespace(payload=payload, score=0.91)]
    )
    results = await qdrant_index.search("query", Collection.LONG_TERM, min_score=0.85)
    assert len(results) == 1
    assert results[0].item.id == item.id
    assert results[0].score == pytest.approx(0.91)
    assert mock_qdrant.query_points.call_args.kwargs["score_threshold"] == 0.85


@pytest.mark.asyncio
async def test_qdrant_blank_query_with_threshold_returns_nothing(qdrant_index, mock_qdrant):
    assert await qdrant_index.search("", Collection.LONG_TERM, min_score=0.5) == []
    mock_qdrant.query_points.assert_not_called()


@pytest.mark.asyncio
async def test_qdrant_count_sums_collections(qdrant_index, mock_qdrant):
    mock_qdrant.count.return_value = SimpleNamespace(count=4)
    assert await qdrant_index.count() == 8
