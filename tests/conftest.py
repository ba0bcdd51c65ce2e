"""Shared fixtures for the Vigil test suite."""

from unittest.mock import AsyncMock

import pytest

from helpers import MappingEmbedder, fast_caller
from vigil.memory.durable import InMemoryDurableStore
from vigil.memory.recent import InMemoryRecentStore
from vigil.memory.semantic import EmbeddingGateway, InMemorySemanticIndex
from vigil.memory.tiering import MemoryTieringService
from vigil.resilience import INFERENCE_POLICY, STORAGE_POLICY


@pytest.fixture
def mock_openrouter():
    """Mock OpenRouter client."""
    client = AsyncMock()
    client.session_cost = 0.0
    client.chat = AsyncMock()
    client.embed = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def storage_caller():
    return fast_caller(STORAGE_POLICY)


@pytest.fixture
def inference_caller():
    return fast_caller(INFERENCE_POLICY)


@pytest.fixture
def embedder():
    return MappingEmbedder()


@pytest.fixture
def semantic(embedder, inference_caller):
    return InMemorySemanticIndex(EmbeddingGateway(embedder, inference_caller))


@pytest.fixture
def tiering(semantic, storage_caller):
    return MemoryTieringService(
        InMemoryRecentStore(),
        InMemoryDurableStore(),
        semantic,
        storage_caller=storage_caller,
    )


@pytest.fixture
def plain_tiering(storage_caller):
    """Tiering service with semantic search disabled."""
    return MemoryTieringService(
        InMemoryRecentStore(),
        InMemoryDurableStore(),
        None,
        storage_caller=storage_caller,
    )
