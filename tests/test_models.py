"""Tests for the OpenRouter client, embedders and the reasoner."""

import math
import os
from unittest.mock import AsyncMock, patch

import pytest

from vigil.config import VigilSettings
from vigil.models.embeddings import (
    EmbeddingError,
    HashEmbedder,
    OpenRouterEmbedder,
    build_embedder,
)
from vigil.models.openrouter import ChatResponse, OpenRouterClient, OpenRouterError
from vigil.models.reasoner import Conversation, OpenRouterReasoner


def _chat_response(content="hello"):
    return ChatResponse(content=content, model="test/model", input_tokens=3,
                        output_tokens=5, cost=0.0, finish_reason="stop")


# ---------------------------------------------------------------------------
# OpenRouterClient
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_chat_parses_choice_and_tracks_cost():
    client = OpenRouterClient("sk-test")
    client._post = AsyncMock(return_value={
        "model": "openai/gpt-4o-mini",
        "choices": [{"message": {"content": "hi there"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 4, "cost": 0.002},
    })
    response = await client.chat("openai/gpt-4o-mini", [{"role": "user", "content": "hi"}])
    assert response.content == "hi there"
    assert response.input_tokens == 10
    assert response.output_tokens == 4
    assert client.session_cost == pytest.approx(0.002)
    endpoint, payload = client._post.call_args.args
    assert endpoint == "/chat/completions"
    assert payload["max_tokens"] == 2048


@pytest.mark.asyncio
async def test_chat_without_choices_is_an_error():
    client = OpenRouterClient("sk-test")
    client._post = AsyncMock(return_value={"choices": []})
    with pytest.raises(OpenRouterError) as info:
        await client.chat("m", [])
    assert info.value.status_code == 502


@pytest.mark.asyncio
async def test_embed_orders_by_index():
    client = OpenRouterClient("sk-test")
    client._post = AsyncMock(return_value={
        "data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}],
    })
    assert await client.embed("m", ["a", "b"]) == [[1.0, 0.0], [0.0, 1.0]]
    assert await client.embed("m", []) == []


@pytest.mark.asyncio
async def test_close_without_session_is_safe():
    client = OpenRouterClient("sk-test")
    await client.close()
    await client.close()


# ---------------------------------------------------------------------------
# Embedders
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_hash_embedder_is_deterministic_unit_vector():
    embedder = HashEmbedder(dimensions=64)
    a = await embedder.embed("disk full")
    b = await embedder.embed("disk full")
    c = await embedder.embed("disk empty")
    assert a == b
    assert a != c
    assert len(a) == 64
    assert math.sqrt(sum(v * v for v in a)) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_openrouter_embedder_returns_vector(mock_openrouter):
    mock_openrouter.embed.return_value = [[0.1, 0.2, 0.3]]
    embedder = OpenRouterEmbedder(mock_openrouter, "openai/text-embedding-3-small", dimensions=3)
    assert await embedder.embed("x") == [0.1, 0.2, 0.3]
    mock_openrouter.embed.assert_awaited_once_with("openai/text-embedding-3-small", ["x"])


@pytest.mark.asyncio
async def test_openrouter_embedder_keeps_status_code(mock_openrouter):
    mock_openrouter.embed.side_effect = OpenRouterError("slow down", 429, model="m")
    embedder = OpenRouterEmbedder(mock_openrouter, "m", dimensions=3)
    with pytest.raises(EmbeddingError) as info:
        await embedder.embed("x")
    assert info.value.status_code == 429


@pytest.mark.asyncio
async def test_openrouter_embedder_rejects_bad_responses(mock_openrouter):
    embedder = OpenRouterEmbedder(mock_openrouter, "m", dimensions=3)
    mock_openrouter.embed.return_value = []
    with pytest.raises(EmbeddingError) as info:
        await embedder.embed("x")
    assert info.value.status_code == 502
    mock_openrouter.embed.return_value = [[0.1, 0.2]]
    with pytest.raises(EmbeddingError) as info:
        await embedder.embed("x")
    assert info.value.status_code == 422


def test_build_embedder_selects_backend(mock_openrouter):
    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-test", "EMBEDDING_BACKEND": "hash",
                                 "EMBEDDING_DIMENSIONS": "32"}, clear=True):
        embedder = build_embedder(VigilSettings(), None)
    assert isinstance(embedder, HashEmbedder)
    assert embedder.dimensions == 32

    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "sk-test"}, clear=True):
        settings = VigilSettings()
    assert isinstance(build_embedder(settings, mock_openrouter), OpenRouterEmbedder)
    with pytest.raises(EmbeddingError):
        build_embedder(settings, None)


# ---------------------------------------------------------------------------
# Reasoner
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reasoner_threads_conversation(mock_openrouter):
    mock_openrouter.chat.return_value = _chat_response("first reply")
    reasoner = OpenRouterReasoner(mock_openrouter, "test/model")
    conversation = Conversation(system_prompt="be brief")

    assert await reasoner.infer("first prompt", conversation) == "first reply"
    mock_openrouter.chat.return_value = _chat_response("second reply")
    await reasoner.infer("second prompt", conversation)

    messages = mock_openrouter.chat.call_args.kwargs["messages"]
    assert messages[0] == {"role": "system", "content": "be brief"}
    assert [m["content"] for m in messages[1:]] == ["first prompt", "first reply", "second prompt"]
    assert len(conversation) == 4


@pytest.mark.asyncio
async def test_failed_call_leaves_history_untouched(mock_openrouter):
    mock_openrouter.chat.side_effect = OpenRouterError("down", 503)
    conversation = Conversation()
    with pytest.raises(OpenRouterError):
        await OpenRouterReasoner(mock_openrouter, "m").infer("p", conversation)
    assert len(conversation) == 0


def test_conversation_history_is_bounded():
    conversation = Conversation(max_history=4)
    for i in range(10):
        conversation.add("user", str(i))
    messages = conversation.build_messages("next")
    assert [m["content"] for m in messages[1:-1]] == ["6", "7", "8", "9"]
    conversation.clear()
    assert len(conversation) == 0
