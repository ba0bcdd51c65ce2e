"""External model capabilities: reasoning and embeddings, served through OpenRouter."""

from vigil.models.embeddings import (
    Embedder,
    EmbeddingError,
    HashEmbedder,
    OpenRouterEmbedder,
    build_embedder,
)
from vigil.models.openrouter import ChatResponse, OpenRouterClient, OpenRouterError
from vigil.models.reasoner import Conversation, OpenRouterReasoner, Reasoner

__all__ = [
    "ChatResponse",
    "Conversation",
    "Embedder",
    "EmbeddingError",
    "HashEmbedder",
    "OpenRouterClient",
    "OpenRouterEmbedder",
    "OpenRouterError",
    "OpenRouterReasoner",
    "Reasoner",
    "build_embedder",
]
