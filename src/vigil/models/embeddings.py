"""Embedding backends for the semantic index.

An :class:`Embedder` turns one text into one fixed-length float vector.  Two
backends are provided:

* :class:`OpenRouterEmbedder` -- cloud embeddings through
  :meth:`~vigil.models.openrouter.OpenRouterClient.embed`.
* :class:`HashEmbedder` -- deterministic, offline vectors derived from a
  SHA-256 digest.  Useful for tests and for running without an API key.

**The dimensionality is fixed per deployment.**  It is baked into the
semantic index collections (Qdrant schema or in-memory vectors) and cannot
change without re-indexing every item.

Usage::

    embedder = build_embedder(settings, client)
    vector = await embedder.embed("disk usage is climbing on host-3")
"""

from __future__ import annotations

import hashlib
import logging
import math
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from vigil.models.openrouter import OpenRouterClient, OpenRouterError

if TYPE_CHECKING:
    from vigil.config import VigilSettings

logger = logging.getLogger(__name__)

DEFAULT_DIMENSIONS: int = 1536


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Embedder(Protocol):
    """Structural type for any backend that can embed a single text."""

    dimensions: int

    async def embed(self, text: str) -> list[float]:
        """Return the vector for *text*, with :attr:`dimensions` components."""
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class EmbeddingError(Exception):
    """Raised when an embedding operation fails.

    Attributes:
        status_code: Status of the upstream failure, when there was one.  The
            resilient caller uses it to decide whether to retry.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class HashEmbedder:
    """Deterministic pseudo-embeddings from a SHA-256 digest.

    Identical texts map to identical unit vectors, so exact repeats score
    1.0 against each other.  Different texts are effectively unrelated.
    """

    def __init__(self, dimensions: int = DEFAULT_DIMENSIONS) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self.dimensions = dimensions

    async def embed(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        values = [b / 255.0 for b in digest]
        if len(values) < self.dimensions:
            values = (values * ((self.dimensions // len(values)) + 1))[: self.dimensions]
        else:
            values = values[: self.dimensions]
        norm = math.sqrt(sum(v * v for v in values)) or 1.0
        return [v / norm for v in values]

    def __repr__(self) -> str:
        return f"HashEmbedder(dimensions={self.dimensions})"


class OpenRouterEmbedder:
    """Embeddings through OpenRouter's ``/embeddings`` endpoint.

    Args:
        client: A shared :class:`OpenRouterClient`.
        model: Embedding model id (e.g. ``"openai/text-embedding-3-small"``).
        dimensions: Expected vector length.  Responses of any other length
            are rejected rather than written into the index.
    """

    def __init__(
        self,
        client: OpenRouterClient,
        model: str,
        dimensions: int = DEFAULT_DIMENSIONS,
    ) -> None:
        self._client = client
        self.model = model
        self.dimensions = dimensions

    async def embed(self, text: str) -> list[float]:
        """Embed *text* with one API request.

        Raises:
            EmbeddingError: On API failure (status code preserved), an empty
                response, or a dimension mismatch.
        """
        try:
            vectors = await self._client.embed(self.model, [text])
        except OpenRouterError as exc:
            raise EmbeddingError(
                f"OpenRouter embedding failed for model '{self.model}': {exc.message}",
                status_code=exc.status_code,
            ) from exc

        if not vectors:
            raise EmbeddingError(
                f"No embedding returned by model '{self.model}'.", status_code=502
            )
        vector = vectors[0]
        if len(vector) != self.dimensions:
            raise EmbeddingError(
                f"Dimension mismatch: model '{self.model}' returned {len(vector)} "
                f"components, expected {self.dimensions}.",
                status_code=422,
            )
        return vector

    def __repr__(self) -> str:
        return f"OpenRouterEmbedder(model={self.model!r}, dimensions={self.dimensions})"


def build_embedder(settings: VigilSettings, client: OpenRouterClient | None) -> Embedder:
    """Select the embedding backend named by ``EMBEDDING_BACKEND``."""
    backend = settings.EMBEDDING_BACKEND.lower()
    if backend == "openrouter":
        if client is None:
            raise EmbeddingError("OpenRouter embedding backend requires an OpenRouter client.")
        return OpenRouterEmbedder(client, settings.EMBEDDING_MODEL, settings.EMBEDDING_DIMENSIONS)
    if backend != "hash":
        logger.warning("Unknown embedding backend %r, falling back to hash embeddings.", backend)
    return HashEmbedder(settings.EMBEDDING_DIMENSIONS)
