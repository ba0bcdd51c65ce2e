"""Async OpenRouter API client for Vigil.

OpenRouter exposes an OpenAI-compatible API for chat completions and
embeddings, routing each request to the underlying model provider.  Vigil
uses it as the backend for both external capabilities of the core:

- the reasoning call (:meth:`OpenRouterClient.chat`), and
- the embedding call (:meth:`OpenRouterClient.embed`).

The client performs exactly one HTTP request per call.  Retries, back-off and
cancellation belong to :class:`~vigil.resilience.ResilientCaller`, which
classifies :class:`OpenRouterError` by its ``status_code``.

Usage::

    async with OpenRouterClient(api_key="sk-or-...") as client:
        response = await client.chat(
            model="openai/gpt-4o-mini",
            messages=[{"role": "user", "content": "Hello!"}],
        )
        print(response.content)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BASE_URL: str = "https://openrouter.ai/api/v1"
"""Default OpenRouter API base URL."""

_X_TITLE: str = "Vigil"
"""Value sent in the ``X-Title`` header for OpenRouter analytics."""

_REQUEST_TIMEOUT: float = 120.0
"""Per-request timeout in seconds."""


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class OpenRouterError(Exception):
    """Raised when the OpenRouter API returns an error response.

    Attributes:
        message: Human-readable error description from the API.
        status_code: HTTP status code of the failed response.
        model: The model identifier that was requested, if available.
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        model: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.model = model
        super().__init__(
            f"OpenRouter error {status_code}"
            f"{f' (model={model})' if model else ''}: {message}"
        )


# ---------------------------------------------------------------------------
# Response dataclass
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ChatResponse:
    """Structured result from a chat completion request.

    Attributes:
        content: The assistant's reply text.
        model: Actual model that served the request.
        input_tokens: Number of prompt tokens consumed.
        output_tokens: Number of completion tokens generated.
        cost: Estimated cost in USD for this single request.
        finish_reason: Why the model stopped generating.
    """

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    finish_reason: str


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class OpenRouterClient:
    """Async client for the OpenRouter unified LLM API.

    The HTTP session is created lazily on first use and reused for the
    lifetime of the client.  Call :meth:`close` (or use the client as an
    async context manager) to release the underlying connection pool.

    Args:
        api_key: OpenRouter API key (``sk-or-...``).
        base_url: API base URL.  Override for testing or proxying.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
    ) -> None:
        self._api_key: str = api_key
        self._base_url: str = base_url.rstrip("/")
        self._session: aiohttp.ClientSession | None = None
        self.session_cost: float = 0.0
        """Cumulative USD cost across all requests made through this client."""

    # -- Async context manager ----------------------------------------------

    async def __aenter__(self) -> OpenRouterClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    # -- Internal helpers ---------------------------------------------------

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "X-Title": _X_TITLE,
        }

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Return the shared session, creating it lazily if needed.

        The session is created outside ``__init__`` to avoid requiring an
        active event loop at construction time.
        """
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._get_headers(),
                timeout=aiohttp.ClientTimeout(total=_REQUEST_TIMEOUT),
            )
        return self._session

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST *payload* and return the decoded JSON body.

        Raises:
            OpenRouterError: On any HTTP error status or an ``error`` object
                embedded in a successful response.
        """
        session = await self._ensure_session()
        url = f"{self._base_url}{endpoint}"
        async with session.post(url, json=payload) as resp:
            body: dict[str, Any] = await resp.json(content_type=None) or {}

            # OpenRouter may embed error details inside the JSON body even
            # when the HTTP status indicates success.
            if "error" in body:
                err = body["error"]
                message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
                status = resp.status
                if isinstance(err, dict) and isinstance(err.get("code"), int):
                    status = err["code"]
                raise OpenRouterError(message=message, status_code=status, model=payload.get("model"))

            if resp.status >= 400:
                raise OpenRouterError(
                    message=f"HTTP {resp.status}: {body}",
                    status_code=resp.status,
                    model=payload.get("model"),
                )
            return body

    @staticmethod
    def _estimate_cost(usage: dict[str, Any], body: dict[str, Any]) -> float:
        """Extract the USD cost for a single request, or zero when absent."""
        for source, key in ((usage, "total_cost"), (usage, "cost"), (body, "cost")):
            if key in source:
                try:
                    return float(source[key])
                except (TypeError, ValueError):
                    continue
        return 0.0

    # -- Public API ---------------------------------------------------------

    async def chat(
        self,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> ChatResponse:
        """Send a chat completion request to OpenRouter.

        Args:
            model: OpenRouter model identifier.
            messages: Conversation in OpenAI message format.
            temperature: Sampling temperature (0.0 -- 2.0).
            max_tokens: Maximum tokens to generate.

        Raises:
            OpenRouterError: On API errors or an empty ``choices`` list.
        """
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        body = await self._post("/chat/completions", payload)

        choices: list[dict[str, Any]] = body.get("choices", [])
        if not choices:
            raise OpenRouterError(
                message="No choices returned in chat completion response.",
                status_code=502,
                model=model,
            )

        first_choice = choices[0]
        message = first_choice.get("message", {})
        usage: dict[str, Any] = body.get("usage", {})
        cost = self._estimate_cost(usage, body)
        self.session_cost += cost

        response = ChatResponse(
            content=message.get("content", "") or "",
            model=body.get("model", model),
            input_tokens=int(usage.get("prompt_tokens", 0)),
            output_tokens=int(usage.get("completion_tokens", 0)),
            cost=cost,
            finish_reason=first_choice.get("finish_reason", "unknown") or "unknown",
        )
        logger.debug(
            "Chat completion: model=%s, tokens=%d+%d, cost=$%.6f, finish=%s",
            response.model,
            response.input_tokens,
            response.output_tokens,
            cost,
            response.finish_reason,
        )
        return response

    async def embed(self, model: str, texts: list[str]) -> list[list[float]]:
        """Get embeddings for a batch of texts, in input order.

        Raises:
            OpenRouterError: On API errors.
        """
        if not texts:
            return []

        body = await self._post("/embeddings", {"model": model, "input": texts})

        data_entries: list[dict[str, Any]] = body.get("data", [])
        if len(data_entries) != len(texts):
            logger.warning(
                "Embedding response returned %d vectors for %d inputs.",
                len(data_entries),
                len(texts),
            )
        data_entries.sort(key=lambda d: d.get("index", 0))

        usage: dict[str, Any] = body.get("usage", {})
        self.session_cost += self._estimate_cost(usage, body)
        logger.debug(
            "Embedding: model=%s, texts=%d, tokens=%d",
            model,
            len(texts),
            int(usage.get("total_tokens", 0)),
        )
        return [entry["embedding"] for entry in data_entries]

    async def close(self) -> None:
        """Close the underlying HTTP session.  Safe to call multiple times."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None
            logger.debug(
                "OpenRouter session closed. Total session cost: $%.6f",
                self.session_cost,
            )
