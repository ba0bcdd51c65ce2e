"""Reasoning capability: ``infer(prompt, conversation) -> text``.

The core never looks past the reply text.  A :class:`Conversation` is the
opaque handle the caller threads through successive calls; the reasoner
uses it to keep a rolling message history so the model sees the previous
turns of the same conversation.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from vigil.models.openrouter import OpenRouterClient

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are Vigil, an autonomous background agent. You observe the state of "
    "your environment, reason about it, and decide on the next concrete step. "
    "Be brief and specific."
)


@dataclass
class Conversation:
    """Rolling chat history for one logical conversation.

    Only the last ``max_history`` user/assistant messages are kept; the
    system prompt is always sent first.
    """

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_history: int = 20
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    _history: list[dict[str, str]] = field(default_factory=list, repr=False)

    def add(self, role: str, content: str) -> None:
        self._history.append({"role": role, "content": content})
        if len(self._history) > self.max_history:
            self._history = self._history[-self.max_history:]

    def build_messages(self, prompt: str) -> list[dict[str, str]]:
        """Messages for a new turn: system prompt, history, then *prompt*."""
        return [
            {"role": "system", "content": self.system_prompt},
            *self._history,
            {"role": "user", "content": prompt},
        ]

    def clear(self) -> None:
        self._history.clear()

    def __len__(self) -> int:
        return len(self._history)


@runtime_checkable
class Reasoner(Protocol):
    async def infer(self, prompt: str, conversation: Conversation | None = None) -> str:
        ...  # pragma: no cover


class OpenRouterReasoner:
    """Reasoner backed by an OpenRouter chat model.

    Each call is a single request.  History is only extended after a
    successful reply, so a retried call never records a half-finished turn.
    """

    def __init__(
        self,
        client: OpenRouterClient,
        model: str,
        temperature: float = 0.4,
        max_tokens: int = 2048,
    ) -> None:
        self._client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def infer(self, prompt: str, conversation: Conversation | None = None) -> str:
        conv = conversation or Conversation()
        response = await self._client.chat(
            model=self.model,
            messages=conv.build_messages(prompt),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if conversation is not None:
            conversation.add("user", prompt)
            conversation.add("assistant", response.content)
        logger.debug(
            "Reasoner reply from %s (%d chars, conversation=%s)",
            response.model,
            len(response.content),
            conv.id,
        )
        return response.content

    def __repr__(self) -> str:
        return f"OpenRouterReasoner(model={self.model!r})"
