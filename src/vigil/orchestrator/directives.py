"""Human steering inbox for the control loop.

Directives are submitted from any thread (an API handler, a signal handler,
a test) and drained by the loop, at most one per iteration, in arrival
order.  Submission never blocks and never waits for the loop.
"""

from __future__ import annotations

import logging
import queue
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from vigil.memory.models import utcnow

log = logging.getLogger(__name__)

MAX_DIRECTIVE_CHARS = 4000


class DirectiveKind(Enum):
    INSTRUCTION = "instruction"
    """Replace the loop's active directive with the given text."""

    CONSOLIDATE = "consolidate"
    """Request a consolidation run on the iteration that drains it."""


@dataclass(frozen=True)
class Directive:
    text: str
    kind: DirectiveKind = DirectiveKind.INSTRUCTION
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    submitted_at: datetime = field(default_factory=utcnow)


class HumanDirectiveQueue:
    """Thread-safe FIFO of :class:`Directive` objects."""

    def __init__(self) -> None:
        self._queue: queue.SimpleQueue[Directive] = queue.SimpleQueue()

    def submit(self, text: str, kind: DirectiveKind | str = DirectiveKind.INSTRUCTION) -> str:
        """Enqueue a directive and return its id.

        Raises:
            ValueError: If an instruction is blank or *kind* is unknown.
        """
        kind = DirectiveKind(kind)
        text = (text or "").strip()
        if kind is DirectiveKind.INSTRUCTION and not text:
            raise ValueError("instruction text must not be empty")
        if len(text) > MAX_DIRECTIVE_CHARS:
            log.warning("Directive truncated from %d to %d chars", len(text), MAX_DIRECTIVE_CHARS)
            text = text[:MAX_DIRECTIVE_CHARS]
        directive = Directive(text=text, kind=kind)
        self._queue.put(directive)
        log.info("Directive %s queued (%s): %s", directive.id, kind.value, text[:80])
        return directive.id

    def next(self) -> Directive | None:
        """Pop the oldest directive, or ``None`` if the inbox is empty."""
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def clear(self) -> int:
        """Discard every queued directive.  Returns how many were dropped."""
        dropped = 0
        while self.next() is not None:
            dropped += 1
        return dropped
