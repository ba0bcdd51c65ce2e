"""Agent state snapshot kept in the recent tier across restarts.

The control loop writes an :class:`AgentState` under :data:`STATE_KEY` each
time its directive or status changes.  The entry lives for
:data:`STATE_TTL_SECONDS`; on the next :meth:`~vigil.orchestrator.loop.ControlLoop.start`
the snapshot is read back and the current directive restored, unless the
snapshot is:

- missing (first start, or expired from the store),
- unreadable (not a mapping, bad timestamp, unknown status),
- older than :data:`MAX_RESTORE_AGE_SECONDS`, or
- recorded with the ``error`` status.

Any of these means a fresh start.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from vigil.errors import OperationCancelled
from vigil.memory.models import utcnow
from vigil.memory.recent import RecentMemoryStore
from vigil.resilience import STORAGE_POLICY, ResilientCaller

log = logging.getLogger(__name__)

STATE_KEY = "agent:current-state"
STATE_TTL_SECONDS = 3600.0
MAX_RESTORE_AGE_SECONDS = 24 * 3600.0


class AgentStatus(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


@dataclass
class AgentState:
    status: AgentStatus
    current_directive: Optional[str] = None
    iteration_count: int = 0
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "current_directive": self.current_directive,
            "iteration_count": self.iteration_count,
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "AgentState":
        """Parse a stored snapshot.

        Raises:
            ValueError: If *data* is not a well-formed snapshot.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected a mapping, got {type(data).__name__}")
        try:
            status = AgentStatus(data["status"])
            updated = datetime.fromisoformat(data["last_updated"])
            count = int(data.get("iteration_count") or 0)
        except (KeyError, TypeError) as exc:
            raise ValueError(f"malformed agent state: {exc}") from exc
        if updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        directive = data.get("current_directive")
        if directive is not None and not isinstance(directive, str):
            raise ValueError("current_directive must be a string")
        return cls(status=status, current_directive=directive or None,
                   iteration_count=count, last_updated=updated)


class AgentStateStore:
    """Reads and writes the :class:`AgentState` snapshot.

    Args:
        recent: The recent tier holding the snapshot.
        storage_caller: Retry wrapper for the store I/O.
        cancel: Shutdown event observed by the retried calls.
        ttl: Lifetime of a written snapshot.
        max_age: Oldest snapshot that is still restored.
    """

    def __init__(
        self,
        recent: RecentMemoryStore,
        storage_caller: Optional[ResilientCaller] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
        ttl: float = STATE_TTL_SECONDS,
        max_age: float = MAX_RESTORE_AGE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.recent = recent
        self._storage = storage_caller or ResilientCaller(STORAGE_POLICY)
        self._cancel = cancel
        self.ttl = ttl
        self.max_age = max_age
        self._clock = clock

    async def save(self, state: AgentState) -> bool:
        """Write *state*.  A store failure is logged and reported as False."""
        try:
            await self._storage.call(
                lambda: self.recent.put(STATE_KEY, state.to_dict(), ttl=self.ttl),
                cancel=self._cancel,
                description="agent state save",
            )
        except OperationCancelled:
            raise
        except Exception:
            log.warning("Could not persist agent state", exc_info=True)
            return False
        return True

    async def load(self) -> Optional[AgentState]:
        """Return the snapshot worth restoring, or ``None`` for a fresh start."""
        try:
            raw = await self._storage.call(
                lambda: self.recent.get(STATE_KEY),
                cancel=self._cancel,
                description="agent state load",
            )
        except OperationCancelled:
            raise
        except Exception:
            log.warning("Could not read previous agent state, starting fresh", exc_info=True)
            return None
        if raw is None:
            log.info("No previous agent state, starting fresh")
            return None
        try:
            state = AgentState.from_dict(raw)
        except ValueError as exc:
            log.warning("Previous agent state is corrupt (%s), starting fresh", exc)
            return None
        age = (self._clock() - state.last_updated).total_seconds()
        if age >= self.max_age:
            log.info("Previous agent state is %.1fh old, starting fresh", age / 3600)
            return None
        if state.status is AgentStatus.ERROR:
            log.info("Previous agent state ended in error, starting fresh")
            return None
        return state
