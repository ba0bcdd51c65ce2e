"""The control loop: Vigil's long-running heartbeat.

Each iteration is a straight line of awaited stages::

    drain one directive -> build context -> similar-task check
    -> reasoning call -> record outcome -> count -> maybe consolidate

followed by an interruptible delay.  A single :class:`asyncio.Event` is the
stop signal for everything that can suspend: the delay, the pause wait and
every retried external call.

Lifecycle::

    loop = ControlLoop(tiering, reasoner, directives, consolidation)
    await loop.start()
    loop.pause()
    loop.resume()
    await loop.stop()
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from vigil.errors import OperationCancelled, ReasoningParseError
from vigil.memory.consolidation import ConsolidationService, extract_json_object
from vigil.memory.models import MemoryKind, ScoredItem, utcnow
from vigil.memory.tiering import MemoryTieringService
from vigil.models.reasoner import Conversation, Reasoner
from vigil.orchestrator.directives import Directive, DirectiveKind, HumanDirectiveQueue
from vigil.orchestrator.state import AgentState, AgentStateStore, AgentStatus
from vigil.resilience import INFERENCE_POLICY, ResilientCaller

if TYPE_CHECKING:
    from vigil.orchestrator.background import BackgroundWriter

log = logging.getLogger(__name__)

DEFAULT_GOAL = "Monitor your environment, notice anything unusual and keep useful notes."

ITERATION_TEMPLATE = """Current directive: {goal}

{context}{similar}
Decide on the single next step toward the directive.
Respond with a single JSON object and nothing else:
{{
  "observation": "<what you currently notice>",
  "decision": "<the next concrete step>",
  "task_completed": <true if the directive is now fully done, else false>,
  "summary": "<one line describing the result>"
}}"""

SIMILAR_TASK_NOTE = """
A similar task was already completed (relevance {score:.2f}): {summary}
Do not redo it; build on it or choose a different step.
"""


@dataclass(frozen=True)
class LoopStatus:
    is_running: bool
    is_paused: bool
    iteration_count: int
    current_directive: Optional[str]
    timestamp: datetime = field(default_factory=utcnow)
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return data


@dataclass
class IterationOutcome:
    """Parsed reasoning reply for one iteration."""

    observation: str = ""
    decision: str = ""
    task_completed: bool = False
    summary: str = ""
    raw: str = ""
    parsed: bool = True


def parse_iteration_response(text: str) -> IterationOutcome:
    """Read the iteration JSON reply.  Unparseable text becomes a bare decision."""
    try:
        data = extract_json_object(text)
        observation = str(data.get("observation") or "").strip()
        decision = str(data.get("decision") or "").strip()
        if not observation and not decision:
            raise ReasoningParseError("reply has neither observation nor decision")
    except ReasoningParseError as exc:
        log.warning("Iteration reply did not parse (%s), recording it as a decision", exc)
        return IterationOutcome(decision=text.strip(), raw=text, parsed=False)
    completed = data.get("task_completed", False)
    if isinstance(completed, str):
        completed = completed.strip().lower() in ("true", "yes", "1")
    return IterationOutcome(
        observation=observation,
        decision=decision,
        task_completed=bool(completed),
        summary=str(data.get("summary") or "").strip(),
        raw=text,
    )


class ControlLoop:
    """Runs iterations until stopped, with pause/resume and directives.

    Args:
        tiering: Memory reads and writes.
        reasoner: The reasoning capability.
        directives: Human steering inbox, drained one directive per iteration.
        consolidation: Consolidation service, or ``None`` to disable it.
        background: Pool drained on :meth:`stop`.
        state_store: Where the agent state snapshot is kept.  Defaults to
            the recent tier of *tiering*.
        inference_caller: Retry wrapper for the reasoning call.
        stop_event: The shared shutdown signal.
        iteration_delay: Seconds between iterations.
        poll_interval: Slice length while paused.
        shutdown_grace: Seconds :meth:`stop` waits before cancelling the task.
        default_goal: Directive used until a human submits one.
    """

    def __init__(
        self,
        tiering: MemoryTieringService,
        reasoner: Reasoner,
        directives: HumanDirectiveQueue,
        consolidation: Optional[ConsolidationService] = None,
        background: Optional[BackgroundWriter] = None,
        state_store: Optional[AgentStateStore] = None,
        *,
        inference_caller: Optional[ResilientCaller] = None,
        stop_event: Optional[asyncio.Event] = None,
        iteration_delay: float = 30.0,
        poll_interval: float = 1.0,
        shutdown_grace: float = 5.0,
        default_goal: str = DEFAULT_GOAL,
        max_recent: int = 30,
        max_relevant: int = 15,
    ) -> None:
        self.tiering = tiering
        self.reasoner = reasoner
        self.directives = directives
        self.consolidation = consolidation
        self.background = background
        self._inference = inference_caller or ResilientCaller(INFERENCE_POLICY)
        self._stop = stop_event or asyncio.Event()
        self.state_store = state_store or AgentStateStore(
            tiering.recent, tiering.storage_caller, cancel=self._stop
        )
        self.iteration_delay = max(0.0, iteration_delay)
        self.poll_interval = max(0.01, poll_interval)
        self.shutdown_grace = shutdown_grace
        self.default_goal = default_goal
        self.max_recent = max_recent
        self.max_relevant = max_relevant

        self._lock = threading.Lock()
        self._running = False
        self._paused = False
        self._iteration_count = 0
        self._current_directive: Optional[str] = None
        self._last_updated: Optional[datetime] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._conversation = Conversation()
        self.last_prompt: str = ""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the loop task.  Idempotent."""
        with self._lock:
            if self._running:
                log.warning("Control loop start() called but loop is already running.")
                return
            self._running = True
        self._stop.clear()
        await self._restore_state()
        if self.background is not None:
            await self.background.start()
        self._task = asyncio.create_task(self._run(), name="control-loop")
        log.info(
            "Control loop started (delay=%.1fs, poll=%.1fs).",
            self.iteration_delay,
            self.poll_interval,
        )

    async def stop(self) -> None:
        """Signal shutdown and wait for the loop to finish.  Safe while paused."""
        self._stop.set()
        task = self._task
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.shutdown_grace)
            except asyncio.TimeoutError:
                log.warning("Control loop did not stop within %.1fs, cancelling.", self.shutdown_grace)
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            self._task = None
        if self.background is not None:
            await self.background.stop(timeout=self.shutdown_grace)
        with self._lock:
            self._running = False
            self._paused = False
        log.info("Control loop stopped after %d iteration(s).", self.iteration_count)

    def pause(self) -> bool:
        """Pause before the next iteration.  Returns whether the state changed."""
        with self._lock:
            if self._paused:
                return False
            self._paused = True
        log.info("Control loop paused.")
        return True

    def resume(self) -> bool:
        with self._lock:
            if not self._paused:
                return False
            self._paused = False
        log.info("Control loop resumed.")
        return True

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    @property
    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def iteration_count(self) -> int:
        with self._lock:
            return self._iteration_count

    def status(self) -> LoopStatus:
        with self._lock:
            return LoopStatus(
                is_running=self._running,
                is_paused=self._paused,
                iteration_count=self._iteration_count,
                current_directive=self._current_directive,
                last_updated=self._last_updated,
            )

    def submit_directive(self, text: str, kind: DirectiveKind | str = DirectiveKind.INSTRUCTION) -> str:
        return self.directives.submit(text, kind)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            while not self._stop.is_set():
                if self.is_paused:
                    await self._wait(self.poll_interval)
                    continue
                try:
                    await self.run_iteration()
                except (asyncio.CancelledError, OperationCancelled):
                    raise
                except Exception as exc:
                    log.error("Iteration %d failed", self.iteration_count + 1, exc_info=True)
                    await self._record_failure(exc)
                    await self._persist_state(AgentStatus.ERROR)
                await self._wait(self.iteration_delay)
        except (asyncio.CancelledError, OperationCancelled):
            if not self._stop.is_set():
                raise
        finally:
            with self._lock:
                self._running = False
            log.info("Control loop exited.")

    async def run_iteration(self) -> None:
        """Run one iteration body.

        Raises:
            OperationCancelled: If the stop signal is seen during or between
                stages.
        """
        directive = self.directives.next()
        if directive is not None:
            await self._apply_directive(directive)

        goal = self._current_directive or self.default_goal
        self._check_stop()
        context = await self.tiering.build_combined_context(goal, self.max_recent, self.max_relevant)

        self._check_stop()
        similar = await self.tiering.find_similar_completed_task(goal)

        prompt = self._build_prompt(goal, context, similar)
        self.last_prompt = prompt
        self._check_stop()
        response = await self._inference.call(
            lambda: self.reasoner.infer(prompt, self._conversation),
            cancel=self._stop,
            description="reasoning",
        )

        self._check_stop()
        iteration = self.iteration_count + 1
        await self._record_outcome(parse_iteration_response(response), goal, iteration)

        with self._lock:
            self._iteration_count += 1
            count = self._iteration_count
        log.info("Iteration %d complete.", count)
        await self._persist_state()

        if self.consolidation is not None and self.consolidation.should_run(count):
            await self.consolidation.run(self)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _apply_directive(self, directive: Directive) -> None:
        if directive.kind is DirectiveKind.CONSOLIDATE:
            if self.consolidation is None:
                log.warning("Consolidation requested by %s but consolidation is disabled.", directive.id)
            else:
                self.consolidation.request()
                log.info("Consolidation requested by directive %s.", directive.id)
            return
        with self._lock:
            self._current_directive = directive.text
        log.info("Applied directive %s: %s", directive.id, directive.text[:80])
        await self._persist_state()

    async def _restore_state(self) -> None:
        state = await self.state_store.load()
        if state is None or state.current_directive is None:
            return
        with self._lock:
            if self._current_directive is not None:
                return
            self._current_directive = state.current_directive
            self._last_updated = state.last_updated
        log.info(
            "Restored previous state: directive %r from %s.",
            state.current_directive[:80],
            state.last_updated.isoformat(),
        )

    async def _persist_state(self, status: Optional[AgentStatus] = None) -> None:
        with self._lock:
            if status is None:
                status = AgentStatus.PAUSED if self._paused else AgentStatus.RUNNING
            state = AgentState(
                status=status,
                current_directive=self._current_directive,
                iteration_count=self._iteration_count,
            )
            self._last_updated = state.last_updated
        await self.state_store.save(state)

    def _build_prompt(self, goal: str, context: str, similar: Optional[ScoredItem]) -> str:
        note = ""
        if similar is not None:
            note = SIMILAR_TASK_NOTE.format(score=similar.score, summary=similar.item.summary)
        return ITERATION_TEMPLATE.format(goal=goal, context=context, similar=note)

    async def _record_outcome(self, outcome: IterationOutcome, goal: str, iteration: int) -> None:
        meta = {"iteration": str(iteration), "goal": goal[:200]}
        if outcome.observation:
            await self.tiering.record(MemoryKind.OBSERVATION, outcome.observation, metadata=meta)
        if outcome.decision:
            await self.tiering.record(
                MemoryKind.DECISION,
                outcome.decision,
                summary=outcome.summary or None,
                tags=() if outcome.parsed else ("unparsed",),
                metadata=meta,
            )
        if outcome.task_completed:
            await self.tiering.record(
                MemoryKind.SUCCESS,
                f"Completed: {goal}. {outcome.summary or outcome.decision}".strip(),
                tags=("task",),
                output=outcome.summary or outcome.decision,
                metadata=meta,
            )

    async def _record_failure(self, exc: BaseException) -> None:
        try:
            await self.tiering.record(
                MemoryKind.FAILURE,
                f"Iteration {self.iteration_count + 1} failed: {type(exc).__name__}: {exc}",
                tags=("error",),
                metadata={"error_type": type(exc).__name__},
            )
        except (asyncio.CancelledError, OperationCancelled):
            raise
        except Exception:
            log.error("Could not record iteration failure", exc_info=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_stop(self) -> None:
        if self._stop.is_set():
            raise OperationCancelled("iteration")

    async def _wait(self, delay: float) -> None:
        """Sleep up to *delay* seconds, returning early on stop."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
