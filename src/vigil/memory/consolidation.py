"""Periodic consolidation of recent experience into durable knowledge.

A run pauses the control loop, then:

1. collects the newest ``window`` items across both tiers,
2. promotes important recent items into the durable tier, skipping repeats
   of the same work,
3. groups the window by UTC day (newest seven days) and asks the reasoning
   capability to distil each day into a :class:`ConsolidatedLearning`,
4. writes each learning to the durable tier,

and finally resumes the loop.  The resume happens exactly once per run no
matter where the run fails.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from vigil.errors import ConsolidationError, OperationCancelled, ReasoningParseError
from vigil.memory.models import ConsolidatedLearning, MemoryItem, MemoryKind, utcnow
from vigil.memory.tiering import PROMOTED_TAG, MemoryTieringService
from vigil.models.reasoner import Reasoner
from vigil.resilience import INFERENCE_POLICY, ResilientCaller

log = logging.getLogger(__name__)

DEFAULT_TOPIC = "General"
FALLBACK_SUMMARY_CHARS = 200
FALLBACK_CONFIDENCE = 0.6
DEFAULT_CONFIDENCE = 0.7
MAX_DAY_GROUPS = 7

ANALYSIS_TEMPLATE = """You are reviewing your own activity log for {day} ({count} entries).
Extract the key learnings, recurring patterns and decisions worth keeping.

Activity log:
{listing}

Respond with a single JSON object and nothing else:
{{
  "topic": "<short topic, a few words>",
  "summary": "<two or three sentences of actionable learning>",
  "insights": {{"<name>": "<insight>"}},
  "confidence": <number between 0 and 1>
}}"""


class ConsolidationPhase(Enum):
    IDLE = "idle"
    COLLECTING_WINDOW = "collecting_window"
    SUMMARIZING = "summarizing"
    WRITING = "writing"


class LoopControl(Protocol):
    def pause(self) -> bool:
        ...

    def resume(self) -> bool:
        ...


@dataclass
class ConsolidationReport:
    started_at: datetime = field(default_factory=utcnow)
    window_size: int = 0
    promoted: int = 0
    duplicates_skipped: int = 0
    groups_processed: int = 0
    learnings_written: int = 0
    failed_groups: int = 0
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed_groups == 0


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def extract_json_object(text: str) -> Dict[str, Any]:
    """Decode the JSON object between the first ``{`` and the last ``}``.

    Raises:
        ReasoningParseError: If there is no such span or it is not a JSON object.
    """
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise ReasoningParseError("no JSON object in response")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as exc:
        raise ReasoningParseError(f"invalid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ReasoningParseError("JSON value is not an object")
    return data


def parse_learning(text: str, source_item_ids: Sequence[str]) -> ConsolidatedLearning:
    """Build a learning from a model reply.  Never raises on bad output."""
    sources = frozenset(source_item_ids)
    try:
        data = extract_json_object(text)
    except ReasoningParseError as exc:
        log.warning("Learning response did not parse (%s), using fallback", exc)
        return ConsolidatedLearning(
            topic=DEFAULT_TOPIC,
            summary=text.strip()[:FALLBACK_SUMMARY_CHARS],
            confidence=FALLBACK_CONFIDENCE,
            source_item_ids=sources,
        )

    insights = data.get("insights")
    if isinstance(insights, list):
        insights = {str(i): v for i, v in enumerate(insights, 1)}
    elif not isinstance(insights, dict):
        insights = {}
    try:
        confidence = float(data.get("confidence", DEFAULT_CONFIDENCE))
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE
    return ConsolidatedLearning(
        topic=str(data.get("topic") or DEFAULT_TOPIC).strip() or DEFAULT_TOPIC,
        summary=str(data.get("summary") or "Learning extracted").strip(),
        insights=insights,
        confidence=max(0.0, min(1.0, confidence)),
        source_item_ids=sources,
    )


_LABEL_RE = re.compile(r"^\s*(observation|decision|reflection|success|failure|learning)\s*:\s*", re.I)
_MARKUP_RE = re.compile(r"[#*`>]+")


def strip_keywords(text: str) -> str:
    """Drop leading kind labels and markdown markup, collapse whitespace."""
    text = _LABEL_RE.sub("", text)
    text = _MARKUP_RE.sub("", text)
    return " ".join(text.split())


def normalize_content(text: str) -> str:
    return " ".join(text.lower().split())


def group_by_day(items: Sequence[MemoryItem], max_groups: int = MAX_DAY_GROUPS) -> List[Tuple[date, List[MemoryItem]]]:
    """Group *items* by UTC calendar day, newest day first, at most *max_groups*."""
    groups: Dict[date, List[MemoryItem]] = {}
    for item in items:
        day = item.timestamp.astimezone(timezone.utc).date()
        groups.setdefault(day, []).append(item)
    ordered = sorted(groups.items(), key=lambda kv: kv[0], reverse=True)
    return [(day, sorted(group, key=lambda i: i.timestamp)) for day, group in ordered[:max_groups]]


def render_listing(items: Sequence[MemoryItem]) -> str:
    lines = []
    for item in items:
        ts = item.timestamp.astimezone(timezone.utc).strftime("%H:%M")
        lines.append(f"[{ts}] [{item.kind.label}] {strip_keywords(item.content)}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ConsolidationService:
    """Runs consolidation passes and decides when they are due.

    Args:
        tiering: Read/write access to both tiers.
        reasoner: The reasoning capability used to summarise day groups.
        inference_caller: Retry wrapper for reasoning calls.
        cancel: Shutdown event observed by retried calls.
        every_n_iterations: Run when the iteration count is a multiple of
            this.  ``0`` disables the iteration trigger.
        interval_seconds: Run when this much wall-clock time has passed
            since the last run.  ``None`` disables the time trigger.
        window: Number of newest items reviewed per run.
        promotion_threshold: Minimum importance for promotion.
        min_age_before_promotion: Minimum item age in seconds for promotion.
    """

    def __init__(
        self,
        tiering: MemoryTieringService,
        reasoner: Reasoner,
        *,
        inference_caller: Optional[ResilientCaller] = None,
        cancel: Optional[asyncio.Event] = None,
        every_n_iterations: int = 100,
        interval_seconds: Optional[float] = None,
        window: int = 100,
        promotion_threshold: float = 0.5,
        min_age_before_promotion: float = 0.0,
        max_groups: int = MAX_DAY_GROUPS,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tiering = tiering
        self.reasoner = reasoner
        self._inference = inference_caller or ResilientCaller(INFERENCE_POLICY)
        self._cancel = cancel
        self.every_n_iterations = every_n_iterations
        self.interval_seconds = interval_seconds
        self.window = window
        self.promotion_threshold = promotion_threshold
        self.min_age_before_promotion = min_age_before_promotion
        self.max_groups = max_groups
        self._clock = clock
        self._monotonic = monotonic
        self._last_run = monotonic()
        self._requested = False
        self.phase = ConsolidationPhase.IDLE
        self.last_report: Optional[ConsolidationReport] = None

    # -- triggering -------------------------------------------------------

    def request(self) -> None:
        """Force a run at the next trigger check."""
        self._requested = True

    def should_run(self, iteration_count: int) -> bool:
        if self._requested:
            return True
        if self.every_n_iterations > 0 and iteration_count > 0 \
                and iteration_count % self.every_n_iterations == 0:
            return True
        if self.interval_seconds is not None \
                and self._monotonic() - self._last_run >= self.interval_seconds:
            return True
        return False

    # -- run ----------------------------------------------------------------

    async def run(self, loop: Optional[LoopControl] = None) -> ConsolidationReport:
        """Run one consolidation pass, pausing *loop* for its duration.

        Failures are caught here and reported; only cancellation propagates.
        """
        report = ConsolidationReport(started_at=self._clock())
        started = self._monotonic()
        if loop is not None:
            loop.pause()
        log.info("Consolidation started")
        try:
            self.phase = ConsolidationPhase.COLLECTING_WINDOW
            recent, window = await self._collect_window()
            report.window_size = len(window)
            await self._promote(recent, report)

            groups = group_by_day([i for i in window if i.kind is not MemoryKind.LEARNING], self.max_groups)
            for day, items in groups:
                await self._consolidate_group(day, items, report)
        except (asyncio.CancelledError, OperationCancelled):
            report.error = "cancelled"
            raise
        except Exception as exc:
            report.error = str(exc) or type(exc).__name__
            log.error("Consolidation failed during %s", self.phase.value, exc_info=True)
        finally:
            self.phase = ConsolidationPhase.IDLE
            self._requested = False
            self._last_run = self._monotonic()
            report.duration_seconds = self._last_run - started
            self.last_report = report
            if loop is not None:
                loop.resume()
        log.info(
            "Consolidation finished in %.1fs: window=%d promoted=%d duplicates=%d "
            "learnings=%d failed_groups=%d",
            report.duration_seconds,
            report.window_size,
            report.promoted,
            report.duplicates_skipped,
            report.learnings_written,
            report.failed_groups,
        )
        return report

    async def _collect_window(self) -> Tuple[List[MemoryItem], List[MemoryItem]]:
        try:
            recent = await self.tiering.recent_items(self.window)
            durable = await self.tiering.durable_recent(self.window)
        except OperationCancelled:
            raise
        except Exception as exc:
            raise ConsolidationError(f"could not collect consolidation window: {exc}") from exc
        merged: Dict[str, MemoryItem] = {}
        for item in [*recent, *durable]:
            merged.setdefault(item.id, item)
        window = sorted(merged.values(), key=lambda i: i.timestamp, reverse=True)[:self.window]
        return recent, window

    async def _promote(self, recent: Sequence[MemoryItem], report: ConsolidationReport) -> None:
        now = self._clock()
        eligible = [
            item for item in recent
            if PROMOTED_TAG not in item.tags
            and item.importance >= self.promotion_threshold
            and item.age_seconds(now) >= self.min_age_before_promotion
        ]

        # Among identical contents only the most important copy survives.
        best: Dict[str, MemoryItem] = {}
        for item in eligible:
            key = normalize_content(item.content)
            current = best.get(key)
            if current is None or (item.importance, item.timestamp) > (current.importance, current.timestamp):
                best[key] = item
        report.duplicates_skipped += len(eligible) - len(best)

        for item in sorted(best.values(), key=lambda i: i.timestamp):
            if await self.tiering.durable_exists(item.id):
                continue
            if item.kind is MemoryKind.SUCCESS:
                similar = await self.tiering.find_similar_completed_task(item.content)
                if similar is not None and similar.item.id != item.id:
                    log.info("Skipping promotion of %s, already done as %s (score=%.3f)",
                             item.id, similar.item.id, similar.score)
                    report.duplicates_skipped += 1
                    continue
            durable_copy = item.copy()
            durable_copy.metadata["promoted_from"] = "recent"
            durable_copy.metadata["promoted_at"] = now.isoformat()
            await self.tiering.store_durable(durable_copy)
            await self.tiering.mark_promoted(item)
            report.promoted += 1

    async def _consolidate_group(self, day: date, items: List[MemoryItem], report: ConsolidationReport) -> None:
        report.groups_processed += 1
        try:
            self.phase = ConsolidationPhase.SUMMARIZING
            prompt = ANALYSIS_TEMPLATE.format(
                day=day.isoformat(), count=len(items), listing=render_listing(items)
            )
            response = await self._inference.call(
                lambda: self.reasoner.infer(prompt),
                cancel=self._cancel,
                description=f"consolidation summary for {day.isoformat()}",
            )
            learning = parse_learning(response, [i.id for i in items])

            self.phase = ConsolidationPhase.WRITING
            await self.tiering.store_learning(
                learning, {"learning_date": day.isoformat(), "item_count": str(len(items))}
            )
            report.learnings_written += 1
        except (asyncio.CancelledError, OperationCancelled):
            raise
        except Exception:
            report.failed_groups += 1
            log.error("Consolidation of %s (%d items) failed", day.isoformat(), len(items), exc_info=True)
