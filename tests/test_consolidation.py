"""Tests for consolidation: promotion, day grouping, learnings and resume."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from helpers import MappingEmbedder, ScriptedReasoner, fast_caller, unit
from vigil.errors import TransientIOError
from vigil.memory.consolidation import (
    DEFAULT_TOPIC,
    FALLBACK_CONFIDENCE,
    ConsolidationPhase,
    ConsolidationService,
    group_by_day,
    parse_learning,
    strip_keywords,
)
from vigil.memory.durable import InMemoryDurableStore
from vigil.memory.models import Collection, MemoryItem, MemoryKind
from vigil.memory.recent import InMemoryRecentStore
from vigil.memory.semantic import EmbeddingGateway, InMemorySemanticIndex
from vigil.memory.tiering import PROMOTED_TAG, MemoryTieringService, recent_key
from vigil.resilience import INFERENCE_POLICY

LEARNING_REPLY = json.dumps({
    "topic": "Capacity",
    "summary": "Disk fills up on Mondays.",
    "insights": {"pattern": "weekly"},
    "confidence": 0.8,
})


async def _put_recent(tiering, item):
    await tiering.recent.put(
        recent_key(item.id), item.to_dict(include_embedding=False),
        timestamp=item.timestamp.timestamp(),
    )


def _service(tiering, reasoner, **kwargs):
    return ConsolidationService(
        tiering, reasoner, inference_caller=fast_caller(INFERENCE_POLICY), **kwargs
    )


def _loop_stub():
    loop = MagicMock()
    loop.pause = MagicMock(return_value=True)
    loop.resume = MagicMock(return_value=True)
    return loop


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def test_parse_learning_reads_json_inside_prose():
    learning = parse_learning(f"Here you go:\n{LEARNING_REPLY}\nThanks", ["a"])
    assert learning.topic == "Capacity"
    assert learning.confidence == 0.8
    assert learning.insights == {"pattern": "weekly"}
    assert learning.source_item_ids == frozenset({"a"})


def test_parse_learning_falls_back_on_garbage():
    text = "no json here " * 40
    learning = parse_learning(text, ["a", "b"])
    assert learning.topic == DEFAULT_TOPIC
    assert learning.confidence == FALLBACK_CONFIDENCE
    assert learning.summary == text.strip()[:200]


def test_parse_learning_clamps_and_normalises():
    learning = parse_learning('{"summary": "x", "confidence": 7, "insights": ["a", "b"]}', [])
    assert learning.confidence == 1.0
    assert learning.topic == DEFAULT_TOPIC
    assert learning.insights == {"1": "a", "2": "b"}


def test_strip_keywords():
    assert strip_keywords("Observation: **disk**   at 91%") == "disk at 91%"
    assert strip_keywords("## Decision:\n`restart`") == "Decision: restart"


def test_group_by_day_keeps_newest_days():
    base = datetime(2026, 3, 20, 12, tzinfo=timezone.utc)
    items = [
        MemoryItem(kind=MemoryKind.OBSERVATION, content=f"d{d}", timestamp=base - timedelta(days=d))
        for d in range(10)
    ]
    groups = group_by_day(items, max_groups=7)
    assert len(groups) == 7
    assert groups[0][0] == base.date()
    assert groups[-1][0] == (base - timedelta(days=6)).date()


# ---------------------------------------------------------------------------
# Triggering
# ---------------------------------------------------------------------------


def test_should_run_every_n_iterations(plain_tiering):
    service = _service(plain_tiering, ScriptedReasoner(), every_n_iterations=3)
    assert [service.should_run(n) for n in range(7)] == [False, False, False, True, False, False, True]


def test_should_run_on_interval_and_request(plain_tiering):
    now = [100.0]
    service = _service(plain_tiering, ScriptedReasoner(), every_n_iterations=0,
                       interval_seconds=60, monotonic=lambda: now[0])
    assert service.should_run(1) is False
    now[0] += 61
    assert service.should_run(1) is True

    disabled = _service(plain_tiering, ScriptedReasoner(), every_n_iterations=0)
    disabled.request()
    assert disabled.should_run(1) is True


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_only_important_copy_of_duplicate_content_is_promoted(plain_tiering):
    high = MemoryItem(kind=MemoryKind.OBSERVATION, content="Queue backlog cleared", importance=0.9)
    low = MemoryItem(kind=MemoryKind.OBSERVATION, content="Queue backlog cleared", importance=0.4)
    await _put_recent(plain_tiering, high)
    await _put_recent(plain_tiering, low)

    service = _service(plain_tiering, ScriptedReasoner(LEARNING_REPLY), promotion_threshold=0.5)
    report = await service.run()

    promoted = await plain_tiering.durable.list_by_kind(MemoryKind.OBSERVATION)
    assert [p.id for p in promoted] == [high.id]
    assert promoted[0].metadata["promoted_from"] == "recent"
    assert report.promoted == 1
    assert not await plain_tiering.durable.exists(low.id)


@pytest.mark.asyncio
async def test_duplicates_above_threshold_are_collapsed(plain_tiering):
    first = MemoryItem(kind=MemoryKind.DECISION, content="Restart  the worker", importance=0.7)
    second = MemoryItem(kind=MemoryKind.DECISION, content="restart the worker", importance=0.9)
    await _put_recent(plain_tiering, first)
    await _put_recent(plain_tiering, second)

    report = await _service(plain_tiering, ScriptedReasoner(LEARNING_REPLY)).run()
    assert report.promoted == 1
    assert report.duplicates_skipped == 1
    assert await plain_tiering.durable.exists(second.id)


@pytest.mark.asyncio
async def test_promoted_items_are_tagged_and_not_promoted_twice(plain_tiering):
    item = MemoryItem(kind=MemoryKind.REFLECTION, content="Alerts are noisy", importance=0.8)
    await _put_recent(plain_tiering, item)
    service = _service(plain_tiering, ScriptedReasoner(LEARNING_REPLY, LEARNING_REPLY))

    assert (await service.run()).promoted == 1
    raw = await plain_tiering.recent.get(recent_key(item.id))
    assert PROMOTED_TAG in raw["tags"]
    assert (await service.run()).promoted == 0


@pytest.mark.asyncio
async def test_young_items_wait_for_min_age(plain_tiering):
    await _put_recent(plain_tiering, MemoryItem(kind=MemoryKind.DECISION, content="fresh", importance=0.9))
    service = _service(plain_tiering, ScriptedReasoner(LEARNING_REPLY), min_age_before_promotion=3600)
    assert (await service.run()).promoted == 0


@pytest.mark.asyncio
async def test_success_already_in_long_term_is_not_promoted(storage_caller):
    embedder = MappingEmbedder({
        "Completed: rotate logs": [1.0, 0.0],
        "Completed: rotate logs yesterday": unit(0.95),
    })
    semantic = InMemorySemanticIndex(EmbeddingGateway(embedder, fast_caller(INFERENCE_POLICY)))
    tiering = MemoryTieringService(
        InMemoryRecentStore(), InMemoryDurableStore(), semantic, storage_caller=storage_caller,
    )
    earlier = MemoryItem(kind=MemoryKind.SUCCESS, content="Completed: rotate logs yesterday")
    await semantic.index(earlier, Collection.LONG_TERM)
    repeat = MemoryItem(kind=MemoryKind.SUCCESS, content="Completed: rotate logs", importance=0.9)
    await _put_recent(tiering, repeat)

    report = await _service(tiering, ScriptedReasoner(LEARNING_REPLY)).run()
    assert report.promoted == 0
    assert report.duplicates_skipped == 1
    assert not await tiering.durable.exists(repeat.id)


@pytest.mark.asyncio
async def test_learning_written_per_day_group(plain_tiering):
    today = datetime.now(timezone.utc)
    for days in (0, 0, 2):
        await _put_recent(plain_tiering, MemoryItem(
            kind=MemoryKind.OBSERVATION, content=f"note {days}", importance=0.1,
            timestamp=today - timedelta(days=days),
        ))
    reasoner = ScriptedReasoner(LEARNING_REPLY, "unstructured reply")
    report = await _service(plain_tiering, reasoner).run()

    assert report.groups_processed == 2
    assert report.learnings_written == 2
    assert report.ok
    learnings = await plain_tiering.durable.list_by_kind(MemoryKind.LEARNING)
    assert {item.metadata["topic"] for item in learnings} == {"Capacity", DEFAULT_TOPIC}
    assert {item.metadata["item_count"] for item in learnings} == {"2", "1"}
    assert "Activity log" in reasoner.prompts[0]


@pytest.mark.asyncio
async def test_failing_reasoner_still_resumes_loop_once(plain_tiering):
    await _put_recent(plain_tiering, MemoryItem(kind=MemoryKind.OBSERVATION, content="x", importance=0.1))
    reasoner = ScriptedReasoner(RuntimeError("model exploded"))
    loop = _loop_stub()

    service = _service(plain_tiering, reasoner)
    report = await service.run(loop)

    loop.pause.assert_called_once()
    loop.resume.assert_called_once()
    assert service.phase is ConsolidationPhase.IDLE
    assert report.failed_groups == 1
    assert report.learnings_written == 0
    assert not report.ok


@pytest.mark.asyncio
async def test_exhausted_retries_count_as_failed_group(plain_tiering):
    await _put_recent(plain_tiering, MemoryItem(kind=MemoryKind.OBSERVATION, content="x", importance=0.1))
    reasoner = MagicMock()
    reasoner.infer = AsyncMock(side_effect=TransientIOError("overloaded", status_code=503))
    loop = _loop_stub()

    report = await _service(plain_tiering, reasoner).run(loop)
    assert reasoner.infer.await_count == INFERENCE_POLICY.max_retries + 1
    assert report.failed_groups == 1
    loop.resume.assert_called_once()


@pytest.mark.asyncio
async def test_window_failure_is_reported_and_loop_resumed(plain_tiering):
    plain_tiering.recent_items = AsyncMock(side_effect=RuntimeError("redis gone"))
    loop = _loop_stub()
    service = _service(plain_tiering, ScriptedReasoner())

    report = await service.run(loop)
    assert "redis gone" in report.error
    loop.resume.assert_called_once()
    assert service.last_report is report
    assert service.phase is ConsolidationPhase.IDLE
