"""Data model for the tiered memory subsystem.

:class:`MemoryItem` is the atomic unit of recorded experience.  It is written
once into the recent tier, optionally copied into the durable tier by
consolidation, and indexed into one of the two semantic collections.
:class:`ConsolidatedLearning` is the distilled product of a consolidation
run and is never mutated after creation.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryKind(Enum):
    OBSERVATION = "observation"
    DECISION = "decision"
    REFLECTION = "reflection"
    SUCCESS = "success"
    FAILURE = "failure"
    LEARNING = "learning"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class Collection(Enum):
    """Named semantic collections layered over the two tiers."""

    SHORT_TERM = "short-term"
    LONG_TERM = "long-term"


@dataclass
class MemoryItem:
    """A single recorded experience.

    ``id`` and ``timestamp`` are fixed at creation.  ``importance`` only moves
    up through :meth:`raise_importance`; ``tags`` only grow through
    :meth:`add_tags`.  ``embedding`` is filled in by the semantic index.
    """

    kind: MemoryKind
    content: str
    summary: str = ""
    tags: set[str] = field(default_factory=set)
    importance: float = 0.5
    metadata: dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)
    access_count: int = 0
    last_accessed_at: datetime | None = None
    embedding: list[float] | None = None

    def __post_init__(self) -> None:
        self.importance = _clamp(self.importance)
        if not self.summary:
            self.summary = summarize(self.content)
        self.tags = {t.lower() for t in self.tags}

    def touch(self, now: datetime | None = None) -> None:
        self.access_count += 1
        self.last_accessed_at = now or utcnow()

    def add_tags(self, tags: Iterable[str]) -> None:
        self.tags.update(t.lower() for t in tags)

    def raise_importance(self, value: float) -> bool:
        """Set importance to *value* if that is an increase.  Returns whether it changed."""
        value = _clamp(value)
        if value <= self.importance:
            return False
        self.importance = value
        return True

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or utcnow()
        return max(0.0, (now - self.timestamp).total_seconds())

    def copy(self) -> MemoryItem:
        return MemoryItem.from_dict(self.to_dict())

    # -- serialization ------------------------------------------------------

    def to_dict(self, include_embedding: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "content": self.content,
            "summary": self.summary,
            "tags": sorted(self.tags),
            "importance": self.importance,
            "metadata": dict(self.metadata),
            "access_count": self.access_count,
            "last_accessed_at": (
                self.last_accessed_at.isoformat() if self.last_accessed_at else None
            ),
        }
        if include_embedding:
            data["embedding"] = list(self.embedding) if self.embedding is not None else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryItem:
        last = data.get("last_accessed_at")
        embedding = data.get("embedding")
        return cls(
            id=data["id"],
            timestamp=_parse_dt(data["timestamp"]),
            kind=MemoryKind(data["kind"]),
            content=data.get("content", ""),
            summary=data.get("summary", ""),
            tags=set(data.get("tags") or []),
            importance=float(data.get("importance", 0.5)),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
            access_count=int(data.get("access_count", 0)),
            last_accessed_at=_parse_dt(last) if last else None,
            embedding=[float(v) for v in embedding] if embedding is not None else None,
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> MemoryItem:
        return cls.from_dict(json.loads(raw))


@dataclass(frozen=True)
class ConsolidatedLearning:
    """Knowledge distilled from a window of memory items.

    ``source_item_ids`` are weak references: the learning does not keep its
    sources alive.
    """

    topic: str
    summary: str
    insights: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.7
    source_item_ids: frozenset[str] = field(default_factory=frozenset)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def to_memory_item(self) -> MemoryItem:
        lines = [self.summary]
        for key, value in self.insights.items():
            lines.append(f"- {key}: {value if isinstance(value, str) else json.dumps(value)}")
        return MemoryItem(
            id=self.id,
            timestamp=self.created_at,
            kind=MemoryKind.LEARNING,
            content="\n".join(lines),
            summary=f"{self.topic}: {summarize(self.summary)}",
            tags={"learning", "consolidated", self.topic.lower()},
            importance=max(0.5, _clamp(self.confidence)),
            metadata={
                "topic": self.topic,
                "confidence": f"{self.confidence:.2f}",
                "source_item_ids": ",".join(sorted(self.source_item_ids)),
                "insights": json.dumps(self.insights, default=str),
            },
        )


@dataclass(frozen=True)
class ScoredItem:
    item: MemoryItem
    score: float


@dataclass(frozen=True)
class SearchFilters:
    """Conjunction of structured filters for semantic search.

    Every populated field must match.  ``tags`` matches when the item carries
    at least one of the given tags.
    """

    kinds: frozenset[MemoryKind] | None = None
    tags: frozenset[str] | None = None
    min_importance: float | None = None
    from_time: datetime | None = None
    to_time: datetime | None = None

    def matches(self, item: MemoryItem) -> bool:
        if self.kinds and item.kind not in self.kinds:
            return False
        if self.tags and not (item.tags & {t.lower() for t in self.tags}):
            return False
        if self.min_importance is not None and item.importance < self.min_importance:
            return False
        if self.from_time is not None and item.timestamp < self.from_time:
            return False
        if self.to_time is not None and item.timestamp > self.to_time:
            return False
        return True


def summarize(content: str, limit: int = 100) -> str:
    text = " ".join(content.split())
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _parse_dt(raw: str | datetime) -> datetime:
    dt = raw if isinstance(raw, datetime) else datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
