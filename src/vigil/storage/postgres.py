from __future__ import annotations

import asyncio
import json
import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from vigil.memory.models import MemoryItem, MemoryKind, utcnow

log = logging.getLogger(__name__)

T = TypeVar("T")

_COLUMNS = (
    "id, partition_day, ts, kind, content, summary, tags, importance, "
    "metadata, access_count, last_accessed_at"
)


class PostgresDurableStore:
    """Durable tier in PostgreSQL.

    One ``memory_items`` row per item, keyed by id, with a ``partition_day``
    column for day-bounded scans.  The primary key is the id index, so
    ``get`` works at any age.  The synchronous psycopg connection is driven
    from the default executor and serialised with a lock.
    """

    def __init__(self, dsn: str, clock: Callable[[], datetime] = utcnow) -> None:
        self._dsn = dsn
        self._clock = clock
        self._conn: Optional[psycopg.Connection] = None
        self._lock = threading.Lock()

    async def connect(self) -> None:
        await self._run(self._connect)
        log.info("Durable store connected to PostgreSQL")

    def _connect(self) -> None:
        self._conn = psycopg.connect(self._dsn, row_factory=dict_row, connect_timeout=3)
        self._ensure_schema()

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _ensure_conn(self) -> psycopg.Connection:
        if self._conn is None:
            raise RuntimeError("PostgresDurableStore not connected. Call connect() first.")
        return self._conn

    def _ensure_schema(self) -> None:
        conn = self._ensure_conn()
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS memory_items (
                    id TEXT PRIMARY KEY,
                    partition_day DATE NOT NULL,
                    ts TIMESTAMPTZ NOT NULL,
                    kind TEXT NOT NULL,
                    content TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    tags TEXT[] NOT NULL DEFAULT ARRAY[]::TEXT[],
                    importance DOUBLE PRECISION NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    access_count INTEGER NOT NULL DEFAULT 0,
                    last_accessed_at TIMESTAMPTZ
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS memory_items_day_ts "
                "ON memory_items (partition_day DESC, ts DESC)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS memory_items_kind ON memory_items (kind)")
        conn.commit()

    async def _run(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()

        def locked() -> T:
            with self._lock:
                try:
                    return fn()
                except Exception:
                    if self._conn is not None and not self._conn.closed:
                        self._conn.rollback()
                    raise

        return await loop.run_in_executor(None, locked)

    # -- contract ----------------------------------------------------------

    async def store(self, item: MemoryItem) -> str:
        def write() -> str:
            conn = self._ensure_conn()
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO memory_items ({_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        partition_day = EXCLUDED.partition_day,
                        ts = EXCLUDED.ts,
                        kind = EXCLUDED.kind,
                        content = EXCLUDED.content,
                        summary = EXCLUDED.summary,
                        tags = EXCLUDED.tags,
                        importance = EXCLUDED.importance,
                        metadata = EXCLUDED.metadata,
                        access_count = EXCLUDED.access_count,
                        last_accessed_at = EXCLUDED.last_accessed_at
                    """,
                    (
                        item.id,
                        item.timestamp.date(),
                        item.timestamp,
                        item.kind.value,
                        item.content,
                        item.summary,
                        sorted(item.tags),
                        item.importance,
                        Jsonb(item.metadata),
                        item.access_count,
                        item.last_accessed_at,
                    ),
                )
            conn.commit()
            return item.id

        return await self._run(write)

    async def get(self, item_id: str) -> Optional[MemoryItem]:
        now = self._clock()

        def read() -> Optional[MemoryItem]:
            conn = self._ensure_conn()
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE memory_items
                    SET access_count = access_count + 1, last_accessed_at = %s
                    WHERE id = %s
                    RETURNING {_COLUMNS}
                    """,
                    (now, item_id),
                )
                row = cur.fetchone()
            conn.commit()
            return self._row_to_item(row) if row else None

        return await self._run(read)

    async def exists(self, item_id: str) -> bool:
        rows = await self._select("SELECT 1 AS hit FROM memory_items WHERE id = %s", (item_id,))
        return bool(rows)

    async def search_by_keyword(self, query: str, limit: int = 10) -> List[MemoryItem]:
        pattern = "%" + _escape_like(query.lower()) + "%"
        rows = await self._select(
            f"""
            SELECT {_COLUMNS} FROM memory_items
            WHERE lower(content) LIKE %s
               OR lower(summary) LIKE %s
               OR EXISTS (SELECT 1 FROM unnest(tags) AS t WHERE t LIKE %s)
            ORDER BY ts DESC
            LIMIT %s
            """,
            (pattern, pattern, pattern, limit),
        )
        return [self._row_to_item(r) for r in rows]

    async def list_by_kind(self, kind: MemoryKind, limit: int = 50) -> List[MemoryItem]:
        rows = await self._select(
            f"SELECT {_COLUMNS} FROM memory_items WHERE kind = %s ORDER BY ts DESC LIMIT %s",
            (kind.value, limit),
        )
        return [self._row_to_item(r) for r in rows]

    async def list_recent(self, limit: int = 100) -> List[MemoryItem]:
        rows = await self._select(
            f"SELECT {_COLUMNS} FROM memory_items ORDER BY partition_day DESC, ts DESC LIMIT %s",
            (limit,),
        )
        return [self._row_to_item(r) for r in rows]

    async def count(self) -> int:
        rows = await self._select("SELECT count(*) AS n FROM memory_items", ())
        return int(rows[0]["n"]) if rows else 0

    async def _select(self, sql: str, params: tuple) -> List[dict]:
        def read() -> List[dict]:
            conn = self._ensure_conn()
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return rows

        return await self._run(read)

    @staticmethod
    def _row_to_item(row: dict) -> MemoryItem:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return MemoryItem(
            id=row["id"],
            timestamp=row["ts"],
            kind=MemoryKind(row["kind"]),
            content=row["content"],
            summary=row["summary"],
            tags=set(row.get("tags") or []),
            importance=float(row["importance"]),
            metadata={str(k): str(v) for k, v in metadata.items()},
            access_count=int(row.get("access_count") or 0),
            last_accessed_at=row.get("last_accessed_at"),
        )


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
