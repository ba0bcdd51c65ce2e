from __future__ import annotations

import json
import logging
import math
import time
from typing import Any, Callable, List, Optional

import redis.asyncio as aioredis

from vigil.memory.recent import DEFAULT_MAX_ENTRIES, DEFAULT_TTL_SECONDS

log = logging.getLogger(__name__)


class RedisRecentStore:
    """Recent tier in Redis.

    Values are JSON strings written with ``SET ... EX``; a sorted set scored
    by item timestamp tracks eviction order.  Index members whose value has
    expired are pruned lazily: a full sweep runs when the entries due for
    eviction turn out to be expired already, at most once per
    *prune_interval* seconds.

    Keys::

        {prefix}:item:{key}   JSON value, TTL'd
        {prefix}:index        ZSET key -> timestamp
    """

    def __init__(self, url: str, prefix: str = "vigil:recent",
                 max_entries: int = DEFAULT_MAX_ENTRIES,
                 default_ttl: Optional[float] = DEFAULT_TTL_SECONDS,
                 clock: Callable[[], float] = time.time,
                 prune_interval: float = 60.0) -> None:
        self._url = url
        self._prefix = prefix
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self._clock = clock
        self.prune_interval = prune_interval
        self._last_prune = -math.inf
        self._client: Any = None

    async def connect(self) -> None:
        self._client = aioredis.from_url(self._url, decode_responses=True)
        await self._client.ping()
        log.info("Recent store connected to Redis at %s", self._url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> Any:
        if self._client is None:
            raise RuntimeError("RedisRecentStore not connected. Call connect() first.")
        return self._client

    def _item_key(self, key: str) -> str:
        return f"{self._prefix}:item:{key}"

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}:index"

    async def put(self, key: str, value: Any, ttl: Optional[float] = None,
                  timestamp: Optional[float] = None) -> None:
        client = self._ensure_client()
        ttl = self.default_ttl if ttl is None else ttl
        ts = self._clock() if timestamp is None else timestamp
        ex = max(1, math.ceil(ttl)) if ttl is not None else None
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._item_key(key), json.dumps(value), ex=ex)
            pipe.zadd(self._index_key, {key: ts})
            await pipe.execute()
        await self._enforce_capacity()

    async def get(self, key: str) -> Optional[Any]:
        client = self._ensure_client()
        raw = await client.get(self._item_key(key))
        if raw is None:
            await client.zrem(self._index_key, key)
            return None
        return json.loads(raw)

    async def replace(self, key: str, value: Any) -> bool:
        client = self._ensure_client()
        ok = await client.set(self._item_key(key), json.dumps(value), xx=True, keepttl=True)
        return bool(ok)

    async def delete(self, key: str) -> bool:
        client = self._ensure_client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(self._item_key(key))
            pipe.zrem(self._index_key, key)
            deleted, _ = await pipe.execute()
        return bool(deleted)

    async def list_keys(self, pattern: str = "*") -> List[str]:
        client = self._ensure_client()
        offset = len(self._item_key(""))
        keys: List[str] = []
        async for full in client.scan_iter(match=self._item_key(pattern), count=500):
            keys.append(full[offset:])
        return keys

    async def count(self) -> int:
        await self._prune_index()
        return await self._ensure_client().zcard(self._index_key)

    async def _enforce_capacity(self) -> None:
        client = self._ensure_client()
        overflow = await client.zcard(self._index_key) - self.max_entries
        if overflow <= 0:
            return
        oldest = await client.zrange(self._index_key, 0, overflow - 1)
        if not all(await self._alive(oldest)) and self._prune_due():
            await self._prune_index()
            overflow = await client.zcard(self._index_key) - self.max_entries
            if overflow <= 0:
                return
            oldest = await client.zrange(self._index_key, 0, overflow - 1)
        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(*[self._item_key(k) for k in oldest])
            pipe.zrem(self._index_key, *oldest)
            await pipe.execute()
        log.debug("Recent store over capacity, evicted %d entr(ies)", len(oldest))

    async def _alive(self, keys: List[str]) -> List[bool]:
        if not keys:
            return []
        async with self._ensure_client().pipeline(transaction=False) as pipe:
            for k in keys:
                pipe.exists(self._item_key(k))
            return [bool(a) for a in await pipe.execute()]

    def _prune_due(self) -> bool:
        return self._clock() - self._last_prune >= self.prune_interval

    async def _prune_index(self) -> None:
        """Drop index members whose value has already expired."""
        client = self._ensure_client()
        self._last_prune = self._clock()
        members = await client.zrange(self._index_key, 0, -1)
        if not members:
            return
        alive = await self._alive(members)
        dead = [k for k, a in zip(members, alive) if not a]
        if dead:
            await client.zrem(self._index_key, *dead)
