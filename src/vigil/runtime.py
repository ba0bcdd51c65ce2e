"""Explicitly constructed context object for a Vigil process.

:class:`Runtime` owns every long-lived component and is the surface an
outer layer (HTTP API, CLI, tests) talks to.  Nothing in Vigil keeps mutable
state in module globals; two runtimes in one process are independent.

Usage::

    runtime = await build_runtime(get_settings())
    await runtime.start()
    runtime.submit_directive("focus on monitoring")
    print(runtime.status())
    await runtime.stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from vigil.config import VigilSettings
from vigil.memory.consolidation import ConsolidationService
from vigil.memory.durable import DurableMemoryStore, InMemoryDurableStore
from vigil.memory.recent import InMemoryRecentStore, RecentMemoryStore
from vigil.memory.semantic import EmbeddingGateway, InMemorySemanticIndex, SemanticIndex
from vigil.memory.tiering import MemorySearchResponse, MemoryTieringService
from vigil.models.embeddings import build_embedder
from vigil.models.openrouter import OpenRouterClient
from vigil.models.reasoner import OpenRouterReasoner, Reasoner
from vigil.orchestrator.background import BackgroundWriter
from vigil.orchestrator.directives import DirectiveKind, HumanDirectiveQueue
from vigil.orchestrator.loop import ControlLoop
from vigil.resilience import INFERENCE_POLICY, STORAGE_POLICY, ResilientCaller

log = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Optional[VigilSettings]
    stop_event: asyncio.Event
    tiering: MemoryTieringService
    directives: HumanDirectiveQueue
    loop: ControlLoop
    background: BackgroundWriter
    consolidation: Optional[ConsolidationService] = None
    client: Optional[OpenRouterClient] = None
    closeables: List[Any] = field(default_factory=list)

    async def start(self) -> None:
        await self.loop.start()

    async def stop(self) -> None:
        """Stop the loop, drain background writes and close every backend."""
        await self.loop.stop()
        for resource in reversed(self.closeables):
            try:
                await resource.close()
            except Exception:
                log.warning("Error closing %r", resource, exc_info=True)
        if self.client is not None:
            await self.client.close()

    def pause(self) -> bool:
        return self.loop.pause()

    def resume(self) -> bool:
        return self.loop.resume()

    def submit_directive(self, text: str, kind: DirectiveKind | str = DirectiveKind.INSTRUCTION) -> str:
        return self.loop.submit_directive(text, kind)

    def status(self) -> Dict[str, Any]:
        return self.loop.status().to_dict()

    async def search_memories(self, query: str, max_results: int = 10,
                              min_score: float = 0.7) -> MemorySearchResponse:
        return await self.tiering.search_memories(query, max_results, min_score)

    async def get_memory_stats(self) -> Dict[str, Any]:
        return await self.tiering.get_memory_stats()


def assemble_runtime(
    *,
    recent: RecentMemoryStore,
    durable: DurableMemoryStore,
    semantic: Optional[SemanticIndex],
    reasoner: Reasoner,
    settings: Optional[VigilSettings] = None,
    stop_event: Optional[asyncio.Event] = None,
    storage_caller: Optional[ResilientCaller] = None,
    inference_caller: Optional[ResilientCaller] = None,
    client: Optional[OpenRouterClient] = None,
    closeables: Optional[List[Any]] = None,
    **overrides: Any,
) -> Runtime:
    """Wire the core components around already-built stores.

    Tunables come from *settings* when given, else from the defaults of
    :class:`VigilSettings`; keyword *overrides* (lower-case setting names,
    e.g. ``iteration_delay_seconds=0``) win over both.
    """
    values = _tunables(settings)
    values.update({k.upper(): v for k, v in overrides.items()})

    stop_event = stop_event or asyncio.Event()
    storage_caller = storage_caller or ResilientCaller(STORAGE_POLICY)
    inference_caller = inference_caller or ResilientCaller(INFERENCE_POLICY)
    background = BackgroundWriter(values["BACKGROUND_WORKERS"], values["BACKGROUND_QUEUE_SIZE"])
    tiering = MemoryTieringService(
        recent,
        durable,
        semantic,
        background,
        storage_caller=storage_caller,
        cancel=stop_event,
        long_term_min_score=values["LONG_TERM_MIN_SCORE"],
        similar_task_min_score=values["SIMILAR_TASK_MIN_SCORE"],
    )
    consolidation = None
    if values["CONSOLIDATION_ENABLED"]:
        consolidation = ConsolidationService(
            tiering,
            reasoner,
            inference_caller=inference_caller,
            cancel=stop_event,
            every_n_iterations=values["CONSOLIDATION_EVERY_N_ITERATIONS"],
            interval_seconds=values["CONSOLIDATION_INTERVAL_SECONDS"],
            window=values["CONSOLIDATION_WINDOW"],
            promotion_threshold=values["PROMOTION_THRESHOLD"],
            min_age_before_promotion=values["MIN_AGE_BEFORE_PROMOTION_SECONDS"],
        )
    directives = HumanDirectiveQueue()
    loop = ControlLoop(
        tiering,
        reasoner,
        directives,
        consolidation,
        background,
        inference_caller=inference_caller,
        stop_event=stop_event,
        iteration_delay=values["ITERATION_DELAY_SECONDS"],
        poll_interval=values["PAUSE_POLL_SECONDS"],
        shutdown_grace=values["SHUTDOWN_GRACE_SECONDS"],
        default_goal=values["DEFAULT_GOAL"],
    )
    return Runtime(
        settings=settings,
        stop_event=stop_event,
        tiering=tiering,
        directives=directives,
        loop=loop,
        background=background,
        consolidation=consolidation,
        client=client,
        closeables=list(closeables or []),
    )


async def build_runtime(settings: VigilSettings) -> Runtime:
    """Build the production runtime, falling back to in-memory backends.

    A configured backend that cannot be reached is logged and replaced by
    its in-memory counterpart so the process still starts.
    """
    stop_event = asyncio.Event()
    storage_caller = ResilientCaller(STORAGE_POLICY)
    inference_caller = ResilientCaller(INFERENCE_POLICY)
    client = OpenRouterClient(settings.OPENROUTER_API_KEY, settings.OPENROUTER_BASE_URL)
    closeables: List[Any] = []

    recent: RecentMemoryStore = InMemoryRecentStore(settings.RECENT_MAX_ENTRIES, settings.RECENT_TTL_SECONDS)
    if settings.REDIS_URL:
        from vigil.storage.redis import RedisRecentStore

        redis_store = RedisRecentStore(
            settings.REDIS_URL,
            max_entries=settings.RECENT_MAX_ENTRIES,
            default_ttl=settings.RECENT_TTL_SECONDS,
        )
        try:
            await redis_store.connect()
            recent = redis_store
            closeables.append(redis_store)
        except Exception as exc:
            log.warning("Redis unavailable (%s), recent tier stays in memory.", exc)

    durable: DurableMemoryStore = InMemoryDurableStore()
    if settings.POSTGRES_URL:
        from vigil.storage.postgres import PostgresDurableStore

        pg_store = PostgresDurableStore(settings.POSTGRES_URL)
        try:
            await pg_store.connect()
            durable = pg_store
            closeables.append(pg_store)
        except Exception as exc:
            log.warning("PostgreSQL unavailable (%s), durable tier stays in memory.", exc)

    semantic: Optional[SemanticIndex] = None
    if settings.SEMANTIC_ENABLED:
        embeddings = EmbeddingGateway(build_embedder(settings, client), inference_caller, stop_event)
        semantic = InMemorySemanticIndex(embeddings)
        if settings.QDRANT_URL:
            from vigil.storage.qdrant import QdrantSemanticIndex

            qdrant = QdrantSemanticIndex(
                settings.QDRANT_URL,
                embeddings,
                prefix=settings.QDRANT_COLLECTION_PREFIX,
                storage_caller=storage_caller,
                cancel=stop_event,
            )
            try:
                await qdrant.initialize()
                semantic = qdrant
                closeables.append(qdrant)
            except Exception as exc:
                log.warning("Qdrant unavailable (%s), semantic index stays in memory.", exc)

    reasoner = OpenRouterReasoner(client, settings.REASONING_MODEL)
    runtime = assemble_runtime(
        recent=recent,
        durable=durable,
        semantic=semantic,
        reasoner=reasoner,
        settings=settings,
        stop_event=stop_event,
        storage_caller=storage_caller,
        inference_caller=inference_caller,
        client=client,
        closeables=closeables,
    )
    log.info(
        "Runtime ready: recent=%s durable=%s semantic=%s",
        type(recent).__name__,
        type(durable).__name__,
        type(semantic).__name__ if semantic is not None else "disabled",
    )
    return runtime


def _tunables(settings: Optional[VigilSettings]) -> Dict[str, Any]:
    if settings is not None:
        return settings.model_dump()
    return {
        name: info.default
        for name, info in VigilSettings.model_fields.items()
        if not info.is_required()
    }
