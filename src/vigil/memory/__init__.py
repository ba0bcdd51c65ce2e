"""Tiered memory: recent and durable stores, semantic index, consolidation."""

from .consolidation import ConsolidationPhase, ConsolidationReport, ConsolidationService
from .durable import DurableMemoryStore, InMemoryDurableStore
from .models import Collection, ConsolidatedLearning, MemoryItem, MemoryKind, ScoredItem, SearchFilters
from .recent import InMemoryRecentStore, RecentMemoryStore
from .semantic import EmbeddingGateway, InMemorySemanticIndex, SemanticIndex
from .tiering import MemorySearchResponse, MemoryTieringService, compute_importance

__all__ = [
    "Collection",
    "ConsolidatedLearning",
    "ConsolidationPhase",
    "ConsolidationReport",
    "ConsolidationService",
    "DurableMemoryStore",
    "EmbeddingGateway",
    "InMemoryDurableStore",
    "InMemoryRecentStore",
    "InMemorySemanticIndex",
    "MemoryItem",
    "MemoryKind",
    "MemorySearchResponse",
    "MemoryTieringService",
    "RecentMemoryStore",
    "ScoredItem",
    "SearchFilters",
    "SemanticIndex",
    "compute_importance",
]
