"""Networked storage backends for Vigil's memory tiers."""

from .postgres import PostgresDurableStore
from .qdrant import QdrantSemanticIndex
from .redis import RedisRecentStore

__all__ = [
    "PostgresDurableStore",
    "QdrantSemanticIndex",
    "RedisRecentStore",
]
