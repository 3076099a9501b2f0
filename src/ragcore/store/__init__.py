"""Persistence: SQL registry, vector index and per-document locks."""

from .database import Registry, SessionRecord
from .locks import KeyedLocks
from .vector import QueryFilter, VectorStore

__all__ = [
    "KeyedLocks",
    "QueryFilter",
    "Registry",
    "SessionRecord",
    "VectorStore",
]
