from .base import (
    DocumentStore,
    EpisodeFilter,
    FactFilter,
    SessionFilter,
    VectorIndex,
    VectorItem,
    VectorMatch,
)
from .sqlite_store import SqliteDocumentStore
from .vector_index import SqliteVectorIndex

__all__ = [
    "DocumentStore",
    "EpisodeFilter",
    "FactFilter",
    "SessionFilter",
    "VectorIndex",
    "VectorItem",
    "VectorMatch",
    "SqliteDocumentStore",
    "SqliteVectorIndex",
]
