"""Retrieval: per-collection vector index, background indexing and search.

This package provides the semantic memory behind the ``remember`` and
``semantic_search`` tools.
"""

from .chunker import Chunk, chunk_file, chunk_text
from .engine import Collection, RagEngine
from .indexer import BackgroundIndexer, IndexingJob, JobState
from .vectorstore import CollectionIndex, IndexEntry, ScoredEntry, VectorStore

__all__ = [
    "BackgroundIndexer",
    "Chunk",
    "Collection",
    "CollectionIndex",
    "IndexEntry",
    "IndexingJob",
    "JobState",
    "RagEngine",
    "ScoredEntry",
    "VectorStore",
    "chunk_file",
    "chunk_text",
]
