"""Per-collection vector index on ChromaDB.

Every named collection maps to its own chroma collection, so entries of one
collection are physically separate from every other. Chroma's HNSW search
supplies candidates; scores are then recomputed exactly with numpy so that
ordering (descending cosine, ties broken by earliest insertion) does not
depend on approximate distances.
"""

import hashlib
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

import chromadb
import numpy as np
from chromadb.config import Settings

from ..errors import DimensionMismatch, IsolationError
from ..logging_config import get_logger

logger = get_logger(__name__)

# Chroma returns approximate neighbours; fetch extra so exact re-ranking and
# tie-breaking have the true top-k to work with.
_OVERFETCH = 4
_MIN_CANDIDATES = 32
_SCORE_DECIMALS = 9
_PAGE_SIZE = 1000


@dataclass(frozen=True)
class IndexEntry:
    """One embedded chunk of text."""
    entry_id: str
    source_id: str
    vector: tuple[float, ...]
    text: str
    collection: str = ""
    inserted_ns: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def inserted_at(self) -> float:
        return self.inserted_ns / 1e9


@dataclass(frozen=True)
class ScoredEntry:
    entry: IndexEntry
    score: float


def cosine_scores(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``matrix``."""
    query_norm = np.linalg.norm(query)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, matrix @ query / denom, 0.0)
    return scores


def storage_name(collection: str) -> str:
    """Chroma collection name for a sidecar collection.

    Chroma names are restricted to ``[a-zA-Z0-9._-]``; the hash keeps names
    that slug to the same string apart.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", collection.lower()).strip("-")[:40] or "c"
    digest = hashlib.sha1(collection.encode("utf-8")).hexdigest()[:8]
    return f"sidecar-{slug}-{digest}"


def _clean_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma accepts only scalar metadata values.
    return {k: v for k, v in metadata.items() if isinstance(v, (str, int, float, bool))}


class CollectionIndex:
    """Vector index of a single collection.

    Inserts and queries hold the same lock, so a query observes the index
    either before or after an insert, never part-way through it.
    """

    def __init__(self, name: str, chroma_collection: chromadb.Collection):
        self.name = name
        self._collection = chroma_collection
        self._lock = threading.RLock()
        self._dimension: Optional[int] = None
        self._last_ns = 0

    @property
    def dimension(self) -> Optional[int]:
        with self._lock:
            if self._dimension is None and self._collection.count() > 0:
                sample = self._collection.get(limit=1, include=["embeddings"])
                embeddings = sample.get("embeddings")
                if embeddings is not None and len(embeddings) > 0:
                    self._dimension = len(embeddings[0])
            return self._dimension

    def count(self) -> int:
        with self._lock:
            return self._collection.count()

    def _check_dimension(self, vector: Sequence[float]) -> None:
        expected = self.dimension
        if expected is not None and len(vector) != expected:
            raise DimensionMismatch(
                f"Vector of dimension {len(vector)} does not match collection '{self.name}' ({expected})"
            )

    def _next_ns(self) -> int:
        self._last_ns = max(time.time_ns(), self._last_ns + 1)
        return self._last_ns

    def insert(self, entries: Sequence[IndexEntry]) -> list[IndexEntry]:
        """Insert entries atomically with respect to queries.

        Entries are stamped with this collection's name and an insertion
        time. Returns the stored entries.

        Raises:
            DimensionMismatch: An entry's vector does not fit the collection.
        """
        if not entries:
            return []
        with self._lock:
            dims = {len(e.vector) for e in entries}
            if len(dims) != 1:
                raise DimensionMismatch(f"Entries for '{self.name}' have mixed dimensions {sorted(dims)}")
            self._check_dimension(entries[0].vector)
            stored = [
                IndexEntry(
                    entry_id=e.entry_id,
                    source_id=e.source_id,
                    vector=tuple(float(x) for x in e.vector),
                    text=e.text,
                    collection=self.name,
                    inserted_ns=self._next_ns(),
                    metadata=dict(e.metadata),
                )
                for e in entries
            ]
            self._collection.upsert(
                ids=[e.entry_id for e in stored],
                embeddings=[list(e.vector) for e in stored],
                documents=[e.text for e in stored],
                metadatas=[
                    _clean_metadata(
                        {**e.metadata, "source_id": e.source_id, "collection": self.name, "inserted_ns": e.inserted_ns}
                    )
                    for e in stored
                ],
            )
            if self._dimension is None:
                self._dimension = len(stored[0].vector)
            return stored

    def remove_by_source(self, source_id: str) -> int:
        """Delete every entry of ``source_id``. Returns how many were removed."""
        with self._lock:
            found = self._collection.get(where={"source_id": source_id}, include=[])
            ids = found.get("ids") or []
            if ids:
                self._collection.delete(ids=ids)
            return len(ids)

    def replace_source(self, source_id: str, entries: Sequence[IndexEntry]) -> list[IndexEntry]:
        """Swap all entries of ``source_id`` for ``entries`` in one step."""
        with self._lock:
            if entries:
                self._check_dimension(entries[0].vector)
            self.remove_by_source(source_id)
            return self.insert(entries)

    def sources(self) -> dict[str, dict[str, Any]]:
        """Map of source id to the metadata of one of its entries."""
        result: dict[str, dict[str, Any]] = {}
        with self._lock:
            offset = 0
            while True:
                page = self._collection.get(include=["metadatas"], limit=_PAGE_SIZE, offset=offset)
                metadatas = page.get("metadatas") or []
                for metadata in metadatas:
                    if metadata and "source_id" in metadata:
                        result.setdefault(metadata["source_id"], dict(metadata))
                if len(metadatas) < _PAGE_SIZE:
                    return result
                offset += _PAGE_SIZE

    def query(self, vector: Sequence[float], k: int) -> list[ScoredEntry]:
        """Top ``k`` entries by descending cosine similarity, earliest insertion first on ties.

        When the k-th best score ties the weakest candidate, entries with that
        score may lie outside the candidate pool, so the whole collection is
        scanned instead.

        Raises:
            DimensionMismatch: ``vector`` does not fit the collection.
            IsolationError: Storage returned an entry of another collection.
        """
        if k <= 0:
            return []
        query_vector = np.asarray(vector, dtype=float)
        with self._lock:
            total = self._collection.count()
            if total == 0:
                return []
            self._check_dimension(vector)
            n = min(total, max(k * _OVERFETCH, _MIN_CANDIDATES))
            raw = self._collection.query(
                query_embeddings=[list(vector)],
                n_results=n,
                include=["embeddings", "documents", "metadatas"],
            )
            results = self._score(
                query_vector, raw["ids"][0], raw["documents"][0], raw["metadatas"][0], raw["embeddings"][0]
            )
            if len(results) < total and len(results) >= k:
                floor = min(round(r.score, _SCORE_DECIMALS) for r in results)
                if round(self._ranked(results)[k - 1].score, _SCORE_DECIMALS) <= floor:
                    logger.debug("Tie at the candidate boundary in %s, scanning %d entries", self.name, total)
                    results = self._scan(query_vector)
        return self._ranked(results)[:k]

    def _scan(self, query_vector: np.ndarray) -> list[ScoredEntry]:
        results: list[ScoredEntry] = []
        offset = 0
        while True:
            page = self._collection.get(
                include=["embeddings", "documents", "metadatas"], limit=_PAGE_SIZE, offset=offset
            )
            ids = page["ids"]
            if len(ids):
                results.extend(
                    self._score(query_vector, ids, page["documents"], page["metadatas"], page["embeddings"])
                )
            if len(ids) < _PAGE_SIZE:
                return results
            offset += _PAGE_SIZE

    def _score(self, query_vector, ids, documents, metadatas, embeddings) -> list[ScoredEntry]:
        if not len(ids):
            return []
        matrix = np.asarray(embeddings, dtype=float)
        scores = cosine_scores(query_vector, matrix)
        results = []
        for i, entry_id in enumerate(ids):
            metadata = dict(metadatas[i] or {})
            owner = metadata.pop("collection", None)
            if owner != self.name:
                raise IsolationError(f"Entry {entry_id} of collection '{owner}' surfaced in '{self.name}'")
            source_id = metadata.pop("source_id", "")
            inserted_ns = int(metadata.pop("inserted_ns", 0))
            entry = IndexEntry(
                entry_id=entry_id,
                source_id=source_id,
                vector=tuple(matrix[i].tolist()),
                text=documents[i] or "",
                collection=self.name,
                inserted_ns=inserted_ns,
                metadata=metadata,
            )
            results.append(ScoredEntry(entry=entry, score=float(scores[i])))
        return results

    @staticmethod
    def _ranked(results: list[ScoredEntry]) -> list[ScoredEntry]:
        return sorted(results, key=lambda r: (-round(r.score, _SCORE_DECIMALS), r.entry.inserted_ns, r.entry.entry_id))


class VectorStore:
    """Owns the chroma client and one CollectionIndex per collection name."""

    def __init__(self, persist_dir: str | Path, client: Optional[Any] = None):
        self.persist_dir = Path(persist_dir).expanduser()
        if client is None:
            self.persist_dir.mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(
                path=str(self.persist_dir),
                settings=Settings(
                    anonymized_telemetry=False,
                    allow_reset=True,
                ),
            )
        self._client = client
        self._lock = threading.Lock()
        self._indexes: dict[str, CollectionIndex] = {}

    def collection(self, name: str) -> CollectionIndex:
        """Get or create the index for collection ``name``."""
        with self._lock:
            index = self._indexes.get(name)
            if index is None:
                chroma_collection = self._client.get_or_create_collection(
                    name=storage_name(name),
                    metadata={"hnsw:space": "cosine", "sidecar_collection": name},
                    embedding_function=None,
                )
                index = CollectionIndex(name, chroma_collection)
                self._indexes[name] = index
            return index

    def drop(self, name: str) -> None:
        """Delete collection ``name`` and all of its entries."""
        with self._lock:
            self._indexes.pop(name, None)
            try:
                self._client.delete_collection(storage_name(name))
            except Exception as e:
                logger.debug("Could not delete collection %s: %s", name, e)
