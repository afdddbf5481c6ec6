"""Retrieval façade: the only read path into the vector index.

Collections are configured up front. ``memory`` and ``web`` always exist and
have no root directory; they are filled by ``remember`` and by web search.
Rooted collections are filled by the background indexer.
"""

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import CollectionNotReady, InvalidArguments, UnknownCollection
from ..logging_config import get_logger
from ..state.notifications import NotificationBus
from .embeddings import Embedder, SentenceTransformerEmbedder
from .indexer import BackgroundIndexer, IndexingJob
from .vectorstore import IndexEntry, ScoredEntry, VectorStore

logger = get_logger(__name__)

MEMORY_COLLECTION = "memory"
WEB_COLLECTION = "web"
WORKSPACE_COLLECTION = "workspace"
BUILTIN_COLLECTIONS = (MEMORY_COLLECTION, WEB_COLLECTION)


@dataclass(frozen=True)
class Collection:
    """A configured collection; ``root`` is None for synthetic collections."""
    name: str
    root: Optional[Path] = None


class RagEngine:
    """Embeds, stores and searches text per collection.

    Args:
        store: Vector store.
        embedder: Text to vector function shared with the indexer.
        indexer: Background indexer for rooted collections.
        collections: Name to root directory (None for synthetic collections).
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: Embedder,
        indexer: BackgroundIndexer,
        collections: dict[str, Optional[str | Path]],
    ):
        self.store = store
        self.embedder = embedder
        self.indexer = indexer
        self._collections: dict[str, Collection] = {}
        for name in BUILTIN_COLLECTIONS:
            self._collections[name] = Collection(name)
        for name, root in collections.items():
            if not name.strip():
                raise ValueError("Collection names must not be empty")
            self._collections[name] = Collection(name, Path(root).expanduser().resolve() if root else None)

    @classmethod
    def from_settings(cls, settings, bus: Optional[NotificationBus] = None, workspace: Optional[Path] = None) -> "RagEngine":
        """Build the engine, store, embedder and indexer from settings."""
        store = VectorStore(settings.index_path())
        embedder = SentenceTransformerEmbedder(settings.embedding_model)
        indexer = BackgroundIndexer(
            store,
            embedder,
            bus=bus,
            ignored_patterns=settings.ignored_patterns,
            chunk_lines=settings.chunk_lines,
            chunk_overlap=settings.chunk_overlap,
        )
        collections: dict[str, Optional[str | Path]] = {}
        if workspace is not None:
            collections[WORKSPACE_COLLECTION] = workspace
        collections.update(settings.collections)
        return cls(store, embedder, indexer, collections)

    def collections(self) -> list[Collection]:
        return list(self._collections.values())

    def get_collection(self, name: str) -> Collection:
        collection = self._collections.get(name)
        if collection is None:
            raise UnknownCollection(
                f"Unknown collection '{name}'. Configured collections: {', '.join(sorted(self._collections))}"
            )
        return collection

    def remember(self, collection: str, text: str) -> IndexEntry:
        """Embed ``text`` and store it in ``collection`` under a fresh synthetic source.

        Raises:
            UnknownCollection: ``collection`` is not configured.
            EmbeddingFailed: The embedder failed.
        """
        self.get_collection(collection)
        if not text.strip():
            raise InvalidArguments("Nothing to remember: text is empty")
        vector = self.embedder(text)
        entry_id = f"{collection}-{uuid.uuid4().hex}"
        entry = IndexEntry(
            entry_id=entry_id,
            source_id=f"remember:{entry_id}",
            vector=tuple(vector),
            text=text,
        )
        stored = self.store.collection(collection).insert([entry])[0]
        logger.info("Remembered %d chars in %s", len(text), collection)
        return stored

    def semantic_search(self, collection: str, query: str, k: int = 5) -> list[ScoredEntry]:
        """Top ``k`` entries of ``collection`` most similar to ``query``.

        Raises:
            UnknownCollection: ``collection`` is not configured.
            CollectionNotReady: ``collection`` holds no entries yet.
            EmbeddingFailed: The query could not be embedded.
        """
        self.get_collection(collection)
        index = self.store.collection(collection)
        if index.count() == 0:
            if self.indexer.is_indexing(collection):
                raise CollectionNotReady(f"Collection '{collection}' is still being indexed; try again shortly")
            raise CollectionNotReady(f"Collection '{collection}' has no entries yet")
        vector = self.embedder(query)
        return index.query(vector, k)

    def refresh(self, collection: str) -> IndexingJob:
        """Start (or join) re-indexing of a rooted collection."""
        target = self.get_collection(collection)
        if target.root is None:
            raise InvalidArguments(f"Collection '{collection}' has no root directory to index")
        return self.indexer.start(collection, target.root)

    def ensure_indexed(self, collection: str) -> Optional[IndexingJob]:
        """Start indexing a rooted collection that has no entries. Returns the job, if any."""
        target = self.get_collection(collection)
        if target.root is None or self.store.collection(collection).count() > 0:
            return None
        return self.indexer.start(collection, target.root)

    def stats(self, collection: str) -> dict:
        target = self.get_collection(collection)
        job = self.indexer.get_job(collection)
        return {
            "collection": collection,
            "root": str(target.root) if target.root else None,
            "entries": self.store.collection(collection).count(),
            "indexing": job.stats() if job is not None else None,
        }
