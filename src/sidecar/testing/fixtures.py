"""Deterministic builders for tests: a hash embedder, settings in a temp dir, and an engine."""

import hashlib
import math
import re
import threading
from pathlib import Path
from typing import Any, Optional

from ..config import DEFAULT_IGNORED_PATTERNS, Settings
from ..errors import EmbeddingFailed
from ..rag.engine import RagEngine
from ..rag.indexer import BackgroundIndexer
from ..rag.vectorstore import VectorStore
from ..state.notifications import NotificationBus

_TOKEN = re.compile(r"[A-Za-z0-9_]+")


class HashEmbedder:
    """Bag-of-words embedder: each token hashes to one dimension.

    Texts that share words score higher, which is enough to test ranking
    without downloading a model.

    Args:
        dimension: Vector length.
        fail_on: Raise EmbeddingFailed for texts containing this substring.
    """

    def __init__(self, dimension: int = 64, fail_on: Optional[str] = None):
        self.dimension = dimension
        self.fail_on = fail_on
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, text: str) -> list[float]:
        with self._lock:
            self.calls += 1
        if self.fail_on is not None and self.fail_on in text:
            raise EmbeddingFailed(f"refusing to embed text containing {self.fail_on!r}")
        vector = [0.0] * self.dimension
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "little") % self.dimension] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            vector[0] = 1.0
            return vector
        return [v / norm for v in vector]


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    """Settings whose index and session directories live under ``tmp_path``."""
    data: dict[str, Any] = {
        "index_dir": str(tmp_path / "index"),
        "sessions_dir": str(tmp_path / "sessions"),
        "python_venv_dir": str(tmp_path / "venv"),
        "search_url": "http://127.0.0.1:9",
        "command_timeout": 10.0,
        "process_grace_period": 0.5,
    }
    data.update(overrides)
    return Settings.model_validate(data)


def make_test_engine(
    tmp_path: Path,
    workspace: Optional[Path] = None,
    bus: Optional[NotificationBus] = None,
    embedder: Optional[HashEmbedder] = None,
    collections: Optional[dict] = None,
    progress_interval: float = 0.0,
) -> RagEngine:
    """RagEngine over a fresh store in ``tmp_path / "index"`` with a HashEmbedder.

    Keep ``workspace`` outside the index directory, e.g. ``tmp_path / "workspace"``.
    """
    store = VectorStore(tmp_path / "index")
    embedder = embedder or HashEmbedder()
    indexer = BackgroundIndexer(
        store,
        embedder,
        bus=bus,
        ignored_patterns=DEFAULT_IGNORED_PATTERNS,
        progress_interval=progress_interval,
    )
    configured: dict = {}
    if workspace is not None:
        configured["workspace"] = workspace
    configured.update(collections or {})
    return RagEngine(store, embedder, indexer, configured)
