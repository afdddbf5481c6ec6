"""Embedding providers.

An embedder is any callable mapping text to a fixed-length vector. The
default uses sentence-transformers and loads each model once per process.
"""

import threading
from typing import Callable, Optional

from sentence_transformers import SentenceTransformer

from ..errors import EmbeddingFailed
from ..logging_config import get_logger

logger = get_logger(__name__)

Embedder = Callable[[str], list[float]]

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

_models: dict[str, SentenceTransformer] = {}
_models_lock = threading.Lock()


def get_embedding_model(model_name: str = DEFAULT_MODEL) -> SentenceTransformer:
    """Get or initialize a sentence-transformers model.

    all-MiniLM-L6-v2 is the default: it runs on CPU and produces
    384-dimensional embeddings that work well for code and prose.
    """
    with _models_lock:
        model = _models.get(model_name)
        if model is None:
            logger.info("Loading embedding model %s (first time only)...", model_name)
            model = SentenceTransformer(model_name)
            _models[model_name] = model
        return model


class SentenceTransformerEmbedder:
    """Embeds text with a lazily loaded sentence-transformers model."""

    def __init__(self, model_name: str = DEFAULT_MODEL):
        self.model_name = model_name
        self._model: Optional[SentenceTransformer] = None

    def _load(self) -> SentenceTransformer:
        if self._model is None:
            try:
                self._model = get_embedding_model(self.model_name)
            except Exception as e:
                raise EmbeddingFailed(f"Could not load embedding model {self.model_name}: {e}") from e
        return self._model

    def __call__(self, text: str) -> list[float]:
        return self.embed_many([text])[0]

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        model = self._load()
        try:
            vectors = model.encode(texts, show_progress_bar=False, normalize_embeddings=True)
        except Exception as e:
            raise EmbeddingFailed(f"Embedding failed: {e}") from e
        return vectors.tolist()
