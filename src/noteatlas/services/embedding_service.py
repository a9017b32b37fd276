"""Embedding service for notes and search queries.

Wraps an EmbeddingProvider with lazy, thread-safe loading and turns every
provider failure into an EmbeddingError. Vectors are checked against the
provider's declared dimension so a misbehaving provider cannot poison the
projection batch with ragged rows.

Usage:
    service = EmbeddingService(embedder=provider)
    vector = service.embed_note(note)
    service.shutdown()
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence

import numpy as np

from noteatlas.config import config
from noteatlas.exceptions import EmbeddingError, ErrorCode

if TYPE_CHECKING:
    from noteatlas.models.schema import Note
    from noteatlas.services.embedding_types import EmbeddingProvider

logger = logging.getLogger(__name__)


def note_embedding_text(title: str, body: str, tags: Iterable[str]) -> str:
    """The text a note is embedded from: title, body, then its tags."""
    return f"{title}\n\n{body}\n\nTags: {', '.join(tags)}"


class EmbeddingService:
    """Manages an embedding provider with lazy loading.

    Thread-safe: load/unload are guarded by a lock. The provider is loaded
    on the first embed call and kept warm until shutdown().

    Args:
        embedder: An EmbeddingProvider implementation.
        expected_dim: Dimension stored embeddings use. Defaults to
            config.embedding_dim.

    Raises:
        EmbeddingError: If the provider declares a different dimension.
    """

    def __init__(
        self, embedder: EmbeddingProvider, expected_dim: Optional[int] = None
    ) -> None:
        expected = config.embedding_dim if expected_dim is None else expected_dim
        if embedder.dimension != expected:
            raise EmbeddingError(
                f"Provider produces {embedder.dimension}-dimensional vectors, "
                f"store expects {expected}",
                code=ErrorCode.EMBEDDING_DIMENSION_MISMATCH,
                operation="init",
            )
        self._embedder = embedder
        self._lock = threading.Lock()

    @property
    def dimension(self) -> int:
        """Embedding dimensionality (delegates to provider)."""
        return self._embedder.dimension

    @property
    def embedder_loaded(self) -> bool:
        return self._embedder.is_loaded

    def _ensure_embedder(self) -> None:
        """Load the embedder if not already loaded. Thread-safe."""
        if self._embedder.is_loaded:
            return
        with self._lock:
            if self._embedder.is_loaded:
                return  # Double-check after acquiring lock
            try:
                self._embedder.load()
                logger.info("Embedding provider loaded")
            except Exception as e:
                raise EmbeddingError(
                    f"Failed to load embedding provider: {e}",
                    code=ErrorCode.EMBEDDING_MODEL_LOAD_FAILED,
                    operation="embedder_load",
                    original_error=e,
                ) from e

    def _check_vector(self, vector, operation: str) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float64)
        if array.shape != (self.dimension,):
            raise EmbeddingError(
                f"Provider returned shape {array.shape}, expected ({self.dimension},)",
                code=ErrorCode.EMBEDDING_DIMENSION_MISMATCH,
                operation=operation,
            )
        if not np.all(np.isfinite(array)):
            raise EmbeddingError(
                "Provider returned a non-finite vector",
                code=ErrorCode.EMBEDDING_INFERENCE_FAILED,
                operation=operation,
            )
        return array

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text into a dense vector.

        Raises:
            EmbeddingError: If loading or inference fails, or the vector has
                the wrong shape.
        """
        self._ensure_embedder()
        try:
            vector = self._embedder.embed(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(
                f"Embedding inference failed: {e}",
                code=ErrorCode.EMBEDDING_INFERENCE_FAILED,
                operation="embed",
                original_error=e,
            ) from e
        return self._check_vector(vector, "embed")

    def embed_batch(self, texts: Sequence[str], batch_size: int = 32) -> List[np.ndarray]:
        """Embed multiple texts; output is index-aligned with ``texts``.

        Raises:
            EmbeddingError: If loading or inference fails.
        """
        if not texts:
            return []
        self._ensure_embedder()
        try:
            vectors = self._embedder.embed_batch(texts, batch_size)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(
                f"Batch embedding failed: {e}",
                code=ErrorCode.EMBEDDING_INFERENCE_FAILED,
                operation="embed_batch",
                original_error=e,
            ) from e
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts",
                code=ErrorCode.EMBEDDING_INFERENCE_FAILED,
                operation="embed_batch",
            )
        return [self._check_vector(v, "embed_batch") for v in vectors]

    def embed_note(self, note: Note) -> np.ndarray:
        return self.embed(note_embedding_text(note.title, note.body, note.tags))

    def shutdown(self) -> None:
        """Unload the provider."""
        with self._lock:
            if self._embedder.is_loaded:
                self._embedder.unload()
        logger.info("EmbeddingService shut down")
