"""Type protocol for embedding providers.

Defines the structural contract that production providers and test fakes
must satisfy. Uses Protocol (PEP 544) for structural subtyping:
implementations don't need to inherit from it.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    import numpy as np


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Contract for embedding note text into dense vectors."""

    @property
    def dimension(self) -> int:
        """Dimensionality of produced vectors."""
        ...

    def load(self) -> None:
        """Prepare the provider (load a model, open a client). Idempotent."""
        ...

    def unload(self) -> None:
        """Release whatever load() acquired. Idempotent."""
        ...

    @property
    def is_loaded(self) -> bool:
        ...

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text.

        Returns:
            1-D numpy array of shape (dimension,).
        """
        ...

    def embed_batch(
        self, texts: Sequence[str], batch_size: int = 32
    ) -> List[np.ndarray]:
        """Embed multiple texts, one vector per text, in input order."""
        ...
