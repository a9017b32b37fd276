"""Semantic search over note embeddings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Sequence

from noteatlas.models.schema import Note
from noteatlas.observability import traced
from noteatlas.storage.note_repository import NoteRepository

if TYPE_CHECKING:
    from noteatlas.services.embedding_service import EmbeddingService

logger = logging.getLogger(__name__)


@dataclass
class SemanticSearchResult:
    """A search hit with its cosine similarity to the query (higher is closer)."""

    note: Note
    score: float


class SearchService:
    """Embeds a query and ranks stored notes by similarity."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        repository: Optional[NoteRepository] = None,
    ):
        self.repository = repository or NoteRepository()
        self._embedding_service = embedding_service

    @traced("semantic_search")
    def semantic_search(
        self, query: str, limit: int = 10, tags: Optional[Sequence[str]] = None
    ) -> List[SemanticSearchResult]:
        """Find notes similar to ``query``.

        Twice ``limit`` neighbours are fetched so that filtering by tags
        (a note matches if it has any of them) still fills the page.

        Raises:
            EmbeddingError: If the query cannot be embedded.
        """
        if not query or not query.strip() or limit <= 0:
            return []

        vector = self._embedding_service.embed(query)
        hits = self.repository.vector_search(vector.tolist(), limit=limit * 2)
        notes = {n.id: n for n in self.repository.get_by_ids([nid for nid, _ in hits])}

        wanted = set(tags or ())
        results = []
        for note_id, score in hits:
            note = notes.get(note_id)
            if note is None:
                continue
            if wanted and not wanted.intersection(note.tags):
                continue
            results.append(SemanticSearchResult(note=note, score=score))
            if len(results) >= limit:
                break
        logger.debug("Semantic search returned %d of %d candidates", len(results), len(hits))
        return results
