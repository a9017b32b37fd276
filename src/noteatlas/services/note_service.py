"""Service for writing notes and keeping their embeddings current."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from noteatlas.exceptions import EmbeddingError
from noteatlas.models.schema import Note
from noteatlas.services.embedding_service import EmbeddingService, note_embedding_text
from noteatlas.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


class NoteService:
    """Creates and edits notes, embedding them as they change.

    Embedding is best-effort: if the provider fails the note is still
    saved, just without an embedding, and embed_missing() picks it up later.
    A note without an embedding is left out of the heat map.
    """

    def __init__(
        self,
        repository: Optional[NoteRepository] = None,
        embedding_service: Optional[EmbeddingService] = None,
    ):
        self.repository = repository or NoteRepository()
        self._embedding_service = embedding_service

    def _try_embed(self, note: Note) -> bool:
        if self._embedding_service is None:
            return False
        try:
            vector = self._embedding_service.embed_note(note)
        except EmbeddingError as e:
            logger.warning("Could not embed note %s: %s", note.id, e)
            return False
        self.repository.set_embedding(note.id, vector.tolist())
        return True

    def create_note(
        self,
        title: str,
        body: str = "",
        tags: Optional[List[str]] = None,
        color: Optional[str] = None,
    ) -> Note:
        """Save a new note, then try to embed it."""
        note = Note(title=title, body=body, tags=tags or [])
        if color:
            note.color = color
        stored = self.repository.create(note)
        self._try_embed(stored)
        return self.repository.get(stored.id)

    def update_body(self, note_id: str, body: str, title: Optional[str] = None) -> Note:
        """Change a note's text and re-embed it.

        The old embedding is dropped first; if re-embedding fails the note
        stays unembedded rather than keeping a vector for text it no longer has.
        """
        updated = self.repository.update_body(note_id, body, title=title)
        self._try_embed(updated)
        return self.repository.get(note_id)

    def get_note(self, note_id: str) -> Optional[Note]:
        return self.repository.get(note_id)

    def delete_note(self, note_id: str) -> None:
        self.repository.delete(note_id)

    def embed_missing(self, batch_size: int = 32) -> Tuple[int, int]:
        """Embed every note that has no embedding, ``batch_size`` at a time.

        A batch the provider rejects is retried note by note so one bad
        note only fails itself.

        Returns:
            (processed, failed)
        """
        pending = self.repository.list_without_embedding()
        if self._embedding_service is None:
            return 0, len(pending)

        processed = failed = 0
        for start in range(0, len(pending), batch_size):
            chunk = pending[start:start + batch_size]
            texts = [note_embedding_text(n.title, n.body, n.tags) for n in chunk]
            try:
                vectors = self._embedding_service.embed_batch(texts, batch_size)
            except EmbeddingError as e:
                logger.warning("Batch of %d notes failed, embedding singly: %s", len(chunk), e)
                for note in chunk:
                    if self._try_embed(note):
                        processed += 1
                    else:
                        failed += 1
                continue
            for note, vector in zip(chunk, vectors):
                self.repository.set_embedding(note.id, vector.tolist())
                processed += 1
        logger.info("Embedded %d notes (%d failed)", processed, failed)
        return processed, failed
