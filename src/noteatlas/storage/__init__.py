"""Storage layer for NoteAtlas."""

from noteatlas.storage.note_repository import NoteRepository

__all__ = [
    "NoteRepository",
]
