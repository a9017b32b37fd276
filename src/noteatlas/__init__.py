"""
NoteAtlas - a knowledge heat map for a personal note collection.

Projects note embeddings onto a 2D plane, persists the normalized layout,
and renders a kernel-density "heat map" of the collection with pan/zoom
interaction and nearest-note hit-testing.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("noteatlas")
except PackageNotFoundError:
    __version__ = "0.3.0"
