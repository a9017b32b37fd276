"""Knowledge-graph maintenance: the 'related' edges the heat map draws."""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from noteatlas.config import config
from noteatlas.exceptions import AtlasError, NoteNotFoundError
from noteatlas.models.schema import LinkType
from noteatlas.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)

# [[Note Title]]
WIKI_LINK_PATTERN = re.compile(r"\[\[([^\]]+)\]\]")


@dataclass
class LinkDetectionResult:
    """Outcome of detect_links for one note.

    Attributes:
        wiki_links: Every [[...]] text found, resolved or not.
        related_ids: The note's new outgoing edges: wiki matches first,
            then similar notes.
        backlinks_updated: How many other notes gained or lost a backlink.
    """

    wiki_links: List[str] = field(default_factory=list)
    related_ids: List[str] = field(default_factory=list)
    backlinks_updated: int = 0


def extract_wiki_links(body: str) -> List[str]:
    return [m.strip() for m in WIKI_LINK_PATTERN.findall(body or "")]


class GraphService:
    """Derives related-note edges from wiki links and embedding similarity."""

    def __init__(
        self,
        repository: Optional[NoteRepository] = None,
        similarity_threshold: Optional[float] = None,
        search_limit: Optional[int] = None,
    ):
        self.repository = repository or NoteRepository()
        self.similarity_threshold = (
            config.related_similarity_threshold
            if similarity_threshold is None else similarity_threshold
        )
        self.search_limit = config.related_search_limit if search_limit is None else search_limit

    def detect_links(self, note_id: str) -> LinkDetectionResult:
        """Recompute a note's related notes and update backlinks.

        Raises:
            NoteNotFoundError: If the note does not exist.
        """
        note = self.repository.get(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)

        wiki_links = extract_wiki_links(note.body)
        types: Dict[str, LinkType] = {}
        related: List[str] = []

        titles = {
            other.title.strip().lower(): other.id
            for other in reversed(self.repository.list_all())
            if other.id != note_id
        }
        for text in wiki_links:
            target = titles.get(text.lower())
            if target and target not in types:
                related.append(target)
                types[target] = LinkType.WIKI

        if note.has_embedding:
            neighbours = self.repository.vector_search(
                note.embedding, limit=self.search_limit, exclude_ids=[note_id]
            )
            for other_id, score in neighbours:
                if score > self.similarity_threshold and other_id not in types:
                    related.append(other_id)
                    types[other_id] = LinkType.SIMILAR

        changed = self.repository.set_related(note_id, related, types)
        logger.debug(
            "Note %s: %d wiki links, %d related, %d backlinks updated",
            note_id, len(wiki_links), len(related), changed,
        )
        return LinkDetectionResult(
            wiki_links=wiki_links, related_ids=related, backlinks_updated=changed
        )

    def rebuild_graph(self) -> Tuple[int, int]:
        """Run detect_links over every note.

        A failing note is logged and counted; the rebuild carries on.

        Returns:
            (processed, errors)
        """
        processed = errors = 0
        for note in self.repository.list_all():
            try:
                self.detect_links(note.id)
                processed += 1
            except AtlasError as e:
                logger.error("Failed to rebuild links for note %s: %s", note.id, e)
                errors += 1
        logger.info("Knowledge graph rebuilt: %d processed, %d errors", processed, errors)
        return processed, errors
