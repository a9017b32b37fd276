"""Repository for note storage, embeddings and heat-map positions."""

import datetime
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from noteatlas.exceptions import ErrorCode, NoteNotFoundError, StorageError, ValidationError
from noteatlas.models.db_models import DBLink, DBNote, DBTag, get_session_factory, init_db
from noteatlas.models.schema import (
    HeatmapRow,
    LinkType,
    Note,
    ProjectablePoint,
    ensure_timezone_aware,
    normalize_tags,
    utc_now,
)

logger = logging.getLogger(__name__)


def _to_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _from_blob(blob: Optional[bytes]) -> Optional[List[float]]:
    if not blob:
        return None
    return np.frombuffer(blob, dtype=np.float32).astype(np.float64).tolist()


class NoteRepository:
    """SQLite-backed store for notes.

    Besides plain CRUD it is the embedding store the heat map reads from
    (``list_projectable``, ``vector_search``) and the place projected
    positions are written back to (``update_position``).

    Args:
        engine: An engine from init_db(). Defaults to the configured database.
    """

    def __init__(self, engine=None):
        self.engine = engine if engine is not None else init_db()
        self.session_factory = get_session_factory(self.engine)

    # ------------------------------------------------------------------
    # Conversion helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        """Convert a DBNote with loaded relationships to a domain Note."""
        return Note(
            id=db_note.id,
            title=db_note.title,
            body=db_note.body or "",
            color=db_note.color,
            tags=[t.name for t in db_note.tags],
            created_at=ensure_timezone_aware(db_note.created_at),
            updated_at=ensure_timezone_aware(db_note.updated_at),
            embedding=_from_blob(db_note.embedding),
            embedding_updated_at=ensure_timezone_aware(db_note.embedding_updated_at),
            position_x=db_note.position_x,
            position_y=db_note.position_y,
            position_updated_at=ensure_timezone_aware(db_note.position_updated_at),
            related_ids=sorted(link.target_id for link in db_note.outgoing_links),
            backlink_ids=sorted(link.source_id for link in db_note.incoming_links),
        )

    @staticmethod
    def _with_relations(query):
        return query.options(
            joinedload(DBNote.tags),
            joinedload(DBNote.outgoing_links),
            joinedload(DBNote.incoming_links),
        )

    def _get_or_create_tag(self, session: Session, name: str) -> DBTag:
        db_tag = session.scalar(select(DBTag).where(DBTag.name == name))
        if db_tag is None:
            db_tag = DBTag(name=name)
            session.add(db_tag)
        return db_tag

    def _require(self, session: Session, note_id: str) -> DBNote:
        db_note = session.get(DBNote, note_id)
        if db_note is None:
            raise NoteNotFoundError(note_id)
        return db_note

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, note: Note) -> Note:
        """Persist a new note (tags included). Returns the stored note."""
        try:
            with self.session_factory() as session:
                db_note = DBNote(
                    id=note.id,
                    title=note.title,
                    body=note.body,
                    color=note.color,
                    created_at=note.created_at,
                    updated_at=note.updated_at,
                    embedding=_to_blob(note.embedding) if note.embedding else None,
                    embedding_updated_at=note.embedding_updated_at,
                    position_x=note.position_x,
                    position_y=note.position_y,
                    position_updated_at=note.position_updated_at,
                )
                db_note.tags = [self._get_or_create_tag(session, t) for t in note.tags]
                session.add(db_note)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to create note '{note.title}'",
                operation="create",
                note_id=note.id,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        logger.debug("Created note %s", note.id)
        return self.get(note.id)

    def get(self, note_id: str) -> Optional[Note]:
        """Get a note by ID, or None."""
        with self.session_factory() as session:
            db_note = session.execute(
                self._with_relations(select(DBNote).where(DBNote.id == note_id))
            ).unique().scalar_one_or_none()
            return self._db_note_to_model(db_note) if db_note else None

    def get_by_title(self, title: str) -> Optional[Note]:
        """Get a note by title, ignoring case."""
        with self.session_factory() as session:
            note_id = session.scalar(
                select(DBNote.id)
                .where(func.lower(DBNote.title) == title.strip().lower())
                .order_by(DBNote.created_at)
                .limit(1)
            )
        return self.get(note_id) if note_id else None

    def get_by_ids(self, ids: Sequence[str]) -> List[Note]:
        """Fetch several notes in one query, preserving request order.

        Unknown IDs are skipped.
        """
        if not ids:
            return []
        with self.session_factory() as session:
            db_notes = session.execute(
                self._with_relations(select(DBNote).where(DBNote.id.in_(list(ids))))
            ).unique().scalars().all()
            by_id = {n.id: self._db_note_to_model(n) for n in db_notes}
        return [by_id[i] for i in ids if i in by_id]

    def list_all(self) -> List[Note]:
        """All notes, oldest first."""
        with self.session_factory() as session:
            db_notes = session.execute(
                self._with_relations(select(DBNote).order_by(DBNote.created_at, DBNote.id))
            ).unique().scalars().all()
            return [self._db_note_to_model(n) for n in db_notes]

    def update_body(
        self, note_id: str, body: str, title: Optional[str] = None
    ) -> Note:
        """Replace a note's text.

        Any stored embedding describes the old text, so it is cleared along
        with its timestamp; the note is owed a fresh embedding.
        """
        if title is not None and not title.strip():
            raise ValidationError("Title cannot be empty", field="title", value=title)
        try:
            with self.session_factory() as session:
                db_note = self._require(session, note_id)
                db_note.body = body
                if title is not None:
                    db_note.title = title
                db_note.embedding = None
                db_note.embedding_updated_at = None
                db_note.updated_at = utc_now()
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to update note",
                operation="update",
                note_id=note_id,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        return self.get(note_id)

    def set_tags(self, note_id: str, tags: Iterable[str]) -> Note:
        normalized = normalize_tags(list(tags))
        with self.session_factory() as session:
            db_note = self._require(session, note_id)
            db_note.tags = [self._get_or_create_tag(session, t) for t in normalized]
            db_note.updated_at = utc_now()
            session.commit()
        return self.get(note_id)

    def delete(self, note_id: str) -> None:
        """Delete a note together with every edge touching it."""
        try:
            with self.session_factory() as session:
                db_note = self._require(session, note_id)
                session.delete(db_note)
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to delete note",
                operation="delete",
                note_id=note_id,
                code=ErrorCode.STORAGE_DELETE_FAILED,
                original_error=e,
            ) from e
        logger.debug("Deleted note %s", note_id)

    def count_notes(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count()).select_from(DBNote)) or 0

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def set_embedding(
        self,
        note_id: str,
        vector: Sequence[float],
        computed_at: Optional[datetime.datetime] = None,
    ) -> None:
        """Store a note's embedding and stamp ``embedding_updated_at``."""
        # Stored as float32, so values past its range count as non-finite
        with np.errstate(over="ignore"):
            array = np.asarray(vector, dtype=np.float64).astype(np.float32)
        if array.ndim != 1 or array.size == 0 or not np.all(np.isfinite(array)):
            raise ValidationError(
                "Embedding must be a non-empty finite vector",
                field="embedding",
                value=note_id,
                code=ErrorCode.NON_FINITE_INPUT,
            )
        with self.session_factory() as session:
            db_note = self._require(session, note_id)
            db_note.embedding = _to_blob(array)
            db_note.embedding_updated_at = computed_at or utc_now()
            session.commit()

    def clear_embedding(self, note_id: str) -> None:
        with self.session_factory() as session:
            db_note = self._require(session, note_id)
            db_note.embedding = None
            db_note.embedding_updated_at = None
            session.commit()

    def list_without_embedding(self) -> List[Note]:
        with self.session_factory() as session:
            db_notes = session.execute(
                self._with_relations(
                    select(DBNote).where(DBNote.embedding.is_(None)).order_by(DBNote.created_at)
                )
            ).unique().scalars().all()
            return [self._db_note_to_model(n) for n in db_notes]

    def list_projectable(self) -> List[ProjectablePoint]:
        """Every embedded note as (id, vector), oldest first."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBNote.id, DBNote.embedding)
                .where(DBNote.embedding.is_not(None))
                .order_by(DBNote.created_at, DBNote.id)
            ).all()
        return [
            ProjectablePoint(id=note_id, vector=_from_blob(blob))
            for note_id, blob in rows
            if blob
        ]

    def count_embedded(self) -> int:
        with self.session_factory() as session:
            return session.scalar(
                select(func.count()).select_from(DBNote).where(DBNote.embedding.is_not(None))
            ) or 0

    def vector_search(
        self,
        query: Sequence[float],
        limit: int = 10,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[Tuple[str, float]]:
        """Nearest notes to ``query`` by cosine similarity, best first.

        Notes whose embedding dimension differs from the query are ignored.

        Returns:
            (note_id, score) pairs, at most ``limit`` of them.
        """
        if limit <= 0:
            return []
        q = np.asarray(query, dtype=np.float64)
        q_norm = np.linalg.norm(q)
        exclude = set(exclude_ids or ())

        try:
            with self.session_factory() as session:
                rows = session.execute(
                    select(DBNote.id, DBNote.embedding).where(DBNote.embedding.is_not(None))
                ).all()
        except SQLAlchemyError as e:
            raise StorageError(
                "Vector search failed",
                operation="vector_search",
                code=ErrorCode.SEARCH_FAILED,
                original_error=e,
            ) from e

        ids: List[str] = []
        vectors: List[np.ndarray] = []
        for note_id, blob in rows:
            if note_id in exclude:
                continue
            vec = np.frombuffer(blob, dtype=np.float32)
            if vec.shape != q.shape:
                continue
            ids.append(note_id)
            vectors.append(vec)
        if not ids or q_norm == 0:
            return []

        matrix = np.vstack(vectors).astype(np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = np.inf
        scores = matrix @ q / (norms * q_norm)
        order = np.argsort(-scores, kind="stable")[:limit]
        return [(ids[i], float(scores[i])) for i in order]

    # ------------------------------------------------------------------
    # Knowledge graph
    # ------------------------------------------------------------------

    def set_related(
        self,
        note_id: str,
        related_ids: Iterable[str],
        link_types: Optional[Dict[str, LinkType]] = None,
    ) -> int:
        """Replace a note's outgoing 'related' edges.

        Backlinks are the incoming side of the same rows, so they follow
        automatically. Unknown targets and self references are dropped.

        Returns:
            Number of notes whose backlinks changed.
        """
        link_types = link_types or {}
        wanted = [rid for rid in dict.fromkeys(related_ids) if rid != note_id]
        try:
            with self.session_factory() as session:
                db_note = self._require(session, note_id)
                existing_ids = set(
                    session.scalars(select(DBNote.id).where(DBNote.id.in_(wanted)))
                )
                wanted = [rid for rid in wanted if rid in existing_ids]

                current = {link.target_id: link for link in db_note.outgoing_links}
                removed = set(current) - set(wanted)
                added = [rid for rid in wanted if rid not in current]

                for rid in removed:
                    db_note.outgoing_links.remove(current[rid])
                for rid in wanted:
                    link_type = link_types.get(rid, LinkType.SIMILAR).value
                    if rid in current:
                        current[rid].link_type = link_type
                    else:
                        db_note.outgoing_links.append(
                            DBLink(source_id=note_id, target_id=rid, link_type=link_type)
                        )
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to update related notes",
                operation="set_related",
                note_id=note_id,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        return len(removed) + len(added)

    def get_related_ids(self, note_id: str) -> List[str]:
        with self.session_factory() as session:
            return list(session.scalars(
                select(DBLink.target_id).where(DBLink.source_id == note_id).order_by(DBLink.id)
            ))

    def get_backlink_ids(self, note_id: str) -> List[str]:
        with self.session_factory() as session:
            return list(session.scalars(
                select(DBLink.source_id).where(DBLink.target_id == note_id).order_by(DBLink.id)
            ))

    # ------------------------------------------------------------------
    # Heat-map positions
    # ------------------------------------------------------------------

    def update_position(
        self,
        note_id: str,
        x: float,
        y: float,
        computed_at: Optional[datetime.datetime] = None,
    ) -> None:
        """Write back a normalized heat-map position."""
        try:
            with self.session_factory() as session:
                db_note = self._require(session, note_id)
                db_note.position_x = float(x)
                db_note.position_y = float(y)
                db_note.position_updated_at = computed_at or utc_now()
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                "Failed to store position",
                operation="update_position",
                note_id=note_id,
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

    def list_positioned(self) -> List[HeatmapRow]:
        """Every note with a position, with what the renderer needs."""
        with self.session_factory() as session:
            db_notes = session.execute(
                self._with_relations(
                    select(DBNote)
                    .where(DBNote.position_x.is_not(None), DBNote.position_y.is_not(None))
                    .order_by(DBNote.created_at, DBNote.id)
                )
            ).unique().scalars().all()
            return [
                HeatmapRow(
                    id=n.id,
                    title=n.title,
                    color=n.color,
                    x=n.position_x,
                    y=n.position_y,
                    tags=[t.name for t in n.tags],
                    related_ids=sorted(link.target_id for link in n.outgoing_links),
                    connection_count=len(n.outgoing_links) + len(n.incoming_links),
                )
                for n in db_notes
            ]

    def count_needing_position_update(self) -> int:
        """Notes whose heat-map position is missing or older than their embedding."""
        with self.session_factory() as session:
            return session.scalar(
                select(func.count()).select_from(DBNote).where(
                    or_(
                        and_(
                            DBNote.embedding.is_not(None),
                            or_(DBNote.position_x.is_(None), DBNote.position_y.is_(None)),
                        ),
                        DBNote.embedding_updated_at > DBNote.position_updated_at,
                    )
                )
            ) or 0
