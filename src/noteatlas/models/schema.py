"""Data models for NoteAtlas."""

import datetime
import math
import os
import threading
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, Field, field_validator

from noteatlas.exceptions import ErrorCode, ValidationError

# An unordered "related" pair of note IDs
RelationshipEdge = Tuple[str, str]


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Treat naive datetimes (as SQLite returns them) as UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise unchanged.
        None passes through.
    """
    if dt_value is None:
        return None
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


# Thread-safe counter for uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 10_000


def generate_id() -> str:
    """Generate a sortable timestamp-based note ID.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccc": UTC date and time,
        microseconds, then a 4-digit counter that disambiguates IDs minted
        within the same microsecond.
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)
        if current_timestamp == _last_timestamp:
            _counter = (_counter + 1) % 10_000
        else:
            _last_timestamp = current_timestamp
            _counter = (os.getpid() * 7) % 10_000
        return f"{now.strftime('%Y%m%dT%H%M%S')}{now.microsecond:06d}{_counter:04d}"


def normalize_tags(tags: Sequence[str]) -> List[str]:
    """Strip whitespace and leading '#', dropping blanks and duplicates."""
    seen: Set[str] = set()
    result = []
    for tag in tags:
        name = tag.strip().lstrip("#")
        if name and name not in seen:
            seen.add(name)
            result.append(name)
    return result


class LinkType(str, Enum):
    """How a "related" edge between two notes was discovered."""

    WIKI = "wiki"  # Explicit [[Title]] reference in the note body
    SIMILAR = "similar"  # Embedding similarity above the configured threshold


class Note(BaseModel):
    """A note in the knowledge base, with its embedding and heat-map position."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    title: str = Field(..., description="Title of the note")
    body: str = Field(default="", description="Markdown body of the note")
    color: str = Field(default="#8a8a8a", description="Display colour of the note card")
    tags: List[str] = Field(default_factory=list, description="Tags for categorization")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last updated (UTC)"
    )
    embedding: Optional[List[float]] = Field(
        default=None, description="Semantic embedding; cleared when the body changes"
    )
    embedding_updated_at: Optional[datetime.datetime] = None
    position_x: Optional[float] = Field(default=None, description="Normalized heat-map x")
    position_y: Optional[float] = Field(default=None, description="Normalized heat-map y")
    position_updated_at: Optional[datetime.datetime] = None
    related_ids: List[str] = Field(
        default_factory=list, description="Outgoing 'related' edges"
    )
    backlink_ids: List[str] = Field(
        default_factory=list, description="Notes that list this note as related"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Validate that the title is not empty."""
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        return normalize_tags(v)

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    @property
    def has_position(self) -> bool:
        return self.position_x is not None and self.position_y is not None

    @property
    def connection_count(self) -> int:
        """Related notes plus backlinks (incoming + outgoing)."""
        return len(self.related_ids) + len(self.backlink_ids)

    def needs_position_update(self) -> bool:
        """Whether the heat-map layout owes this note a (re)computed position.

        True when the note has an embedding but no position yet, or when its
        embedding is newer than its position.
        """
        if self.has_embedding and not self.has_position:
            return True
        if self.embedding_updated_at and self.position_updated_at:
            return self.embedding_updated_at > self.position_updated_at
        return False


# =============================================================================
# Heat-map geometry
# =============================================================================


@dataclass(frozen=True)
class ProjectablePoint:
    """Input unit of the projection engine: a note and its embedding."""

    id: str
    vector: Sequence[float]


@dataclass(frozen=True)
class PlanePoint:
    """Raw 2D projection output (unbounded range)."""

    id: str
    x: float
    y: float


@dataclass(frozen=True)
class NormalizedPoint:
    """A projected point rescaled into the padded unit square."""

    id: str
    x: float
    y: float


@dataclass(frozen=True)
class HeatmapPoint:
    """A normalized point plus the metadata the renderer and tooltips need.

    Attributes:
        connection_count: Related notes plus backlinks. When None the
            renderer counts the point's edges in the supplied edge list.
    """

    id: str
    x: float
    y: float
    title: str = ""
    color: str = ""
    tags: Tuple[str, ...] = ()
    related_ids: Tuple[str, ...] = ()
    connection_count: Optional[int] = None


@dataclass(frozen=True)
class CanvasSize:
    """Pixel dimensions of the drawing surface."""

    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValidationError(
                f"Canvas dimensions must be positive, got {self.width}x{self.height}",
                field="canvas",
                value=(self.width, self.height),
                code=ErrorCode.INVALID_CANVAS,
            )

    @property
    def center(self) -> Tuple[float, float]:
        return self.width / 2, self.height / 2

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class ViewTransform:
    """Pan/zoom state mapping canvas space to screen space.

    screen = (canvas - center) * zoom + center + pan
    """

    zoom: float = 1.0
    pan_x: float = 0.0
    pan_y: float = 0.0

    def __post_init__(self) -> None:
        if not (self.zoom > 0 and math.isfinite(self.zoom)):
            raise ValidationError(
                f"Zoom must be a positive finite number, got {self.zoom}",
                field="zoom",
                value=self.zoom,
                code=ErrorCode.INVALID_TRANSFORM,
            )


@dataclass
class HeatmapRow:
    """A positioned note as read back from storage."""

    id: str
    title: str
    color: str
    x: float
    y: float
    tags: List[str] = field(default_factory=list)
    related_ids: List[str] = field(default_factory=list)
    connection_count: int = 0

    def to_point(self) -> HeatmapPoint:
        return HeatmapPoint(
            id=self.id,
            x=self.x,
            y=self.y,
            title=self.title,
            color=self.color,
            tags=tuple(self.tags),
            related_ids=tuple(self.related_ids),
            connection_count=self.connection_count,
        )
