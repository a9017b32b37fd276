"""Configuration module for NoteAtlas."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives reinstalls, lives alongside the logs
_USER_ENV = Path.home() / ".noteatlas" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _env_optional_int(name: str, default: Optional[str]) -> Optional[int]:
    raw = os.getenv(name, default)
    if raw is None or raw.strip().lower() in ("", "none", "random"):
        return None
    return int(raw)


class AtlasConfig(BaseModel):
    """Configuration for NoteAtlas.

    Every tuning constant of the heat map lives here. The pure heat-map
    functions never read this object directly; services convert it to the
    immutable settings objects via density_settings() and
    interaction_settings().
    """

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEATLAS_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEATLAS_DATABASE_PATH", "data/db/noteatlas.db")
        )
    )
    # When True, uses in-memory SQLite (handy for demos and tests)
    in_memory_db: bool = Field(
        default_factory=lambda: os.getenv("NOTEATLAS_IN_MEMORY_DB", "false").lower()
        in ("true", "1", "yes")
    )
    # Dimensionality of stored embeddings (text-embedding-3-small)
    embedding_dim: int = Field(
        default_factory=lambda: _env_int("NOTEATLAS_EMBEDDING_DIM", "1536")
    )

    # Projection (UMAP) configuration
    projection_max_neighbors: int = Field(
        default_factory=lambda: _env_int("NOTEATLAS_PROJECTION_MAX_NEIGHBORS", "15")
    )
    projection_min_dist: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_PROJECTION_MIN_DIST", "0.1")
    )
    projection_spread: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_PROJECTION_SPREAD", "1.0")
    )
    # Set NOTEATLAS_PROJECTION_RANDOM_STATE=none for non-deterministic layouts
    projection_random_state: Optional[int] = Field(
        default_factory=lambda: _env_optional_int(
            "NOTEATLAS_PROJECTION_RANDOM_STATE", "42"
        )
    )
    # Fallback layout multiplies the first two embedding dimensions by this
    projection_fallback_scale: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_PROJECTION_FALLBACK_SCALE", "1000")
    )

    # Layout normalization
    layout_padding: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_LAYOUT_PADDING", "0.1")
    )

    # Density rendering
    render_padding: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_RENDER_PADDING", "0.1")
    )
    connection_weight: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_CONNECTION_WEIGHT", "0.5")
    )
    bandwidth_multiplier: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_BANDWIDTH_MULTIPLIER", "0.7")
    )
    bandwidth_min: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_BANDWIDTH_MIN", "40")
    )
    bandwidth_max: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_BANDWIDTH_MAX", "70")
    )
    kernel_cutoff: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_KERNEL_CUTOFF", "4")
    )
    sample_stride: int = Field(
        default_factory=lambda: _env_int("NOTEATLAS_SAMPLE_STRIDE", "2")
    )
    edge_fade_margin: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_EDGE_FADE_MARGIN", "40")
    )

    # Interaction
    min_zoom: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_MIN_ZOOM", "0.5")
    )
    max_zoom: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_MAX_ZOOM", "5")
    )
    zoom_sensitivity: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_ZOOM_SENSITIVITY", "0.002")
    )
    zoom_step: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_ZOOM_STEP", "1.3")
    )
    hit_radius: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_HIT_RADIUS", "15")
    )
    drag_threshold: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_DRAG_THRESHOLD", "3")
    )

    # Knowledge graph
    related_similarity_threshold: float = Field(
        default_factory=lambda: _env_float("NOTEATLAS_RELATED_THRESHOLD", "0.7")
    )
    related_search_limit: int = Field(
        default_factory=lambda: _env_int("NOTEATLAS_RELATED_LIMIT", "5")
    )

    @model_validator(mode="after")
    def _validate_heatmap_config(self) -> "AtlasConfig":
        """Reject settings the heat-map math cannot honor."""
        if self.embedding_dim < 1:
            raise ValueError("embedding_dim must be >= 1")
        if self.projection_max_neighbors < 2:
            raise ValueError("projection_max_neighbors must be >= 2")
        if not 0 < self.layout_padding < 0.5:
            raise ValueError("layout_padding must be in (0, 0.5)")
        if not 0 <= self.render_padding < 0.5:
            raise ValueError("render_padding must be in [0, 0.5)")
        if self.sample_stride < 1:
            raise ValueError("sample_stride must be >= 1")
        if self.bandwidth_min <= 0 or self.bandwidth_min > self.bandwidth_max:
            raise ValueError("bandwidth_min must be positive and <= bandwidth_max")
        if self.min_zoom <= 0 or self.min_zoom >= self.max_zoom:
            raise ValueError("min_zoom must be positive and < max_zoom")

        if self.sample_stride > 8:
            logger.warning(
                "sample_stride=%d will make the heat map visibly blocky; "
                "values of 1-4 are recommended.",
                self.sample_stride,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite:///:memory:"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def density_settings(self) -> "DensitySettings":
        """Build the immutable renderer parameters from this config."""
        from noteatlas.heatmap.density import DensitySettings

        return DensitySettings(
            render_padding=self.render_padding,
            connection_weight=self.connection_weight,
            bandwidth_multiplier=self.bandwidth_multiplier,
            bandwidth_min=self.bandwidth_min,
            bandwidth_max=self.bandwidth_max,
            kernel_cutoff=self.kernel_cutoff,
            sample_stride=self.sample_stride,
            edge_fade_margin=self.edge_fade_margin,
        )

    def interaction_settings(self) -> "InteractionSettings":
        """Build the immutable pan/zoom parameters from this config."""
        from noteatlas.heatmap.interaction import InteractionSettings

        return InteractionSettings(
            min_zoom=self.min_zoom,
            max_zoom=self.max_zoom,
            zoom_sensitivity=self.zoom_sensitivity,
            zoom_step=self.zoom_step,
            hit_radius=self.hit_radius,
            drag_threshold=self.drag_threshold,
            render_padding=self.render_padding,
        )


# Create a global config instance
config = AtlasConfig()
