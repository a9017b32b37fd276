"""Heat-map batch job and render entry point.

compute_positions() is the only place the projection runs: it reads every
embedded note, projects and normalizes the batch, and writes positions back
with one shared timestamp. Rendering only ever reads those stored positions.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from noteatlas.config import AtlasConfig, config
from noteatlas.exceptions import AtlasError
from noteatlas.heatmap.density import HeatmapRenderer
from noteatlas.heatmap.layout import normalize
from noteatlas.heatmap.projection import ProjectionEngine, ProjectionSettings, ReducerFactory
from noteatlas.models.schema import CanvasSize, HeatmapPoint, ViewTransform, utc_now
from noteatlas.observability import traced
from noteatlas.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


@dataclass
class ComputeResult:
    """Outcome of a position batch.

    Attributes:
        computed: Positions written.
        errors: Positions that failed to write.
        used_fallback: The reducer failed and the fallback layout was used.
    """

    computed: int = 0
    errors: int = 0
    used_fallback: bool = False


def _batch_metrics(result: ComputeResult) -> dict:
    return {"points": result.computed, "used_fallback": result.used_fallback}


class HeatmapService:
    """Runs the projection batch and renders stored positions.

    Args:
        repository: Note store. Defaults to the configured database.
        settings: Configuration. Defaults to the global config.
        reducer_factory: Override the UMAP reducer (tests).
    """

    def __init__(
        self,
        repository: Optional[NoteRepository] = None,
        settings: Optional[AtlasConfig] = None,
        reducer_factory: Optional[ReducerFactory] = None,
    ):
        self.repository = repository or NoteRepository()
        self.config = settings or config
        self.engine = ProjectionEngine(
            ProjectionSettings.from_config(self.config), reducer_factory
        )
        self.renderer = HeatmapRenderer(self.config.density_settings())

    @traced("compute_positions", summarize=_batch_metrics)
    def compute_positions(self) -> ComputeResult:
        """Project every embedded note and store its normalized position.

        Write failures are counted per note rather than aborting the batch.
        """
        points = self.repository.list_projectable()
        result = ComputeResult()
        if not points:
            logger.info("No embedded notes; nothing to position")
            return result

        dims = {len(p.vector) for p in points}
        if len(dims) > 1:
            # Embeddings from different models; project the dominant dimension only
            dominant = max(dims, key=lambda d: sum(len(p.vector) == d for p in points))
            skipped = [p.id for p in points if len(p.vector) != dominant]
            logger.warning(
                "Skipping %d notes whose embedding dimension differs from %d",
                len(skipped), dominant,
            )
            points = [p for p in points if len(p.vector) == dominant]
            result.errors += len(skipped)

        planar = self.engine.project(points)
        result.used_fallback = self.engine.last_used_fallback
        normalized = normalize(planar, padding=self.config.layout_padding)

        computed_at = utc_now()
        for point in normalized:
            try:
                self.repository.update_position(point.id, point.x, point.y, computed_at)
                result.computed += 1
            except AtlasError as e:
                logger.error("Failed to update position for note %s: %s", point.id, e)
                result.errors += 1

        logger.info(
            "Computed %d positions (%d errors%s)",
            result.computed, result.errors,
            ", fallback layout" if result.used_fallback else "",
        )
        return result

    def get_heatmap_data(self) -> List[HeatmapPoint]:
        """Every positioned note, ready for the renderer."""
        return [row.to_point() for row in self.repository.list_positioned()]

    def count_notes_needing_update(self) -> int:
        return self.repository.count_needing_position_update()

    def render(
        self,
        canvas: CanvasSize,
        transform: Optional[ViewTransform] = None,
        points: Optional[List[HeatmapPoint]] = None,
    ) -> Optional[np.ndarray]:
        """Render the stored heat map.

        Returns:
            A (height, width, 4) RGBA buffer, or None while no note has a
            position yet.
        """
        if points is None:
            points = self.get_heatmap_data()
        if not points:
            return None
        return self.renderer.render(points, None, canvas, transform)
