"""Projection of note embeddings onto the plane.

Reduces N high-dimensional embeddings to N (x, y) coordinates with a
neighbor-graph embedding (UMAP). The engine never fails for well-formed
input: degenerate batches are placed directly and a reducer failure falls
back to a cheap deterministic layout built from the first two embedding
dimensions.

Usage:
    engine = ProjectionEngine()
    plane_points = engine.project([ProjectablePoint(id="a", vector=[...]), ...])
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from noteatlas.exceptions import ErrorCode, ProjectionError, ValidationError
from noteatlas.models.schema import PlanePoint, ProjectablePoint
from noteatlas.observability import get_logger, timed_operation

log = get_logger("projection")

# Where a lone note is placed (centre of the unit square)
SINGLE_POINT_POSITION = (0.5, 0.5)


class Reducer(Protocol):
    """Anything with a scikit-learn style fit_transform (umap.UMAP, fakes)."""

    def fit_transform(self, X: np.ndarray) -> np.ndarray:
        ...


# Builds a reducer for a given neighbor count
ReducerFactory = Callable[[int], Reducer]


@dataclass(frozen=True)
class ProjectionSettings:
    """Tuning constants for the projection engine."""

    max_neighbors: int = 15
    min_dist: float = 0.1
    spread: float = 1.0
    random_state: Optional[int] = 42
    fallback_scale: float = 1000.0

    @classmethod
    def from_config(cls, cfg) -> "ProjectionSettings":
        return cls(
            max_neighbors=cfg.projection_max_neighbors,
            min_dist=cfg.projection_min_dist,
            spread=cfg.projection_spread,
            random_state=cfg.projection_random_state,
            fallback_scale=cfg.projection_fallback_scale,
        )


def neighbor_count(point_count: int, max_neighbors: int = 15) -> int:
    """Neighbor-graph size for a batch of ``point_count`` points.

    Small batches must never ask for more neighbors than they have points.
    """
    return min(max_neighbors, max(2, point_count // 2))


def umap_reducer_factory(settings: ProjectionSettings) -> ReducerFactory:
    """Return a factory that builds a 2-component UMAP reducer."""

    def build(n_neighbors: int) -> Reducer:
        # umap pulls in numba; import on first projection rather than at startup
        import umap

        return umap.UMAP(
            n_components=2,
            n_neighbors=n_neighbors,
            min_dist=settings.min_dist,
            spread=settings.spread,
            random_state=settings.random_state,
        )

    return build


def embedding_matrix(points: Sequence[ProjectablePoint]) -> np.ndarray:
    """Stack the batch's vectors into an (N, D) float matrix.

    Raises:
        ValidationError: If vectors differ in length or contain NaN/inf.
    """
    if not points:
        return np.zeros((0, 0), dtype=np.float64)

    lengths = {len(p.vector) for p in points}
    if len(lengths) > 1:
        raise ValidationError(
            "All vectors in a projection batch must share one dimensionality",
            field="vector",
            value=sorted(lengths),
            code=ErrorCode.RAGGED_VECTORS,
        )
    dim = lengths.pop()
    if dim == 0:
        raise ValidationError(
            "Embedding vectors must not be empty",
            field="vector",
            value=0,
            code=ErrorCode.RAGGED_VECTORS,
        )

    matrix = np.asarray([list(p.vector) for p in points], dtype=np.float64)
    matrix = matrix.reshape(len(points), dim)
    if not np.all(np.isfinite(matrix)):
        bad = [p.id for p, row in zip(points, matrix) if not np.all(np.isfinite(row))]
        raise ValidationError(
            "Embedding vectors must be finite",
            field="vector",
            value=bad[:5],
            code=ErrorCode.NON_FINITE_INPUT,
        )
    return matrix


def fallback_projection(matrix: np.ndarray, scale: float = 1000.0) -> np.ndarray:
    """Degraded-mode layout: the first two dimensions, scaled.

    Not distance preserving; it only guarantees a stable layout when the
    reducer cannot produce one. A missing second dimension reads as zero.
    Values that overflow after scaling saturate at the largest finite float.
    """
    coords = np.zeros((matrix.shape[0], 2), dtype=np.float64)
    dims = min(2, matrix.shape[1])
    with np.errstate(over="ignore"):
        coords[:, :dims] = matrix[:, :dims] * scale
    limit = np.finfo(np.float64).max
    return np.clip(coords, -limit, limit)


class ProjectionEngine:
    """Reduces embedding batches to 2D with a guaranteed fallback.

    Args:
        settings: Projection constants. Defaults to ProjectionSettings().
        reducer_factory: Builds a reducer for a neighbor count. Defaults
            to UMAP; tests inject fakes to force failures.
    """

    def __init__(
        self,
        settings: Optional[ProjectionSettings] = None,
        reducer_factory: Optional[ReducerFactory] = None,
    ) -> None:
        self.settings = settings or ProjectionSettings()
        self._reducer_factory = reducer_factory or umap_reducer_factory(self.settings)
        self.last_used_fallback = False

    def project(self, points: Sequence[ProjectablePoint]) -> List[PlanePoint]:
        """Project a batch of embeddings onto the plane.

        Output is index-aligned with the input. Zero points give an empty
        list and a single point sits at (0.5, 0.5).

        Raises:
            ValidationError: If the batch is ragged or non-finite.
        """
        matrix = embedding_matrix(points)
        self.last_used_fallback = False

        if len(points) == 0:
            return []
        if len(points) == 1:
            x, y = SINGLE_POINT_POSITION
            return [PlanePoint(id=points[0].id, x=x, y=y)]

        with timed_operation("project", dim=matrix.shape[1]) as op:
            op["points"] = len(points)
            try:
                coords = self._reduce(matrix)
            except ProjectionError as e:
                log.warning(
                    "Reducer failed, using first-two-dimension fallback",
                    point_count=len(points),
                    error=e,
                )
                coords = fallback_projection(matrix, self.settings.fallback_scale)
                self.last_used_fallback = True
            op["used_fallback"] = self.last_used_fallback

        return [
            PlanePoint(id=p.id, x=float(x), y=float(y))
            for p, (x, y) in zip(points, coords)
        ]

    def _reduce(self, matrix: np.ndarray) -> np.ndarray:
        """Run the reducer, turning every failure mode into ProjectionError."""
        n = matrix.shape[0]
        k = neighbor_count(n, self.settings.max_neighbors)
        try:
            reducer = self._reducer_factory(k)
            coords = np.asarray(reducer.fit_transform(matrix), dtype=np.float64)
        except Exception as e:
            raise ProjectionError(
                f"Dimensionality reduction failed: {e}",
                point_count=n,
                original_error=e,
            ) from e

        if coords.shape != (n, 2):
            raise ProjectionError(
                f"Reducer returned shape {coords.shape}, expected {(n, 2)}",
                point_count=n,
            )
        if not np.all(np.isfinite(coords)):
            raise ProjectionError(
                "Reducer returned non-finite coordinates",
                point_count=n,
                code=ErrorCode.PROJECTION_NON_FINITE,
            )
        log.debug("Projected batch", point_count=n, n_neighbors=k)
        return coords


def project(
    points: Sequence[ProjectablePoint],
    settings: Optional[ProjectionSettings] = None,
    reducer_factory: Optional[ReducerFactory] = None,
) -> List[PlanePoint]:
    """Project a batch with a throwaway engine (see ProjectionEngine.project)."""
    return ProjectionEngine(settings, reducer_factory).project(points)


def project_vectors(
    vectors: Sequence[Sequence[float]],
    settings: Optional[ProjectionSettings] = None,
    reducer_factory: Optional[ReducerFactory] = None,
) -> List[Tuple[float, float]]:
    """Project bare vectors, returning (x, y) pairs in input order."""
    points = [ProjectablePoint(id=str(i), vector=v) for i, v in enumerate(vectors)]
    return [(p.x, p.y) for p in project(points, settings, reducer_factory)]
