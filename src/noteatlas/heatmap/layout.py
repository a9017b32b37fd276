"""Rescaling of raw projection output into the padded unit square."""

import logging
from typing import List, Sequence

import numpy as np

from noteatlas.exceptions import ErrorCode, ValidationError
from noteatlas.models.schema import NormalizedPoint, PlanePoint

logger = logging.getLogger(__name__)

DEFAULT_PADDING = 0.1


def _check_padding(padding: float) -> None:
    if not 0 < padding < 0.5:
        raise ValidationError(
            f"Padding must lie in (0, 0.5), got {padding}",
            field="padding",
            value=padding,
            code=ErrorCode.INVALID_PADDING,
        )


def _rescale_axis(values: np.ndarray, padding: float) -> np.ndarray:
    """Map one axis linearly onto [padding, 1 - padding].

    An axis with no spread collapses to the centre of the square.
    """
    lo = values.min()
    hi = values.max()
    if hi == lo:
        return np.full_like(values, 0.5)

    with np.errstate(over="ignore"):
        span = hi - lo
    if not np.isfinite(span):
        # Spread exceeds float range; shrink first so the subtraction is exact enough
        values = values / np.abs(values).max()
        lo, span = values.min(), values.max() - values.min()

    scaled = padding + (values - lo) / span * (1 - 2 * padding)
    # Rounding can push the extremes one ulp past the bounds
    return np.clip(scaled, padding, 1 - padding)


def normalize(
    points: Sequence[PlanePoint], padding: float = DEFAULT_PADDING
) -> List[NormalizedPoint]:
    """Rescale projected points into the padded unit square.

    x and y are rescaled independently; every output coordinate lies in
    [padding, 1 - padding]. Identical inputs all land on (0.5, 0.5).

    Args:
        points: Raw projection output.
        padding: Inset on each side, in (0, 0.5).

    Returns:
        Normalized points, index-aligned with the input.

    Raises:
        ValidationError: If padding is out of range or a coordinate is
            not finite.
    """
    _check_padding(padding)
    if not points:
        return []

    xs = np.array([p.x for p in points], dtype=np.float64)
    ys = np.array([p.y for p in points], dtype=np.float64)
    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(ys))):
        raise ValidationError(
            "Projected coordinates must be finite",
            field="points",
            code=ErrorCode.NON_FINITE_INPUT,
        )

    nx = _rescale_axis(xs, padding)
    ny = _rescale_axis(ys, padding)
    logger.debug("Normalized %d points with padding %.3f", len(points), padding)
    return [
        NormalizedPoint(id=p.id, x=float(x), y=float(y))
        for p, x, y in zip(points, nx, ny)
    ]
