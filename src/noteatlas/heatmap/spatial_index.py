"""Uniform grid over canvas-space positions for nearest-point lookups."""

import math
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

import numpy as np

DEFAULT_CELL_SIZE = 50.0


def nearest_brute_force(
    positions: np.ndarray, x: float, y: float, radius: float
) -> Optional[int]:
    """Index of the closest position strictly within ``radius``.

    Ties go to the lowest index. Returns None when nothing is in range.
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
    if len(positions) == 0:
        return None
    return _first_closest(positions, list(range(len(positions))), x, y, radius)


class SpatialGrid:
    """Buckets point indices by fixed-size square cells.

    ``nearest`` answers exactly what ``nearest_brute_force`` would for the
    same positions; the grid only narrows the candidate set.
    """

    def __init__(self, positions: np.ndarray, cell_size: float = DEFAULT_CELL_SIZE):
        if cell_size <= 0:
            raise ValueError("cell_size must be positive")
        self.positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        self.cell_size = cell_size
        self._cells: Dict[Tuple[int, int], List[int]] = defaultdict(list)
        for i, (px, py) in enumerate(self.positions.tolist()):
            self._cells[self._cell(px, py)].append(i)

    def __len__(self) -> int:
        return len(self.positions)

    def _cell(self, x: float, y: float) -> Tuple[int, int]:
        return math.floor(x / self.cell_size), math.floor(y / self.cell_size)

    def candidates(self, x: float, y: float, radius: float) -> List[int]:
        """Indices in every cell the search circle can touch, ascending."""
        cx0, cy0 = self._cell(x - radius, y - radius)
        cx1, cy1 = self._cell(x + radius, y + radius)
        span = (cx1 - cx0 + 1) * (cy1 - cy0 + 1)
        found: List[int] = []
        if span > len(self._cells):
            # Huge radius: cheaper to walk the occupied cells
            for (gx, gy), bucket in self._cells.items():
                if cx0 <= gx <= cx1 and cy0 <= gy <= cy1:
                    found.extend(bucket)
        else:
            for gx in range(cx0, cx1 + 1):
                for gy in range(cy0, cy1 + 1):
                    found.extend(self._cells.get((gx, gy), ()))
        found.sort()
        return found

    def nearest(self, x: float, y: float, radius: float) -> Optional[int]:
        """Index of the closest point strictly within ``radius`` (ties: lowest index)."""
        if radius <= 0 or not len(self):
            return None
        idx = self.candidates(x, y, radius)
        if not idx:
            return None
        return _first_closest(self.positions[idx], idx, x, y, radius)


def _first_closest(
    subset: np.ndarray, indices: List[int], x: float, y: float, radius: float
) -> Optional[int]:
    dx = subset[:, 0] - x
    dy = subset[:, 1] - y
    dist = np.sqrt(dx * dx + dy * dy)
    best = int(np.argmin(dist))
    return indices[best] if dist[best] < radius else None
