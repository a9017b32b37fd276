"""Density field renderer for the knowledge heat map.

Turns normalized note positions into an RGBA pixel buffer:

1. Each note contributes a Gaussian kernel weighted by how connected it is.
   The field is sampled every ``sample_stride`` pixels and each sample is
   replicated over its block.
2. The field is normalized by its maximum, mapped through a multi-stop
   colour ramp and alpha-blended over the background with an eased alpha
   that fades out near the canvas border.
3. The view transform is applied to the whole frame, then relationship
   edges (bowed quadratic curves) and note markers are drawn on top.

Steps 1-2 do not depend on the view transform, so HeatmapRenderer keeps
the last static layer and only recomposes when the user pans or zooms.

All functions here are pure; nothing touches storage or a display.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image, ImageDraw

from noteatlas.exceptions import ErrorCode, ValidationError
from noteatlas.models.schema import (
    CanvasSize,
    HeatmapPoint,
    RelationshipEdge,
    ViewTransform,
)
from noteatlas.observability import timed_operation

logger = logging.getLogger(__name__)

RGB = Tuple[int, int, int]
RGBA = Tuple[int, int, int, int]

# (threshold, colour): gray -> blue -> yellow -> orange -> red
COLOR_STOPS: Tuple[Tuple[float, RGB], ...] = (
    (0.00, (138, 138, 138)),
    (0.05, (107, 140, 174)),
    (0.15, (74, 124, 174)),
    (0.35, (122, 179, 212)),
    (0.55, (232, 232, 84)),
    (0.75, (232, 156, 84)),
    (0.90, (232, 84, 84)),
)

BACKGROUND: RGB = (255, 255, 252)


@dataclass(frozen=True)
class DensitySettings:
    """Tuning constants for the density renderer.

    Lengths are in pixels. Marker and edge sizes are screen-space and do not
    scale with zoom.
    """

    render_padding: float = 0.1
    connection_weight: float = 0.5
    bandwidth_multiplier: float = 0.7
    bandwidth_min: float = 40.0
    bandwidth_max: float = 70.0
    kernel_cutoff: float = 4.0
    sample_stride: int = 2
    edge_fade_margin: float = 40.0
    alpha_exponent: float = 0.6
    alpha_gain: float = 2.5
    alpha_floor: float = 0.005
    background: RGB = BACKGROUND
    edge_color: RGBA = (255, 255, 255, 51)
    edge_width: float = 1.5
    edge_bow: float = 0.15
    curve_segments: int = 16
    marker_radius: float = 4.0
    marker_fill: RGBA = (255, 255, 255, 230)
    marker_outline: RGBA = (0, 0, 0, 77)
    marker_outline_width: int = 1


@dataclass(frozen=True)
class DensityLayer:
    """The transform-independent part of a frame.

    Attributes:
        rgb: (height, width, 3) uint8 colour field over the background.
        density: (height, width) density normalized to [0, 1].
        max_density: Raw maximum before normalization (0.0 when empty).
        bandwidth: Kernel bandwidth used, in pixels.
        positions: (n, 2) pixel positions of the notes in canvas space.
    """

    rgb: np.ndarray
    density: np.ndarray
    max_density: float
    bandwidth: float
    positions: np.ndarray


def as_canvas(canvas: Union[CanvasSize, Tuple[int, int]]) -> CanvasSize:
    """Accept a CanvasSize or a (width, height) pair."""
    if isinstance(canvas, CanvasSize):
        return canvas
    width, height = canvas
    return CanvasSize(int(width), int(height))


def check_points(points: Sequence[HeatmapPoint]) -> None:
    """Reject non-finite positions before any kernel work starts."""
    bad = [p.id for p in points if not (math.isfinite(p.x) and math.isfinite(p.y))]
    if bad:
        raise ValidationError(
            "Heat-map positions must be finite",
            field="points",
            value=bad[:5],
            code=ErrorCode.NON_FINITE_INPUT,
        )


def pixel_positions(
    points: Sequence[HeatmapPoint], canvas: CanvasSize, render_padding: float = 0.1
) -> np.ndarray:
    """Map normalized positions to canvas pixels, inset by ``render_padding``."""
    if not points:
        return np.zeros((0, 2), dtype=np.float64)
    xy = np.array([(p.x, p.y) for p in points], dtype=np.float64)
    inner = 1 - 2 * render_padding
    xy = render_padding + xy * inner
    xy[:, 0] *= canvas.width
    xy[:, 1] *= canvas.height
    return xy


def resolve_edges(
    points: Sequence[HeatmapPoint], edges: Iterable[RelationshipEdge]
) -> List[Tuple[int, int]]:
    """Turn id pairs into index pairs, once per unordered pair.

    Self-loops and edges naming an unknown note are skipped.
    """
    index = {p.id: i for i, p in enumerate(points)}
    seen = set()
    resolved = []
    for a, b in edges:
        ia = index.get(a)
        ib = index.get(b)
        if ia is None or ib is None or ia == ib:
            continue
        key = (min(ia, ib), max(ia, ib))
        if key in seen:
            continue
        seen.add(key)
        resolved.append((ia, ib))
    return resolved


def edges_from_points(points: Sequence[HeatmapPoint]) -> List[RelationshipEdge]:
    """Collect the 'related' edges carried on the points themselves."""
    return [(p.id, rid) for p in points for rid in p.related_ids]


def connection_counts(
    points: Sequence[HeatmapPoint], edge_pairs: Sequence[Tuple[int, int]]
) -> List[int]:
    """Per-point connection counts.

    A point's own ``connection_count`` wins; otherwise its edges are counted.
    """
    counted: Dict[int, int] = {}
    for ia, ib in edge_pairs:
        counted[ia] = counted.get(ia, 0) + 1
        counted[ib] = counted.get(ib, 0) + 1
    return [
        p.connection_count if p.connection_count is not None else counted.get(i, 0)
        for i, p in enumerate(points)
    ]


def point_weights(counts: Sequence[int], connection_weight: float = 0.5) -> np.ndarray:
    """Kernel weight per point: 1 + connections * connection_weight."""
    return 1.0 + np.asarray(counts, dtype=np.float64) * connection_weight


def kernel_bandwidth(
    point_count: int, canvas: CanvasSize, settings: DensitySettings
) -> float:
    """Bandwidth from average spacing: denser layouts get tighter kernels."""
    avg_spacing = math.sqrt(canvas.area / max(point_count, 1))
    raw = avg_spacing * settings.bandwidth_multiplier
    return min(settings.bandwidth_max, max(settings.bandwidth_min, raw))


def gaussian(distance: np.ndarray, bandwidth: float) -> np.ndarray:
    return np.exp(-0.5 * (distance / bandwidth) ** 2)


def density_grid(
    positions: np.ndarray,
    weights: np.ndarray,
    canvas: CanvasSize,
    bandwidth: float,
    settings: DensitySettings,
) -> np.ndarray:
    """Sum weighted Gaussian kernels over the canvas.

    Samples are taken at every ``sample_stride`` pixels; each sample value is
    copied to the whole stride block. Kernels are evaluated only where the
    distance is below ``kernel_cutoff`` bandwidths.

    Returns:
        (height, width) array of non-negative raw density.
    """
    stride = settings.sample_stride
    xs = np.arange(0, canvas.width, stride, dtype=np.float64)
    ys = np.arange(0, canvas.height, stride, dtype=np.float64)
    samples = np.zeros((len(ys), len(xs)), dtype=np.float64)
    cutoff = bandwidth * settings.kernel_cutoff

    for (px, py), weight in zip(positions, weights):
        # Sample window that can fall inside the cutoff circle
        x0 = max(0, math.ceil((px - cutoff) / stride))
        x1 = min(len(xs), math.floor((px + cutoff) / stride) + 1)
        y0 = max(0, math.ceil((py - cutoff) / stride))
        y1 = min(len(ys), math.floor((py + cutoff) / stride) + 1)
        if x0 >= x1 or y0 >= y1:
            continue

        dx = xs[x0:x1] - px
        dy = ys[y0:y1] - py
        dist = np.sqrt(dy[:, None] ** 2 + dx[None, :] ** 2)
        contribution = gaussian(dist, bandwidth) * weight
        contribution[dist >= cutoff] = 0.0
        samples[y0:y1, x0:x1] += contribution

    grid = np.repeat(np.repeat(samples, stride, axis=0), stride, axis=1)
    return grid[: canvas.height, : canvas.width]


def normalize_density(grid: np.ndarray) -> Tuple[np.ndarray, float]:
    """Divide by the maximum; an all-zero field stays zero."""
    peak = float(grid.max()) if grid.size else 0.0
    if peak <= 0:
        return np.zeros_like(grid), 0.0
    return grid / peak, peak


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def ramp_colors(values: np.ndarray) -> np.ndarray:
    """Piecewise-linear colour ramp; values past the last stop clamp to it.

    Returns:
        float array of shape values.shape + (3,), channels rounded to integers.
    """
    thresholds = np.array([t for t, _ in COLOR_STOPS], dtype=np.float64)
    colors = np.array([c for _, c in COLOR_STOPS], dtype=np.float64)
    channels = [np.interp(values, thresholds, colors[:, k]) for k in range(3)]
    return _round_half_up(np.stack(channels, axis=-1))


def edge_fade(canvas: CanvasSize, margin: float) -> np.ndarray:
    """Linear 0..1 ramp within ``margin`` pixels of any border."""
    if margin <= 0:
        return np.ones((canvas.height, canvas.width), dtype=np.float64)
    col = np.arange(canvas.width, dtype=np.float64)
    row = np.arange(canvas.height, dtype=np.float64)
    ex = np.minimum(col, canvas.width - 1 - col)
    ey = np.minimum(row, canvas.height - 1 - row)
    dist = np.minimum(ey[:, None], ex[None, :])
    return np.minimum(1.0, dist / margin)


def colorize(
    normalized: np.ndarray, canvas: CanvasSize, settings: DensitySettings
) -> np.ndarray:
    """Blend the ramp colour over the background.

    alpha = min(1, density ** alpha_exponent * alpha_gain) * edge_fade;
    pixels with alpha at or below ``alpha_floor`` show pure background.

    Returns:
        (height, width, 3) uint8 array.
    """
    alpha = np.minimum(1.0, normalized ** settings.alpha_exponent * settings.alpha_gain)
    alpha = alpha * edge_fade(canvas, settings.edge_fade_margin)
    alpha = alpha[..., None]

    background = np.array(settings.background, dtype=np.float64)
    blended = _round_half_up(ramp_colors(normalized) * alpha + background * (1 - alpha))
    out = np.where(alpha > settings.alpha_floor, blended, background)
    return out.astype(np.uint8)


def compute_layer(
    points: Sequence[HeatmapPoint],
    edges: Iterable[RelationshipEdge],
    canvas: Union[CanvasSize, Tuple[int, int]],
    settings: Optional[DensitySettings] = None,
) -> DensityLayer:
    """Build the static (transform-independent) density layer."""
    settings = settings or DensitySettings()
    canvas = as_canvas(canvas)
    check_points(points)

    positions = pixel_positions(points, canvas, settings.render_padding)
    if not points:
        empty = np.zeros((canvas.height, canvas.width), dtype=np.float64)
        rgb = np.empty((canvas.height, canvas.width, 3), dtype=np.uint8)
        rgb[...] = settings.background
        return DensityLayer(rgb=rgb, density=empty, max_density=0.0, bandwidth=0.0,
                            positions=positions)

    pairs = resolve_edges(points, edges)
    weights = point_weights(connection_counts(points, pairs), settings.connection_weight)
    bandwidth = kernel_bandwidth(len(points), canvas, settings)
    grid = density_grid(positions, weights, canvas, bandwidth, settings)
    normalized, peak = normalize_density(grid)
    logger.debug(
        "Density layer: %d points, bandwidth %.1f, peak %.3f",
        len(points), bandwidth, peak,
    )
    return DensityLayer(
        rgb=colorize(normalized, canvas, settings),
        density=normalized,
        max_density=peak,
        bandwidth=bandwidth,
        positions=positions,
    )


def to_screen(
    positions: np.ndarray, canvas: CanvasSize, transform: ViewTransform
) -> np.ndarray:
    """Canvas pixels to screen pixels: (p - center) * zoom + center + pan."""
    cx, cy = canvas.center
    out = np.empty_like(positions)
    out[:, 0] = (positions[:, 0] - cx) * transform.zoom + cx + transform.pan_x
    out[:, 1] = (positions[:, 1] - cy) * transform.zoom + cy + transform.pan_y
    return out


def apply_transform(
    rgb: np.ndarray,
    canvas: CanvasSize,
    transform: ViewTransform,
    background: RGB = BACKGROUND,
) -> np.ndarray:
    """Resample the colour field under the view transform.

    Each screen pixel centre is mapped back to canvas space and takes the
    nearest canvas pixel; anything that lands off the canvas is background.
    The identity transform returns an unchanged copy.
    """
    cx, cy = canvas.center
    sx = np.arange(canvas.width, dtype=np.float64) + 0.5
    sy = np.arange(canvas.height, dtype=np.float64) + 0.5
    src_x = np.floor((sx - cx - transform.pan_x) / transform.zoom + cx).astype(np.int64)
    src_y = np.floor((sy - cy - transform.pan_y) / transform.zoom + cy).astype(np.int64)
    cols = (src_x >= 0) & (src_x < canvas.width)
    rows = (src_y >= 0) & (src_y < canvas.height)

    out = np.empty_like(rgb)
    out[...] = background
    if cols.any() and rows.any():
        out[np.ix_(rows, cols)] = rgb[np.ix_(src_y[rows], src_x[cols])]
    return out


def bezier_curve(
    start: np.ndarray, end: np.ndarray, bow: float = 0.15, segments: int = 16
) -> List[Tuple[float, float]]:
    """Quadratic curve from start to end, bowed perpendicular to the chord.

    The control point sits ``bow`` * chord length off the midpoint.
    """
    (x1, y1), (x2, y2) = start, end
    dx, dy = x2 - x1, y2 - y1
    length = math.sqrt(dx * dx + dy * dy)
    offset = length * bow
    ctrl_x = (x1 + x2) / 2 - dy * offset / (length + 0.001)
    ctrl_y = (y1 + y2) / 2 + dx * offset / (length + 0.001)

    t = np.linspace(0.0, 1.0, segments + 1)
    u = 1 - t
    xs = u * u * x1 + 2 * u * t * ctrl_x + t * t * x2
    ys = u * u * y1 + 2 * u * t * ctrl_y + t * t * y2
    return list(zip(xs.tolist(), ys.tolist()))


def _overlay(size: Tuple[int, int]) -> Tuple[Image.Image, ImageDraw.ImageDraw]:
    layer = Image.new("RGBA", size, (0, 0, 0, 0))
    return layer, ImageDraw.Draw(layer)


def draw_overlays(
    base_rgb: np.ndarray,
    screen_positions: np.ndarray,
    edge_pairs: Sequence[Tuple[int, int]],
    settings: DensitySettings,
) -> np.ndarray:
    """Composite edges, then markers, over the transformed colour field.

    Returns:
        (height, width, 4) uint8 RGBA buffer.
    """
    frame = Image.fromarray(base_rgb).convert("RGBA")

    if edge_pairs:
        edges, draw = _overlay(frame.size)
        width = max(1, int(round(settings.edge_width)))
        for ia, ib in edge_pairs:
            curve = bezier_curve(
                screen_positions[ia], screen_positions[ib],
                settings.edge_bow, settings.curve_segments,
            )
            draw.line(curve, fill=settings.edge_color, width=width)
        frame = Image.alpha_composite(frame, edges)

    if len(screen_positions):
        markers, draw = _overlay(frame.size)
        r = settings.marker_radius
        for x, y in screen_positions.tolist():
            draw.ellipse(
                (x - r, y - r, x + r, y + r),
                fill=settings.marker_fill,
                outline=settings.marker_outline,
                width=settings.marker_outline_width,
            )
        frame = Image.alpha_composite(frame, markers)

    return np.array(frame, dtype=np.uint8)


class HeatmapRenderer:
    """Renders frames, reusing the static layer while only the view changes.

    The cache holds exactly one layer, keyed on the point positions, their
    connection counts, the edge set and the canvas size.
    """

    def __init__(self, settings: Optional[DensitySettings] = None):
        self.settings = settings or DensitySettings()
        self._cache_key: Optional[tuple] = None
        self._cache_layer: Optional[DensityLayer] = None
        self._cache_pairs: List[Tuple[int, int]] = []
        self.layer_builds = 0

    def _key(self, points, pairs, canvas) -> tuple:
        return (
            tuple((p.id, p.x, p.y, p.connection_count) for p in points),
            tuple(pairs),
            (canvas.width, canvas.height),
        )

    def layer(
        self,
        points: Sequence[HeatmapPoint],
        edges: Optional[Iterable[RelationshipEdge]],
        canvas: Union[CanvasSize, Tuple[int, int]],
    ) -> Tuple[DensityLayer, List[Tuple[int, int]]]:
        """Return the static layer and resolved edge pairs, rebuilding on change."""
        canvas = as_canvas(canvas)
        edges = edges_from_points(points) if edges is None else list(edges)
        pairs = resolve_edges(points, edges)
        key = self._key(points, pairs, canvas)
        if key != self._cache_key or self._cache_layer is None:
            self._cache_layer = compute_layer(points, edges, canvas, self.settings)
            self._cache_key = key
            self._cache_pairs = pairs
            self.layer_builds += 1
        return self._cache_layer, self._cache_pairs

    def render(
        self,
        points: Sequence[HeatmapPoint],
        edges: Optional[Iterable[RelationshipEdge]],
        canvas: Union[CanvasSize, Tuple[int, int]],
        transform: Optional[ViewTransform] = None,
    ) -> np.ndarray:
        """Render one frame as a (height, width, 4) uint8 RGBA array.

        ``edges=None`` draws the related ids carried on the points. An empty
        point set gives a plain background frame.
        """
        canvas = as_canvas(canvas)
        transform = transform or ViewTransform()
        with timed_operation("render", width=canvas.width, height=canvas.height) as op:
            op["points"] = len(points)
            builds = self.layer_builds
            layer, pairs = self.layer(points, edges, canvas)
            op["layer_built"] = self.layer_builds > builds
            base = apply_transform(layer.rgb, canvas, transform, self.settings.background)
            screen = to_screen(layer.positions, canvas, transform)
            return draw_overlays(base, screen, pairs, self.settings)


def render(
    points: Sequence[HeatmapPoint],
    edges: Optional[Iterable[RelationshipEdge]],
    canvas: Union[CanvasSize, Tuple[int, int]],
    transform: Optional[ViewTransform] = None,
    settings: Optional[DensitySettings] = None,
) -> np.ndarray:
    """Render a single frame without caching (see HeatmapRenderer.render)."""
    return HeatmapRenderer(settings).render(points, edges, canvas, transform)
