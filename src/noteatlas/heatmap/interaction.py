"""Pan, zoom and hit-testing for the heat map.

The interaction state is an immutable value. Every pointer or wheel event
goes through a pure reducer that returns the next state, so the whole layer
can be exercised without a display:

    state = InteractionState()
    state = apply_wheel(state, WheelEvent(x=400, y=300, delta_y=-120), canvas)
    hit = hit_test(410, 290, points, state.transform, canvas)

HeatmapController wraps the reducers for callers that prefer callbacks.

Coordinates: "screen" is the pointer position relative to the drawing
surface; "canvas" is the untransformed pixel space the renderer lays notes
out in. screen = (canvas - center) * zoom + center + pan.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from noteatlas.heatmap.density import as_canvas, check_points, pixel_positions
from noteatlas.heatmap.spatial_index import SpatialGrid, nearest_brute_force
from noteatlas.models.schema import CanvasSize, HeatmapPoint, ViewTransform

logger = logging.getLogger(__name__)

PRIMARY_BUTTON = 0


@dataclass(frozen=True)
class InteractionSettings:
    """Pan/zoom constants. Distances are screen pixels."""

    min_zoom: float = 0.5
    max_zoom: float = 5.0
    zoom_sensitivity: float = 0.002
    zoom_step: float = 1.3
    hit_radius: float = 15.0
    drag_threshold: float = 3.0
    render_padding: float = 0.1


class PointerMode(str, Enum):
    IDLE = "idle"
    PANNING = "panning"


@dataclass(frozen=True)
class PointerEvent:
    x: float
    y: float
    button: int = PRIMARY_BUTTON


@dataclass(frozen=True)
class WheelEvent:
    """A wheel tick; negative ``delta_y`` (scrolling up) zooms in."""

    x: float
    y: float
    delta_y: float


@dataclass(frozen=True)
class InteractionState:
    """Everything the heat map remembers between events.

    Attributes:
        anchor: Pointer position minus pan, captured on pointer down.
        drag_origin: Pan at pointer down; ``moved`` compares against it.
        moved: The current (or last) drag travelled past the threshold,
            so the click that follows it is not a selection.
    """

    transform: ViewTransform = field(default_factory=ViewTransform)
    mode: PointerMode = PointerMode.IDLE
    anchor: Tuple[float, float] = (0.0, 0.0)
    drag_origin: Tuple[float, float] = (0.0, 0.0)
    moved: bool = False
    hovered_id: Optional[str] = None

    @property
    def zoom(self) -> float:
        return self.transform.zoom

    @property
    def pan(self) -> Tuple[float, float]:
        return self.transform.pan_x, self.transform.pan_y

    @property
    def is_panning(self) -> bool:
        return self.mode is PointerMode.PANNING


@dataclass(frozen=True)
class Tooltip:
    title: str
    tags: Tuple[str, ...]
    connection_count: int


# ---------------------------------------------------------------------------
# Coordinate conversion
# ---------------------------------------------------------------------------


def screen_to_canvas(
    sx: float, sy: float, transform: ViewTransform, canvas: CanvasSize
) -> Tuple[float, float]:
    """Undo pan, then the zoom about the canvas centre."""
    cx, cy = canvas.center
    return (
        (sx - cx - transform.pan_x) / transform.zoom + cx,
        (sy - cy - transform.pan_y) / transform.zoom + cy,
    )


def canvas_to_screen(
    x: float, y: float, transform: ViewTransform, canvas: CanvasSize
) -> Tuple[float, float]:
    cx, cy = canvas.center
    return (
        (x - cx) * transform.zoom + cx + transform.pan_x,
        (y - cy) * transform.zoom + cy + transform.pan_y,
    )


def clamp_zoom(zoom: float, settings: InteractionSettings) -> float:
    return min(settings.max_zoom, max(settings.min_zoom, zoom))


def zoom_about(
    transform: ViewTransform, new_zoom: float, sx: float, sy: float, canvas: CanvasSize
) -> ViewTransform:
    """Change zoom keeping the canvas point under (sx, sy) fixed on screen."""
    cx, cy = canvas.center
    factor = new_zoom / transform.zoom
    ox, oy = sx - cx, sy - cy
    return ViewTransform(
        zoom=new_zoom,
        pan_x=ox - (ox - transform.pan_x) * factor,
        pan_y=oy - (oy - transform.pan_y) * factor,
    )


# ---------------------------------------------------------------------------
# Hit testing
# ---------------------------------------------------------------------------


def hit_test(
    screen_x: float,
    screen_y: float,
    points: Sequence[HeatmapPoint],
    transform: ViewTransform,
    canvas,
    settings: Optional[InteractionSettings] = None,
    index: Optional[SpatialGrid] = None,
) -> Optional[str]:
    """Id of the note under a screen position, or None.

    The tolerance is ``hit_radius`` screen pixels, i.e. ``hit_radius / zoom``
    in canvas space, so the on-screen target keeps its size at any zoom.
    A point exactly at the radius is a miss. When several points are equally
    close the earliest in ``points`` wins.

    Args:
        index: Optional grid built over the same points' canvas positions.
            Results are identical with or without it.
    """
    settings = settings or InteractionSettings()
    canvas = as_canvas(canvas)
    if not points:
        return None

    x, y = screen_to_canvas(screen_x, screen_y, transform, canvas)
    radius = settings.hit_radius / transform.zoom
    if index is not None:
        found = index.nearest(x, y, radius)
    else:
        check_points(points)
        positions = pixel_positions(points, canvas, settings.render_padding)
        found = nearest_brute_force(positions, x, y, radius)
    return points[found].id if found is not None else None


def build_index(
    points: Sequence[HeatmapPoint],
    canvas,
    settings: Optional[InteractionSettings] = None,
) -> SpatialGrid:
    """Grid index over the canvas positions ``hit_test`` would compute."""
    settings = settings or InteractionSettings()
    check_points(points)
    return SpatialGrid(pixel_positions(points, as_canvas(canvas), settings.render_padding))


def tooltip_for(point: HeatmapPoint) -> Tooltip:
    """Hover card content: title, first three tags, connection count."""
    return Tooltip(
        title=point.title,
        tags=tuple(point.tags[:3]),
        connection_count=point.connection_count or 0,
    )


# ---------------------------------------------------------------------------
# Reducers
# ---------------------------------------------------------------------------


def apply_wheel(
    state: InteractionState,
    event: WheelEvent,
    canvas,
    settings: Optional[InteractionSettings] = None,
) -> InteractionState:
    """Multiplicative zoom toward the pointer, clamped to the zoom range."""
    settings = settings or InteractionSettings()
    delta = -event.delta_y * settings.zoom_sensitivity
    new_zoom = clamp_zoom(state.zoom * (1 + delta), settings)
    if new_zoom == state.zoom:
        return state
    transform = zoom_about(state.transform, new_zoom, event.x, event.y, as_canvas(canvas))
    return replace(state, transform=transform)


def pointer_down(state: InteractionState, event: PointerEvent) -> InteractionState:
    """Start a pan with the primary button; other buttons are ignored."""
    if event.button != PRIMARY_BUTTON:
        return state
    pan_x, pan_y = state.pan
    return replace(
        state,
        mode=PointerMode.PANNING,
        anchor=(event.x - pan_x, event.y - pan_y),
        drag_origin=(pan_x, pan_y),
        moved=False,
    )


def pointer_move(
    state: InteractionState,
    event: PointerEvent,
    points: Sequence[HeatmapPoint] = (),
    canvas=None,
    settings: Optional[InteractionSettings] = None,
    index: Optional[SpatialGrid] = None,
) -> InteractionState:
    """Drag the view while panning, otherwise update the hovered note.

    Hover needs ``points`` and ``canvas``; without them the hover is cleared.
    """
    settings = settings or InteractionSettings()
    if state.is_panning:
        pan_x = event.x - state.anchor[0]
        pan_y = event.y - state.anchor[1]
        travelled = math.hypot(pan_x - state.drag_origin[0], pan_y - state.drag_origin[1])
        return replace(
            state,
            transform=replace(state.transform, pan_x=pan_x, pan_y=pan_y),
            moved=state.moved or travelled > settings.drag_threshold,
        )

    if canvas is None:
        return replace(state, hovered_id=None)
    hovered = hit_test(event.x, event.y, points, state.transform, canvas, settings, index)
    if hovered == state.hovered_id:
        return state
    return replace(state, hovered_id=hovered)


def pointer_up(state: InteractionState) -> InteractionState:
    """End the pan. ``moved`` survives so the following click can be ignored."""
    return replace(state, mode=PointerMode.IDLE)


def pointer_leave(state: InteractionState) -> InteractionState:
    return replace(state, mode=PointerMode.IDLE, hovered_id=None)


def click(
    state: InteractionState,
    event: PointerEvent,
    points: Sequence[HeatmapPoint],
    canvas,
    settings: Optional[InteractionSettings] = None,
    index: Optional[SpatialGrid] = None,
) -> Optional[str]:
    """Id of the clicked note, or None if nothing was hit or the view was dragged."""
    if state.moved:
        return None
    return hit_test(event.x, event.y, points, state.transform, canvas, settings, index)


def zoom_in(
    state: InteractionState, settings: Optional[InteractionSettings] = None
) -> InteractionState:
    settings = settings or InteractionSettings()
    zoom = clamp_zoom(state.zoom * settings.zoom_step, settings)
    return replace(state, transform=replace(state.transform, zoom=zoom))


def zoom_out(
    state: InteractionState, settings: Optional[InteractionSettings] = None
) -> InteractionState:
    settings = settings or InteractionSettings()
    zoom = clamp_zoom(state.zoom / settings.zoom_step, settings)
    return replace(state, transform=replace(state.transform, zoom=zoom))


def reset_view(state: InteractionState) -> InteractionState:
    return replace(state, transform=ViewTransform())


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class HeatmapController:
    """Routes raw events through the reducers and fires callbacks.

    Callbacks:
        on_click(note_id): a note was clicked without dragging.
        on_hover(note_id or None): the hovered note changed.
        on_view_change(transform): zoom or pan changed; re-render.
    """

    def __init__(
        self,
        points: Sequence[HeatmapPoint],
        canvas,
        settings: Optional[InteractionSettings] = None,
        on_click: Optional[Callable[[str], None]] = None,
        on_hover: Optional[Callable[[Optional[str]], None]] = None,
        on_view_change: Optional[Callable[[ViewTransform], None]] = None,
        use_index: bool = True,
    ):
        self.settings = settings or InteractionSettings()
        self.on_click = on_click
        self.on_hover = on_hover
        self.on_view_change = on_view_change
        self._use_index = use_index
        self._state = InteractionState()
        self._canvas = as_canvas(canvas)
        self._points: List[HeatmapPoint] = []
        self._index: Optional[SpatialGrid] = None
        self.set_points(points)

    @property
    def state(self) -> InteractionState:
        return self._state

    @property
    def transform(self) -> ViewTransform:
        return self._state.transform

    @property
    def canvas(self) -> CanvasSize:
        return self._canvas

    @property
    def points(self) -> List[HeatmapPoint]:
        return list(self._points)

    def set_points(self, points: Sequence[HeatmapPoint]) -> None:
        """Swap in a new point snapshot (e.g. after positions were recomputed)."""
        self._points = list(points)
        self._rebuild_index()
        if self._state.hovered_id and not any(
            p.id == self._state.hovered_id for p in self._points
        ):
            self._commit(replace(self._state, hovered_id=None))

    def resize(self, canvas) -> None:
        self._canvas = as_canvas(canvas)
        self._rebuild_index()

    def _rebuild_index(self) -> None:
        self._index = (
            build_index(self._points, self._canvas, self.settings)
            if self._use_index
            else None
        )

    def _commit(self, new_state: InteractionState) -> None:
        old = self._state
        self._state = new_state
        if new_state.transform != old.transform and self.on_view_change:
            self.on_view_change(new_state.transform)
        if new_state.hovered_id != old.hovered_id and self.on_hover:
            self.on_hover(new_state.hovered_id)

    def wheel(self, x: float, y: float, delta_y: float) -> None:
        self._commit(apply_wheel(self._state, WheelEvent(x, y, delta_y), self._canvas,
                                 self.settings))

    def pointer_down(self, x: float, y: float, button: int = PRIMARY_BUTTON) -> None:
        self._commit(pointer_down(self._state, PointerEvent(x, y, button)))

    def pointer_move(self, x: float, y: float) -> None:
        self._commit(pointer_move(self._state, PointerEvent(x, y), self._points,
                                  self._canvas, self.settings, self._index))

    def pointer_up(self, x: float, y: float) -> None:
        self._commit(pointer_up(self._state))

    def pointer_leave(self) -> None:
        self._commit(pointer_leave(self._state))

    def click(self, x: float, y: float) -> Optional[str]:
        note_id = click(self._state, PointerEvent(x, y), self._points, self._canvas,
                        self.settings, self._index)
        if note_id is not None:
            logger.debug("Heat-map click on note %s", note_id)
            if self.on_click:
                self.on_click(note_id)
        return note_id

    def zoom_in(self) -> None:
        self._commit(zoom_in(self._state, self.settings))

    def zoom_out(self) -> None:
        self._commit(zoom_out(self._state, self.settings))

    def reset_view(self) -> None:
        self._commit(reset_view(self._state))

    def hovered_point(self) -> Optional[HeatmapPoint]:
        hovered = self._state.hovered_id
        return next((p for p in self._points if p.id == hovered), None)

    def tooltip(self) -> Optional[Tooltip]:
        point = self.hovered_point()
        return tooltip_for(point) if point else None
