"""Tests for pan, zoom and hit testing."""
import numpy as np
import pytest

from noteatlas.heatmap.interaction import (
    HeatmapController,
    InteractionSettings,
    InteractionState,
    PointerEvent,
    PointerMode,
    WheelEvent,
    apply_wheel,
    build_index,
    canvas_to_screen,
    click,
    hit_test,
    pointer_down,
    pointer_leave,
    pointer_move,
    pointer_up,
    reset_view,
    screen_to_canvas,
    tooltip_for,
    zoom_in,
    zoom_out,
)
from noteatlas.models.schema import CanvasSize, HeatmapPoint, ViewTransform


class TestCoordinates:
    @pytest.mark.parametrize(
        "transform",
        [ViewTransform(), ViewTransform(2.0, 10.0, -4.0), ViewTransform(0.7, -33.0, 12.5)],
    )
    def test_screen_canvas_round_trip(self, transform, canvas):
        sx, sy = canvas_to_screen(37.0, 121.0, transform, canvas)
        x, y = screen_to_canvas(sx, sy, transform, canvas)
        assert (x, y) == (pytest.approx(37.0), pytest.approx(121.0))

    def test_centre_is_fixed_under_pure_zoom(self, canvas):
        assert screen_to_canvas(100.0, 80.0, ViewTransform(zoom=3.0), canvas) == (100.0, 80.0)


class TestWheel:
    def test_scroll_up_zooms_in(self, canvas):
        state = apply_wheel(InteractionState(), WheelEvent(100, 80, delta_y=-100), canvas)
        assert state.zoom == pytest.approx(1.2)

    def test_scroll_down_zooms_out(self, canvas):
        state = apply_wheel(InteractionState(), WheelEvent(100, 80, delta_y=100), canvas)
        assert state.zoom == pytest.approx(0.8)

    def test_zoom_clamped(self, canvas):
        state = apply_wheel(InteractionState(), WheelEvent(0, 0, delta_y=-10_000), canvas)
        assert state.zoom == 5.0
        state = apply_wheel(state, WheelEvent(0, 0, delta_y=10_000), canvas)
        assert state.zoom == 0.5

    def test_no_change_at_limit_returns_same_state(self, canvas):
        state = InteractionState(transform=ViewTransform(zoom=5.0))
        assert apply_wheel(state, WheelEvent(10, 10, delta_y=-50), canvas) is state

    @pytest.mark.parametrize("delta", [-300.0, -40.0, 25.0, 180.0])
    @pytest.mark.parametrize("cursor", [(0.0, 0.0), (40.0, 150.0), (199.0, 3.0)])
    def test_point_under_cursor_stays_put(self, delta, cursor, canvas):
        state = InteractionState(transform=ViewTransform(zoom=1.5, pan_x=13.0, pan_y=-7.0))
        before = screen_to_canvas(*cursor, state.transform, canvas)
        after_state = apply_wheel(state, WheelEvent(*cursor, delta_y=delta), canvas)
        after = screen_to_canvas(*cursor, after_state.transform, canvas)
        assert after == (pytest.approx(before[0]), pytest.approx(before[1]))


class TestHitTest:
    """Point "b" sits at canvas pixel (100, 80), the canvas centre."""

    def test_direct_hit(self, sample_points, canvas):
        assert hit_test(100, 80, sample_points, ViewTransform(), canvas) == "b"

    def test_empty_points(self, canvas):
        assert hit_test(100, 80, [], ViewTransform(), canvas) is None

    def test_radius_is_strict(self, sample_points, canvas):
        assert hit_test(114.0, 80.0, sample_points, ViewTransform(), canvas) == "b"
        assert hit_test(115.0, 80.0, sample_points, ViewTransform(), canvas) is None

    def test_radius_shrinks_in_canvas_space_when_zoomed_in(self, sample_points, canvas):
        zoomed = ViewTransform(zoom=2.0)
        # Canvas distance 7 (screen 14) hits, canvas distance 8 (screen 16) misses
        assert hit_test(114.0, 80.0, sample_points, zoomed, canvas) == "b"
        assert hit_test(116.0, 80.0, sample_points, zoomed, canvas) is None

    def test_radius_grows_in_canvas_space_when_zoomed_out(self, sample_points, canvas):
        zoomed = ViewTransform(zoom=0.5)
        # Canvas distance 25 is inside 15 / 0.5 = 30, distance 31 is not
        assert hit_test(100.0, 92.5, sample_points, zoomed, canvas) == "b"
        assert hit_test(100.0, 95.5, sample_points, zoomed, canvas) is None

    def test_pan_is_undone(self, sample_points, canvas):
        panned = ViewTransform(pan_x=40.0, pan_y=-20.0)
        assert hit_test(140, 60, sample_points, panned, canvas) == "b"
        assert hit_test(100, 80, sample_points, panned, canvas) is None

    def test_closest_point_wins(self, canvas):
        points = [HeatmapPoint(id="far", x=0.5, y=0.5),
                  HeatmapPoint(id="near", x=0.53, y=0.5)]
        # "near" is at canvas x 104.8
        assert hit_test(104.0, 80.0, points, ViewTransform(), canvas) == "near"

    def test_tie_goes_to_first_point(self, canvas):
        points = [HeatmapPoint(id="first", x=0.5, y=0.5),
                  HeatmapPoint(id="second", x=0.5, y=0.5)]
        assert hit_test(101, 80, points, ViewTransform(), canvas) == "first"

    @pytest.mark.parametrize("seed", range(3))
    def test_index_gives_identical_results(self, seed):
        rng = np.random.default_rng(seed)
        canvas = CanvasSize(640, 480)
        points = [HeatmapPoint(id=f"p{i}", x=float(x), y=float(y))
                  for i, (x, y) in enumerate(rng.random((150, 2)))]
        index = build_index(points, canvas)
        for _ in range(100):
            sx, sy = rng.uniform(0, 640), rng.uniform(0, 480)
            transform = ViewTransform(float(rng.uniform(0.5, 5.0)),
                                      float(rng.uniform(-50, 50)), float(rng.uniform(-50, 50)))
            assert (hit_test(sx, sy, points, transform, canvas, index=index)
                    == hit_test(sx, sy, points, transform, canvas))

    def test_custom_hit_radius(self, sample_points, canvas):
        settings = InteractionSettings(hit_radius=30.0)
        assert hit_test(125.0, 80.0, sample_points, ViewTransform(), canvas, settings) == "b"


class TestDrag:
    def test_pointer_down_starts_pan(self):
        state = pointer_down(InteractionState(), PointerEvent(100, 100))
        assert state.mode is PointerMode.PANNING
        assert state.anchor == (100, 100)
        assert state.moved is False

    def test_secondary_button_ignored(self):
        state = InteractionState()
        assert pointer_down(state, PointerEvent(5, 5, button=2)) is state

    def test_drag_pans_the_view(self):
        state = pointer_down(InteractionState(), PointerEvent(100, 100))
        state = pointer_move(state, PointerEvent(150, 120))
        assert state.pan == (50, 20)
        assert state.moved is True

    def test_pan_continues_from_previous_offset(self):
        state = InteractionState(transform=ViewTransform(pan_x=10, pan_y=10))
        state = pointer_down(state, PointerEvent(0, 0))
        state = pointer_move(state, PointerEvent(5, -5))
        assert state.pan == (15, 5)

    def test_small_jitter_is_not_a_drag(self):
        state = pointer_down(InteractionState(), PointerEvent(100, 100))
        state = pointer_move(state, PointerEvent(102, 101))
        assert state.moved is False

    def test_drag_is_measured_from_pointer_down(self):
        state = pointer_down(InteractionState(), PointerEvent(100, 100))
        for x in (101, 102, 103, 104):
            state = pointer_move(state, PointerEvent(x, 100))
        assert state.moved is True

    def test_returning_to_start_still_counts_as_drag(self):
        state = pointer_down(InteractionState(), PointerEvent(100, 100))
        state = pointer_move(state, PointerEvent(120, 100))
        state = pointer_move(state, PointerEvent(100, 100))
        assert state.moved is True
        assert state.pan == (0, 0)

    def test_click_after_drag_is_ignored(self, sample_points, canvas):
        state = pointer_down(InteractionState(), PointerEvent(50, 50))
        state = pointer_move(state, PointerEvent(60, 50))
        state = pointer_up(state)
        assert state.mode is PointerMode.IDLE
        # "b" is now on screen at (110, 80)
        assert click(state, PointerEvent(110, 80), sample_points, canvas) is None

    def test_click_without_drag_selects(self, sample_points, canvas):
        state = pointer_down(InteractionState(), PointerEvent(100, 80))
        state = pointer_move(state, PointerEvent(101, 81))
        state = pointer_up(state)
        assert click(state, PointerEvent(101, 81), sample_points, canvas) == "b"

    def test_next_press_resets_moved(self):
        state = pointer_down(InteractionState(), PointerEvent(0, 0))
        state = pointer_up(pointer_move(state, PointerEvent(30, 0)))
        assert pointer_down(state, PointerEvent(0, 0)).moved is False


class TestHover:
    def test_hover_tracks_point(self, sample_points, canvas):
        state = pointer_move(InteractionState(), PointerEvent(100, 80), sample_points, canvas)
        assert state.hovered_id == "b"
        state = pointer_move(state, PointerEvent(5, 5), sample_points, canvas)
        assert state.hovered_id is None

    def test_unchanged_hover_returns_same_state(self, sample_points, canvas):
        state = pointer_move(InteractionState(), PointerEvent(100, 80), sample_points, canvas)
        assert pointer_move(state, PointerEvent(101, 80), sample_points, canvas) is state

    def test_no_hover_while_panning(self, sample_points, canvas):
        state = pointer_down(InteractionState(), PointerEvent(0, 0))
        state = pointer_move(state, PointerEvent(100, 80), sample_points, canvas)
        assert state.hovered_id is None

    def test_leave_clears_hover_and_pan(self, sample_points, canvas):
        state = pointer_move(InteractionState(), PointerEvent(100, 80), sample_points, canvas)
        state = pointer_leave(pointer_down(state, PointerEvent(100, 80)))
        assert state.hovered_id is None
        assert state.mode is PointerMode.IDLE

    def test_tooltip_shows_first_three_tags(self, sample_points):
        tip = tooltip_for(sample_points[0])
        assert tip.title == "Alpha"
        assert tip.tags == ("x", "y", "z")
        assert tip.connection_count == 2

    def test_tooltip_without_count(self):
        assert tooltip_for(HeatmapPoint(id="q", x=0, y=0)).connection_count == 0


class TestButtons:
    def test_zoom_in_and_out_steps(self):
        state = zoom_in(InteractionState())
        assert state.zoom == pytest.approx(1.3)
        assert zoom_out(state).zoom == pytest.approx(1.0)

    def test_buttons_respect_limits(self):
        state = InteractionState()
        for _ in range(20):
            state = zoom_in(state)
        assert state.zoom == 5.0
        for _ in range(40):
            state = zoom_out(state)
        assert state.zoom == 0.5

    def test_reset(self):
        state = InteractionState(transform=ViewTransform(3.0, 12.0, -4.0))
        assert reset_view(state).transform == ViewTransform()


class TestController:
    @pytest.fixture
    def recorded(self, sample_points, canvas):
        events = {"click": [], "hover": [], "view": []}
        controller = HeatmapController(
            sample_points,
            canvas,
            on_click=events["click"].append,
            on_hover=events["hover"].append,
            on_view_change=events["view"].append,
        )
        return controller, events

    def test_hover_and_click(self, recorded):
        controller, events = recorded
        controller.pointer_move(100, 80)
        controller.pointer_move(101, 80)
        assert events["hover"] == ["b"]
        assert controller.tooltip().title == "Beta"

        controller.pointer_down(100, 80)
        controller.pointer_up(100, 80)
        assert controller.click(100, 80) == "b"
        assert events["click"] == ["b"]
        assert events["view"] == []

    def test_drag_suppresses_click(self, recorded):
        controller, events = recorded
        controller.pointer_down(10, 10)
        controller.pointer_move(60, 10)
        controller.pointer_up(60, 10)
        assert controller.transform == ViewTransform(pan_x=50, pan_y=0)
        assert controller.click(150, 80) is None
        assert events["click"] == []
        assert len(events["view"]) == 1

    def test_wheel_and_buttons_notify_view_change(self, recorded):
        controller, events = recorded
        controller.wheel(100, 80, -100)
        controller.zoom_in()
        controller.reset_view()
        assert [t.zoom for t in events["view"]] == [
            pytest.approx(1.2), pytest.approx(1.56), 1.0
        ]

    def test_leave_clears_hover(self, recorded):
        controller, events = recorded
        controller.pointer_move(100, 80)
        controller.pointer_leave()
        assert events["hover"] == ["b", None]
        assert controller.tooltip() is None

    def test_replacing_points_drops_stale_hover(self, recorded, sample_points):
        controller, events = recorded
        controller.pointer_move(100, 80)
        controller.set_points([p for p in sample_points if p.id != "b"])
        assert events["hover"] == ["b", None]
        assert controller.hovered_point() is None

    def test_resize_moves_points(self, recorded):
        controller, _ = recorded
        controller.resize((400, 320))
        assert controller.canvas == CanvasSize(400, 320)
        assert controller.click(200, 160) == "b"

    def test_without_index(self, sample_points, canvas):
        controller = HeatmapController(sample_points, canvas, use_index=False)
        assert controller.click(100, 80) == "b"
