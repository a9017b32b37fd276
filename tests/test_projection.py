"""Tests for the projection engine."""
import logging
import math

import numpy as np
import pytest

from tests.fakes import FailingReducer, RecordingReducerFactory, ScriptedReducer
from noteatlas.exceptions import ErrorCode, ValidationError
from noteatlas.heatmap.layout import normalize
from noteatlas.heatmap.projection import (
    ProjectionEngine,
    ProjectionSettings,
    embedding_matrix,
    fallback_projection,
    neighbor_count,
    project,
    project_vectors,
)
from noteatlas.models.schema import ProjectablePoint


def _points(vectors):
    return [ProjectablePoint(id=f"n{i}", vector=v) for i, v in enumerate(vectors)]


class TestNeighborCount:
    """The neighbour parameter adapts to batch size."""

    @pytest.mark.parametrize(
        "n, expected",
        [(2, 2), (3, 2), (4, 2), (5, 2), (6, 3), (10, 5), (30, 15), (31, 15), (1000, 15)],
    )
    def test_neighbor_count(self, n, expected):
        assert neighbor_count(n) == expected

    def test_never_exceeds_half_the_batch_beyond_minimum(self):
        for n in range(2, 100):
            k = neighbor_count(n)
            assert 2 <= k <= 15
            assert k <= max(2, n // 2)

    def test_engine_passes_neighbor_count_to_factory(self):
        factory = RecordingReducerFactory(ScriptedReducer())
        engine = ProjectionEngine(reducer_factory=factory)
        engine.project(_points([[float(i), 0.0, 1.0] for i in range(8)]))
        assert factory.neighbor_counts == [4]


class TestDegenerateBatches:
    """0 and 1 points never reach the reducer."""

    def test_empty_batch(self):
        factory = RecordingReducerFactory(FailingReducer())
        assert project([], reducer_factory=factory) == []
        assert factory.neighbor_counts == []

    def test_single_point_is_centred(self):
        factory = RecordingReducerFactory(FailingReducer())
        result = project(_points([[3.0, -7.0, 2.0]]), reducer_factory=factory)
        assert len(result) == 1
        assert (result[0].x, result[0].y) == (0.5, 0.5)
        assert result[0].id == "n0"
        assert factory.neighbor_counts == []

    def test_single_point_normalizes_to_centre(self):
        planar = project(_points([[1.0, 2.0]]))
        normalized = normalize(planar, padding=0.1)
        assert (normalized[0].x, normalized[0].y) == (0.5, 0.5)


class TestReducerPath:
    def test_output_is_index_aligned(self):
        coords = [[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]
        result = project(
            _points([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]]),
            reducer_factory=lambda k: ScriptedReducer(coords),
        )
        assert [p.id for p in result] == ["n0", "n1", "n2"]
        assert [(p.x, p.y) for p in result] == [(1.0, 2.0), (3.0, 4.0), (5.0, 6.0)]

    def test_reducer_receives_float_matrix(self):
        reducer = ScriptedReducer()
        project(_points([[1, 2, 3], [4, 5, 6]]), reducer_factory=lambda k: reducer)
        assert reducer.last_input.dtype == np.float64
        assert reducer.last_input.shape == (2, 3)

    def test_engine_reports_no_fallback_on_success(self):
        engine = ProjectionEngine(reducer_factory=lambda k: ScriptedReducer())
        engine.project(_points([[0.0, 1.0], [1.0, 0.0]]))
        assert engine.last_used_fallback is False

    def test_project_vectors_returns_pairs(self):
        pairs = project_vectors([[0.5, 0.25], [1.0, 2.0]],
                                reducer_factory=lambda k: ScriptedReducer())
        assert pairs == [(1.0, 0.5), (2.0, 4.0)]


class TestFallback:
    """A failing reducer degrades to the first two dimensions times 1000."""

    def test_reducer_exception_uses_fallback(self, caplog):
        vectors = [[0.1, 0.2, 9.0], [0.3, -0.4, 9.0], [0.0, 0.5, 9.0]]
        engine = ProjectionEngine(reducer_factory=lambda k: FailingReducer())
        with caplog.at_level(logging.WARNING, logger="noteatlas.projection"):
            result = engine.project(_points(vectors))

        assert engine.last_used_fallback is True
        for point, vector in zip(result, vectors):
            assert point.x == pytest.approx(vector[0] * 1000)
            assert point.y == pytest.approx(vector[1] * 1000)
        assert any("fallback" in r.getMessage() for r in caplog.records)

    def test_factory_exception_uses_fallback(self):
        def broken_factory(k):
            raise ImportError("umap not installed")

        result = project(_points([[1.0, 2.0], [3.0, 4.0]]), reducer_factory=broken_factory)
        assert [(p.x, p.y) for p in result] == [(1000.0, 2000.0), (3000.0, 4000.0)]

    def test_non_finite_reducer_output_uses_fallback(self):
        coords = [[0.0, np.nan], [1.0, 1.0]]
        result = project(_points([[1.0, 1.0], [2.0, 2.0]]),
                         reducer_factory=lambda k: ScriptedReducer(coords))
        assert [(p.x, p.y) for p in result] == [(1000.0, 1000.0), (2000.0, 2000.0)]

    def test_wrong_shape_reducer_output_uses_fallback(self):
        result = project(_points([[1.0, 1.0], [2.0, 2.0]]),
                         reducer_factory=lambda k: ScriptedReducer([[1.0, 2.0, 3.0]]))
        assert [(p.x, p.y) for p in result] == [(1000.0, 1000.0), (2000.0, 2000.0)]

    def test_fallback_recorded_in_metrics(self, _isolated_metrics):
        project(_points([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]),
                reducer_factory=lambda k: FailingReducer())
        project(_points([[1.0, 2.0], [3.0, 4.0]]),
                reducer_factory=lambda k: ScriptedReducer())

        recorded = _isolated_metrics.get_metrics()["project"]
        assert recorded["count"] == 2
        assert recorded["fallback_count"] == 1
        assert recorded["points_total"] == 5

    def test_huge_finite_vectors_stay_finite(self):
        engine = ProjectionEngine(reducer_factory=lambda k: FailingReducer())
        result = engine.project(_points([[1e306, 0.0], [-1e306, 1.0]]))

        assert engine.last_used_fallback is True
        limit = np.finfo(np.float64).max
        assert [(p.x, p.y) for p in result] == [(limit, 0.0), (-limit, 1000.0)]

        normalized = normalize(result)
        assert normalized[0].x == pytest.approx(0.9)
        assert normalized[1].x == pytest.approx(0.1)
        assert normalized[0].y == pytest.approx(0.1)
        assert normalized[1].y == pytest.approx(0.9)

    def test_one_dimensional_vectors_read_missing_dimension_as_zero(self):
        coords = fallback_projection(np.array([[0.5], [-0.25]]))
        assert coords.tolist() == [[500.0, 0.0], [-250.0, 0.0]]

    def test_custom_fallback_scale(self):
        engine = ProjectionEngine(
            ProjectionSettings(fallback_scale=10.0), reducer_factory=lambda k: FailingReducer()
        )
        result = engine.project(_points([[1.0, 2.0], [3.0, 4.0]]))
        assert (result[1].x, result[1].y) == (30.0, 40.0)


class TestInputValidation:
    def test_ragged_vectors_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            project(_points([[1.0, 2.0], [1.0, 2.0, 3.0]]))
        assert exc_info.value.code == ErrorCode.RAGGED_VECTORS

    def test_empty_vectors_rejected(self):
        with pytest.raises(ValidationError):
            embedding_matrix(_points([[], []]))

    def test_non_finite_vectors_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            project(_points([[1.0, float("nan")], [1.0, 2.0]]))
        assert exc_info.value.code == ErrorCode.NON_FINITE_INPUT

    def test_validation_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            project(_points([[1.0], [1.0, 2.0]]))


class TestNeverThrows:
    """Any finite rectangular batch yields N numeric points."""

    @pytest.mark.parametrize("n", [0, 1, 2, 3, 7])
    @pytest.mark.parametrize("reducer", [ScriptedReducer, FailingReducer])
    def test_returns_n_finite_points(self, n, reducer):
        rng = np.random.default_rng(n)
        vectors = rng.normal(size=(n, 5)).tolist()
        result = project(_points(vectors), reducer_factory=lambda k: reducer())
        assert len(result) == n
        assert all(math.isfinite(p.x) and math.isfinite(p.y) for p in result)

    def test_identical_vectors(self):
        result = project(_points([[1.0, 1.0]] * 4), reducer_factory=lambda k: FailingReducer())
        assert len(result) == 4


class TestRoundTrip:
    """Projection then normalization of three distinct embeddings."""

    def test_three_points_stay_inside_and_distinct(self):
        vectors = [[0.0, 0.0, 0.0, 0.0], [1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0]]
        planar = project(_points(vectors), reducer_factory=lambda k: FailingReducer())
        normalized = normalize(planar, padding=0.1)

        for p in normalized:
            assert 0.0 < p.x < 1.0 and 0.0 < p.y < 1.0
            assert 0.1 <= p.x <= 0.9 and 0.1 <= p.y <= 0.9
        coords = {(p.x, p.y) for p in normalized}
        assert len(coords) == 3

        # Distance ordering from the origin note is preserved
        raw = {p.id: np.array([p.x, p.y]) for p in planar}
        norm = {p.id: np.array([p.x, p.y]) for p in normalized}
        raw_d = np.linalg.norm(raw["n1"] - raw["n0"]) - np.linalg.norm(raw["n2"] - raw["n0"])
        norm_d = np.linalg.norm(norm["n1"] - norm["n0"]) - np.linalg.norm(norm["n2"] - norm["n0"])
        assert raw_d == pytest.approx(norm_d, abs=1e-9)


@pytest.mark.slow
class TestRealUmap:
    def test_umap_projects_small_batch(self):
        pytest.importorskip("umap")
        rng = np.random.default_rng(0)
        vectors = np.vstack([
            rng.normal(0.0, 0.05, size=(10, 16)),
            rng.normal(3.0, 0.05, size=(10, 16)),
        ]).tolist()
        result = ProjectionEngine().project(_points(vectors))
        assert len(result) == 20
        assert all(math.isfinite(p.x) and math.isfinite(p.y) for p in result)
