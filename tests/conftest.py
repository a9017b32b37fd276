"""Common test fixtures for NoteAtlas."""

import tempfile
from pathlib import Path

import pytest

from tests.fakes import FakeEmbeddingProvider, RecordingReducerFactory, ScriptedReducer
from noteatlas.config import config
from noteatlas.models.db_models import init_db
from noteatlas.models.schema import CanvasSize, HeatmapPoint
from noteatlas.observability import MetricsCollector
from noteatlas.services.embedding_service import EmbeddingService
from noteatlas.services.graph_service import GraphService
from noteatlas.services.heatmap_service import HeatmapService
from noteatlas.services.note_service import NoteService
from noteatlas.storage.note_repository import NoteRepository


@pytest.fixture
def temp_dir():
    """Create a temporary directory for the database and logs."""
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def test_config(temp_dir, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "base_dir", temp_dir)
    monkeypatch.setattr(config, "database_path", temp_dir / "db" / "test_noteatlas.db")
    monkeypatch.setattr(config, "in_memory_db", False)
    yield config


@pytest.fixture(autouse=True)
def _embedding_dim(monkeypatch):
    """Match the configured embedding dimension to the 8-dim fake provider."""
    monkeypatch.setattr(config, "embedding_dim", 8)


@pytest.fixture(autouse=True)
def _isolated_metrics(temp_dir, monkeypatch):
    """Keep traced operations from writing to ~/.noteatlas/metrics.json."""
    collector = MetricsCollector(metrics_file=temp_dir / "metrics.json", auto_save_interval=0)
    monkeypatch.setattr("noteatlas.observability.metrics", collector)
    yield collector


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created."""
    engine = init_db("sqlite:///:memory:")
    yield engine
    engine.dispose()


@pytest.fixture
def note_repository(engine):
    """Create a test note repository."""
    return NoteRepository(engine)


@pytest.fixture
def fake_embedder():
    """Small deterministic embedder (8 dimensions)."""
    return FakeEmbeddingProvider(dim=8)


@pytest.fixture
def embedding_service(fake_embedder):
    service = EmbeddingService(fake_embedder)
    yield service
    service.shutdown()


@pytest.fixture
def note_service(note_repository, embedding_service):
    return NoteService(repository=note_repository, embedding_service=embedding_service)


@pytest.fixture
def graph_service(note_repository):
    return GraphService(note_repository, similarity_threshold=0.7, search_limit=5)


@pytest.fixture
def scripted_factory():
    """Reducer factory returning the first two embedding columns, doubled."""
    return RecordingReducerFactory(ScriptedReducer())


@pytest.fixture
def heatmap_service(note_repository, scripted_factory):
    return HeatmapService(note_repository, reducer_factory=scripted_factory)


@pytest.fixture
def canvas():
    return CanvasSize(200, 160)


@pytest.fixture
def sample_points():
    """Three connected notes and one loner, in normalized coordinates."""
    return [
        HeatmapPoint(id="a", x=0.2, y=0.3, title="Alpha", tags=("x", "y", "z", "w"),
                     related_ids=("b",), connection_count=2),
        HeatmapPoint(id="b", x=0.5, y=0.5, title="Beta", related_ids=("a", "c"),
                     connection_count=3),
        HeatmapPoint(id="c", x=0.8, y=0.4, title="Gamma", connection_count=1),
        HeatmapPoint(id="d", x=0.3, y=0.8, title="Delta", connection_count=0),
    ]
