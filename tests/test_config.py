# tests/test_config.py
"""Tests for AtlasConfig and the settings objects derived from it."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from noteatlas.config import AtlasConfig
from noteatlas.heatmap.density import DensitySettings
from noteatlas.heatmap.interaction import InteractionSettings
from noteatlas.heatmap.projection import ProjectionSettings


class TestDefaults:
    def test_defaults_match_settings_objects(self):
        cfg = AtlasConfig()
        assert cfg.density_settings() == DensitySettings()
        assert cfg.interaction_settings() == InteractionSettings()
        assert ProjectionSettings.from_config(cfg) == ProjectionSettings()

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("NOTEATLAS_HIT_RADIUS", "20")
        monkeypatch.setenv("NOTEATLAS_SAMPLE_STRIDE", "1")
        monkeypatch.setenv("NOTEATLAS_PROJECTION_RANDOM_STATE", "none")
        cfg = AtlasConfig()
        assert cfg.interaction_settings().hit_radius == 20.0
        assert cfg.density_settings().sample_stride == 1
        assert cfg.projection_random_state is None

    def test_in_memory_flag(self, monkeypatch):
        monkeypatch.setenv("NOTEATLAS_IN_MEMORY_DB", "yes")
        assert AtlasConfig().get_db_url() == "sqlite:///:memory:"


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"layout_padding": 0.0},
            {"layout_padding": 0.5},
            {"render_padding": 0.6},
            {"sample_stride": 0},
            {"bandwidth_min": 80.0, "bandwidth_max": 70.0},
            {"min_zoom": 5.0, "max_zoom": 5.0},
            {"projection_max_neighbors": 1},
            {"embedding_dim": 0},
        ],
    )
    def test_rejects_impossible_values(self, overrides):
        with pytest.raises(ValidationError):
            AtlasConfig(**overrides)

    def test_blocky_stride_warns(self, caplog):
        AtlasConfig(sample_stride=12)
        assert "blocky" in caplog.text


class TestPaths:
    def test_relative_database_path_uses_base_dir(self, temp_dir):
        cfg = AtlasConfig(base_dir=temp_dir, database_path=Path("db/atlas.db"), in_memory_db=False)
        assert cfg.get_db_url() == f"sqlite:///{temp_dir / 'db' / 'atlas.db'}"
        assert (temp_dir / "db").is_dir()

    def test_absolute_path_kept(self, temp_dir):
        cfg = AtlasConfig(base_dir=Path("/elsewhere"))
        assert cfg.get_absolute_path(temp_dir) == temp_dir
