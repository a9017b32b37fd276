"""Knowledge heat map: projection, layout, density rendering and interaction."""

from noteatlas.heatmap.density import DensitySettings, HeatmapRenderer, render
from noteatlas.heatmap.interaction import (
    HeatmapController,
    InteractionSettings,
    InteractionState,
    hit_test,
)
from noteatlas.heatmap.layout import normalize
from noteatlas.heatmap.projection import ProjectionEngine, ProjectionSettings, project

__all__ = [
    "DensitySettings",
    "HeatmapController",
    "HeatmapRenderer",
    "InteractionSettings",
    "InteractionState",
    "ProjectionEngine",
    "ProjectionSettings",
    "hit_test",
    "normalize",
    "project",
    "render",
]
