import pytest

from perturbzoom.model import ColorParams, ImageRequest, Viewport
from perturbzoom.pipeline import PipelineCoordinator, PipelineSettings


@pytest.fixture
def make_request():
    def _make(width=16, height=12, center=("-0.75", "0.1"), zoom=-1.0, max_iteration=100, tier=None, **colors):
        viewport = Viewport(width=width, height=height, center_re=center[0], center_im=center[1], zoom=zoom)
        return ImageRequest(
            viewport=viewport,
            max_iteration=max_iteration,
            color_params=ColorParams(**colors),
            precision_tier=tier,
        )
    return _make


@pytest.fixture
def coordinator():
    return PipelineCoordinator(PipelineSettings(backend="numpy", batch_iterations=40))
