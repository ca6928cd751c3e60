"""Cross-checks against direct mpmath iteration."""

import numpy as np
import pytest
from mpmath import mpc

from perturbzoom.pipeline import PipelineCoordinator, PipelineSettings
from perturbzoom.renderers.cpu_mpmath import escape_step, reference_escape_steps
from perturbzoom.stages.probe import compute_probe_orbit

DEEP = ("-0.743643887037151", "0.13182590420533")


def perturbed_steps(request):
    coordinator = PipelineCoordinator(PipelineSettings(backend="numpy"))
    frame = coordinator.render(request)
    assert frame is not None
    steps = coordinator.state.step.copy()
    steps[steps >= request.max_iteration] = -1
    return frame, steps


class TestEscapeStep:
    def test_matches_probe_length(self):
        orbit = compute_probe_orbit(("0.5", "0.0"), 100, 60)
        assert escape_step(mpc(0.5, 0), 100) == len(orbit)

    def test_interior(self):
        assert escape_step(mpc(-0.1, 0.1), 200) == -1


class TestReferenceAgreement:
    """Perturbed tiers agree with the full-precision reference."""

    def test_direct_tier(self, make_request):
        request = make_request(width=10, height=8, max_iteration=60, tier="raw-64")
        frame, steps = perturbed_steps(request)
        reference = reference_escape_steps(request, processes=1)

        assert reference.shape == steps.shape
        assert np.mean(steps != reference) <= 0.05

    @pytest.mark.parametrize("zoom,tier", [(20.0, "probed-64"), (60.0, None)])
    def test_deep_probe(self, make_request, zoom, tier):
        request = make_request(width=8, height=8, center=DEEP, zoom=zoom, max_iteration=200, tier=tier)
        frame, steps = perturbed_steps(request)
        reference = reference_escape_steps(request, processes=1)

        assert np.mean(steps != reference) <= 0.1

    def test_process_pool(self, make_request):
        request = make_request(width=6, height=5, max_iteration=40)
        in_process = reference_escape_steps(request, processes=1)
        pooled = reference_escape_steps(request, processes=2, band_height=2)

        np.testing.assert_array_equal(in_process, pooled)
