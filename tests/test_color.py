"""Tests for the coloring stage."""

import numpy as np
import pytest

from perturbzoom.model import ColorParams
from perturbzoom.stages.color import colorize, colorize_image, hsv_to_rgb


def escape_buffers(n=64, seed=3):
    rng = np.random.default_rng(seed)
    step = rng.integers(-1, 120, size=n).astype(np.int64)
    trap = rng.uniform(0.0, 4.0, size=n)
    radius = rng.uniform(1001.0, 1e5, size=n)
    dradius = rng.uniform(1e-3, 1e6, size=n)
    return step, trap, radius, dradius


class TestColorize:
    """Tests for colorize."""

    def test_idempotent(self):
        """Same inputs should give byte-identical output."""
        bufs = escape_buffers()
        params = ColorParams(color_frequency=2.5, color_offset=0.3, misc=0.4)
        a = colorize(*bufs, params, 100, 12.0)
        b = colorize(*bufs, params, 100, 12.0)

        assert a.dtype == np.uint8
        assert a.shape == (64, 4)
        assert a.tobytes() == b.tobytes()

    def test_inputs_untouched(self):
        bufs = escape_buffers()
        copies = [b.copy() for b in bufs]
        colorize(*bufs, ColorParams(), 100, 0.0)
        for original, copy in zip(bufs, copies):
            np.testing.assert_array_equal(original, copy)

    def test_alpha_opaque(self):
        rgba = colorize(*escape_buffers(), ColorParams(), 100, 0.0)
        assert np.all(rgba[:, 3] == 255)

    def test_zero_glow_ignores_derivative(self):
        """With glow_intensity 0 the derivative must not matter, even non-finite."""
        step, trap, radius, _ = escape_buffers(n=6)
        step[:] = 10
        params = ColorParams(glow_intensity=0.0)
        outputs = [
            colorize(step, trap, radius, dradius, params, 100, 50.0)
            for dradius in (
                np.full(6, 1.0),
                np.full(6, 1e-300),
                np.full(6, 1e300),
                np.array([0.0, np.nan, np.inf, -np.inf, 1.0, 2.0]),
            )
        ]
        for out in outputs[1:]:
            assert out.tobytes() == outputs[0].tobytes()

    def test_glow_changes_value(self):
        step, trap, radius, _ = escape_buffers(n=4)
        step[:] = 10
        near = colorize(step, trap, radius, np.full(4, 1e6), ColorParams(), 100, 0.0)
        far = colorize(step, trap, radius, np.full(4, 1e-3), ColorParams(), 100, 0.0)
        assert near.tobytes() != far.tobytes()

    def test_non_finite_derivative_is_clamped(self):
        step = np.array([5, 6], dtype=np.int64)
        rgba = colorize(step, np.ones(2), np.full(2, 2000.0), np.array([np.nan, 0.0]), ColorParams(), 100, 3.0)
        assert rgba.shape == (2, 4)

    def test_interior_grey(self):
        step = np.array([-1, 150], dtype=np.int64)
        trap = np.array([0.16, 0.16])
        rgba = colorize(step, trap, np.zeros(2), np.zeros(2), ColorParams(brightness=2.0, internal_brightness=0.5), 100, 0.0)

        for pixel in rgba:
            assert pixel[0] == pixel[1] == pixel[2] == 102
            assert pixel[3] == 255

    def test_interior_infinite_trap_is_black(self):
        rgba = colorize(np.array([-1]), np.array([np.inf]), np.zeros(1), np.zeros(1), ColorParams(), 10, 0.0)
        assert tuple(rgba[0]) == (0, 0, 0, 255)

    def test_trap_blend_darkens(self):
        step = np.array([20], dtype=np.int64)
        args = (np.array([0.01]), np.array([5000.0]), np.array([1e8]))
        plain = colorize(step, *args, ColorParams(misc=0.0), 100, 0.0)
        blended = colorize(step, *args, ColorParams(misc=1.0), 100, 0.0)
        assert int(blended[0, :3].max()) < int(plain[0, :3].max())

    def test_image_shape(self):
        step, trap, radius, dradius = escape_buffers(n=12)
        image = colorize_image(step, trap, radius, dradius, ColorParams(), 100, 0.0, width=4, height=3)
        assert image.shape == (3, 4, 4)


class TestOutline:
    """Exterior pixels within outline_width pixels of the set take the outline colour."""

    def outlined(self, **overrides):
        values = dict(outline_width=2.0, outline_red=1.0, outline_green=0.0, outline_blue=0.0)
        values.update(overrides)
        return ColorParams(**values)

    def test_tints_pixels_near_the_boundary(self):
        step = np.array([10, 10, -1], dtype=np.int64)
        trap = np.array([0.5, 0.5, 0.09])
        radius = np.full(3, 2000.0)
        dradius = np.array([1e8, 1.0, 0.0])
        plain = colorize(step, trap, radius, dradius, ColorParams(), 100, 0.0, width=100)
        outlined = colorize(step, trap, radius, dradius, self.outlined(), 100, 0.0, width=100)

        assert outlined[0, 0] >= 250
        assert outlined[0, 1] <= 2 and outlined[0, 2] <= 2
        assert outlined[1].tobytes() == plain[1].tobytes()
        assert outlined[2].tobytes() == plain[2].tobytes()

    def test_opacity_scales_blend(self):
        step = np.array([10], dtype=np.int64)
        args = (np.array([0.5]), np.array([2000.0]), np.array([1e8]))
        full = colorize(step, *args, self.outlined(outline_green=1.0, outline_blue=1.0), 100, 0.0, width=100)
        faint = colorize(step, *args, self.outlined(outline_green=1.0, outline_blue=1.0, outline_opacity=0.1),
                         100, 0.0, width=100)
        assert int(full[0, :3].min()) > int(faint[0, :3].min())

    def test_threshold_follows_zoom(self):
        """The same distance estimate is inside the outline when zoomed out, outside when zoomed in."""
        step = np.array([10], dtype=np.int64)
        args = (np.array([0.5]), np.array([2000.0]), np.array([1e7]))
        shallow = colorize(step, *args, self.outlined(), 100, 0.0, width=100)
        deep = colorize(step, *args, self.outlined(), 100, 40.0, width=100)
        plain_deep = colorize(step, *args, ColorParams(), 100, 40.0, width=100)

        assert shallow[0, 0] >= 250
        assert deep.tobytes() == plain_deep.tobytes()

    def test_needs_width(self):
        with pytest.raises(ValueError):
            colorize(np.array([5]), np.ones(1), np.full(1, 2000.0), np.ones(1), self.outlined(), 100, 0.0)

    def test_image_passes_width(self):
        step, trap, radius, dradius = escape_buffers(n=12)
        image = colorize_image(step, trap, radius, dradius, self.outlined(), 100, 0.0, width=4, height=3)
        assert image.shape == (3, 4, 4)


class TestHsvToRgb:
    """Tests for the six-sector conversion."""

    def test_primary_sectors(self):
        hue = np.array([0.0, 1.0 / 3.0, 2.0 / 3.0])
        rgb = hsv_to_rgb(hue, 1.0, np.ones(3))

        np.testing.assert_allclose(rgb[0], [1.0, 0.0, 0.0], atol=1e-12)
        np.testing.assert_allclose(rgb[1], [0.0, 1.0, 0.0], atol=1e-12)
        np.testing.assert_allclose(rgb[2], [0.0, 0.0, 1.0], atol=1e-12)

    def test_zero_saturation_is_grey(self):
        rgb = hsv_to_rgb(np.array([0.3, 0.8]), 0.0, np.array([0.5, 0.25]))
        np.testing.assert_allclose(rgb, [[0.5] * 3, [0.25] * 3])

    def test_non_finite_hue_is_black(self):
        rgb = hsv_to_rgb(np.array([np.nan, np.inf, -np.inf]), 1.0, np.ones(3))
        assert not np.any(rgb)
