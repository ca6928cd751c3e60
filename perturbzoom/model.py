"""Value types shared by the pipeline stages."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
from mpmath import mp, mpc, mpf, workdps

from perturbzoom.precision import PrecisionTier

ESCAPE_RADIUS = 1000.0
ESCAPE_RADIUS_SQUARED = ESCAPE_RADIUS * ESCAPE_RADIUS


@dataclass(frozen=True)
class Viewport:
    """The visible region of the plane.

    The centre is kept as decimal strings so that it is exact at any depth;
    callers parse it at the working precision they need. ``zoom`` is a log2
    magnitude, the half-width of the view being ``2**-zoom``.
    """

    width: int
    height: int
    center_re: str = "-0.5"
    center_im: str = "0.0"
    zoom: float = -2.0
    rotation: float = 0.0

    def __post_init__(self):
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise ValueError("viewport width/height must be positive.")
        if not (math.isfinite(self.zoom) and math.isfinite(self.rotation)):
            raise ValueError("viewport zoom/rotation must be finite.")
        # Fail early on unparsable coordinates.
        mpf(self.center_re)
        mpf(self.center_im)

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    def scale(self, dps: int = 30) -> mpf:
        with workdps(dps):
            return mpf(2) ** mpf(-self.zoom)

    def center(self, dps: int) -> mpc:
        with workdps(dps):
            return mpc(mpf(self.center_re), mpf(self.center_im))

    def pixel_to_complex(self, x: float, y: float, dps: int) -> Tuple[mpf, mpf]:
        """Plane coordinates of viewport position (x, y), in pixels."""
        with workdps(dps):
            scale = self.scale(dps)
            u = (mpf(x) / self.width * 2 - 1) * scale
            v = (mpf(y) / self.height * 2 - 1) * scale / self.aspect_ratio
            cos_t = mp.cos(self.rotation)
            sin_t = mp.sin(self.rotation)
            re = mpf(self.center_re) + u * cos_t - v * sin_t
            im = mpf(self.center_im) + u * sin_t + v * cos_t
            return +re, +im


@dataclass(frozen=True)
class ColorParams:
    saturation: float = 1.0
    color_frequency: float = 1.0
    color_offset: float = 0.0
    glow_spread: float = 1.0
    glow_intensity: float = 1.0
    brightness: float = 2.0
    internal_brightness: float = 0.5
    misc: float = 0.0
    # Boundary outline: width in pixels (0 disables), RGB in [0, 1], opacity.
    outline_width: float = 0.0
    outline_red: float = 0.0
    outline_green: float = 0.0
    outline_blue: float = 0.0
    outline_opacity: float = 1.0


@dataclass(frozen=True)
class ImageRequest:
    viewport: Viewport
    max_iteration: int = 1000
    color_params: ColorParams = field(default_factory=ColorParams)
    probe_override: Optional[Tuple[str, str]] = None
    precision_tier: Optional[PrecisionTier] = None

    def __post_init__(self):
        if int(self.max_iteration) < 1:
            raise ValueError("max_iteration must be >= 1.")
        if self.precision_tier is not None:
            object.__setattr__(self, "precision_tier", PrecisionTier.parse(self.precision_tier))

    @property
    def probe_location(self) -> Tuple[str, str]:
        if self.probe_override is not None:
            return (str(self.probe_override[0]), str(self.probe_override[1]))
        return (self.viewport.center_re, self.viewport.center_im)


@dataclass(frozen=True, eq=False)
class Frame:
    """A finished colour buffer and the generation it belongs to."""

    generation: int
    rgba: np.ndarray
    request: ImageRequest
    tier: PrecisionTier
    escaped_pixels: int = 0

    @property
    def image_array(self) -> np.ndarray:
        vp = self.request.viewport
        return self.rgba.reshape(vp.height, vp.width, 4)
