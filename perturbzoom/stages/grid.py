"""Per-pixel initial offsets (``delta_0``) from the probe point.

Offsets are built directly in the tier's representation: the small
centre-to-probe difference is taken once at full precision, and every pixel
offset is formed from a scale made with ``ldexp``. We never subtract two
full-precision pixel coordinates and cast the result down, which would cancel
away every significant digit at depth.

The stage only needs the probe *location*, so it can run alongside the probe
orbit. mpmath keeps its working precision in one process-wide context;
``base_offset`` is the only step that touches it, and the pixel fill given
its result is plain numpy.
"""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from mpmath import mpf, workdps

from perturbzoom.model import Viewport
from perturbzoom.precision import PrecisionTier, Strategy
from perturbzoom.util.logging_setup import get_logger
from perturbzoom.util.numeric import row_bands, to_longdouble


@dataclass(frozen=True, eq=False)
class DeltaGrid:
    re: np.ndarray
    im: np.ndarray
    tier: PrecisionTier
    width: int
    height: int

    def __len__(self) -> int:
        return int(self.re.shape[0])

    @property
    def dtype(self) -> np.dtype:
        return self.re.dtype


def _scale(zoom: float, dtype: np.dtype):
    whole = math.floor(zoom)
    frac = zoom - whole
    base = dtype.type(2.0) ** dtype.type(-frac)
    return dtype.type(np.ldexp(base, -int(whole)))


def base_offset(viewport: Viewport, probe: Tuple[str, str], tier: PrecisionTier, dps: int):
    """Offset of the viewport centre from the probe, in the tier dtype."""
    dtype = tier.dtype
    with workdps(dps):
        if tier.strategy is Strategy.DIRECT:
            d_re = mpf(viewport.center_re)
            d_im = mpf(viewport.center_im)
        else:
            d_re = mpf(viewport.center_re) - mpf(probe[0])
            d_im = mpf(viewport.center_im) - mpf(probe[1])
        return (
            np.array(to_longdouble(d_re)).astype(dtype)[()],
            np.array(to_longdouble(d_im)).astype(dtype)[()],
        )


def generate_delta_grid(
    viewport: Viewport,
    probe: Tuple[str, str],
    tier: PrecisionTier,
    dps: int,
    *,
    workers: int = 1,
    band_height: int = 64,
    base: Optional[Tuple[np.generic, np.generic]] = None,
) -> DeltaGrid:
    """Offsets for every pixel, row-major.

    ``base`` is ``base_offset(viewport, probe, tier, dps)`` when the caller has
    already taken it; the grid then does no mpmath work at all.
    """
    logger = get_logger("grid")
    dtype = tier.dtype
    t = dtype.type
    width, height = viewport.width, viewport.height
    logger.info("Grid start %sx%s tier=%s zoom=%s", width, height, tier.label, viewport.zoom)

    base_re, base_im = base if base is not None else base_offset(viewport, probe, tier, dps)
    scale = _scale(viewport.zoom, dtype)
    aspect = t(width) / t(height)
    cos_t = np.cos(t(viewport.rotation))
    sin_t = np.sin(t(viewport.rotation))

    u = ((np.arange(width, dtype=dtype) + t(0.5)) * t(2) / t(width) - t(1)) * scale

    out_re = np.empty((height, width), dtype=dtype)
    out_im = np.empty((height, width), dtype=dtype)

    def fill(band: Tuple[int, int]) -> None:
        y0, y1 = band
        rows = np.arange(y0, y1, dtype=dtype)
        v = ((rows + t(0.5)) * t(2) / t(height) - t(1)) * scale / aspect
        v = v[:, None]
        out_re[y0:y1] = base_re + (u * cos_t - v * sin_t)
        out_im[y0:y1] = base_im + (u * sin_t + v * cos_t)

    bands = row_bands(height, band_height)
    if workers > 1 and len(bands) > 1:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="grid") as pool:
            for _ in pool.map(fill, bands):
                pass
    else:
        for band in bands:
            fill(band)

    grid = DeltaGrid(re=out_re.reshape(-1), im=out_im.reshape(-1), tier=tier, width=width, height=height)
    logger.info("Grid done pixels=%s dtype=%s", len(grid), dtype.name)
    return grid
