from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor
from typing import Optional, Tuple

import numpy as np
from mpmath import mpc, workdps

from perturbzoom.model import ESCAPE_RADIUS_SQUARED, ImageRequest, Viewport
from perturbzoom.precision import probe_dps
from perturbzoom.util.logging_setup import get_logger, logging_initialiser
from perturbzoom.util.numeric import row_bands

_G = {}


def _init_worker(viewport: Viewport, max_iteration: int, dps: int, log_queue, log_level: int) -> None:
    _G["viewport"] = viewport
    _G["max_iteration"] = max_iteration
    _G["dps"] = dps
    logging_initialiser(log_queue, log_level)


def escape_step(c: mpc, max_iteration: int) -> int:
    """First n with ``|z_n|**2`` past the escape radius, or -1."""
    z = mpc(0)
    for n in range(max_iteration):
        if z.real * z.real + z.imag * z.imag > ESCAPE_RADIUS_SQUARED:
            return n
        z = z * z + c
    return -1


def _render_band(y0_y1: Tuple[int, int]) -> Tuple[int, np.ndarray]:
    y0, y1 = y0_y1
    viewport = _G["viewport"]
    max_iteration = _G["max_iteration"]
    dps = _G["dps"]
    logger = get_logger("reference")

    band = np.full((y1 - y0, viewport.width), -1, dtype=np.int64)
    with workdps(dps):
        for yi, y in enumerate(range(y0, y1)):
            for x in range(viewport.width):
                re, im = viewport.pixel_to_complex(x + 0.5, y + 0.5, dps)
                band[yi, x] = escape_step(mpc(re, im), max_iteration)
    logger.debug("Reference band %s..%s done", y0, y1)
    return y0, band


def reference_escape_steps(
    request: ImageRequest,
    *,
    processes: Optional[int] = None,
    dps: Optional[int] = None,
    band_height: int = 8,
    log_queue=None,
    log_level: int = 20,
) -> np.ndarray:
    """Escape step per pixel (flat, row-major, ``-1`` interior) by direct iteration.

    Slow; meant for cross-checking the perturbation result on small grids.
    ``processes=1`` runs in the calling process.
    """
    logger = get_logger("reference")
    vp = request.viewport
    cap = int(request.max_iteration)
    dps = dps or probe_dps(vp.zoom, cap)
    logger.info("Reference start %sx%s zoom=%s cap=%s dps=%s", vp.width, vp.height, vp.zoom, cap, dps)

    steps = np.full((vp.height, vp.width), -1, dtype=np.int64)
    bands = row_bands(vp.height, band_height)
    initargs = (vp, cap, dps, log_queue, log_level)

    if processes == 1:
        # Already logging through the parent handlers.
        _init_worker(vp, cap, dps, None, log_level)
        for y0, band in map(_render_band, bands):
            steps[y0:y0 + band.shape[0]] = band
    else:
        with ProcessPoolExecutor(max_workers=processes, initializer=_init_worker, initargs=initargs) as pool:
            for y0, band in pool.map(_render_band, bands):
                steps[y0:y0 + band.shape[0]] = band

    logger.info("Reference done escaped=%s/%s", int(np.count_nonzero(steps >= 0)), steps.size)
    return steps.reshape(-1)
