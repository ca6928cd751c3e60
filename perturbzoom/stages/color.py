"""Colour buffers from escape data.

Pure numpy; the same inputs always give the same bytes, so a colour-only
change never has to touch the iteration buffers.
"""

from __future__ import annotations

import math
from typing import Optional

import numpy as np

from perturbzoom.model import ColorParams

_TINY = 1e-300
_LN2 = math.log(2.0)


def _smooth_steps(step: np.ndarray, radius: np.ndarray) -> np.ndarray:
    r = np.maximum(radius, math.e)
    smooth = step.astype(np.float64) + 1.0 - np.log(np.log(r)) / _LN2
    return np.maximum(smooth, 1.0)


def _log_distance(radius: np.ndarray, dradius: np.ndarray) -> np.ndarray:
    """Natural log of the exterior distance estimate ``0.5 ln|Y| |Y| / |Y'|``."""
    dr = np.where(np.isfinite(dradius), np.maximum(dradius, _TINY), _TINY)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        return np.log(0.5 * np.log(radius) * radius) - np.log(dr)


def _glow(radius: np.ndarray, dradius: np.ndarray, params: ColorParams, zoom: float) -> np.ndarray:
    if params.glow_intensity == 0:
        return np.zeros_like(radius)
    with np.errstate(invalid="ignore", over="ignore"):
        raw = params.glow_intensity * (-_log_distance(radius, dradius) - zoom + params.glow_spread)
    raw = np.nan_to_num(raw, nan=0.0, posinf=50.0, neginf=-50.0)
    return np.tanh(raw)


def _outline_weight(radius, dradius, params: ColorParams, zoom: float, width: int) -> np.ndarray:
    """Blend weight of the outline colour, 1 on the boundary fading to 0 at ``outline_width`` pixels."""
    # Pixel spacing is 2 * 2**-zoom / width; kept in log space for deep zooms.
    log_limit = math.log(params.outline_width) + (1.0 - zoom) * _LN2 - math.log(width)
    log_de = np.nan_to_num(_log_distance(radius, dradius), nan=np.inf, posinf=np.inf, neginf=-np.inf)
    ratio = np.exp(np.minimum(log_de - log_limit, 1.0))
    return np.clip(params.outline_opacity, 0.0, 1.0) * np.clip(1.0 - ratio, 0.0, 1.0)


def hsv_to_rgb(hue: np.ndarray, saturation, value: np.ndarray) -> np.ndarray:
    """Six-sector HSV to RGB in [0, 1]; a non-finite hue maps to black."""
    finite = np.isfinite(hue)
    h = np.where(finite, hue, 0.0)
    s = np.broadcast_to(np.clip(saturation, 0.0, 1.0), h.shape)
    v = np.where(finite, value, 0.0)

    h6 = h * 6.0
    sector = np.floor(h6)
    f = h6 - sector
    sector = np.mod(sector.astype(np.int64), 6)
    p = v * (1.0 - s)
    q = v * (1.0 - s * f)
    t = v * (1.0 - s * (1.0 - f))

    rgb = np.empty(h.shape + (3,), dtype=np.float64)
    choices = [
        (v, t, p),
        (q, v, p),
        (p, v, t),
        (p, q, v),
        (t, p, v),
        (v, p, q),
    ]
    for channel in range(3):
        rgb[..., channel] = np.select([sector == k for k in range(6)], [c[channel] for c in choices])
    return rgb


def colorize(
    step: np.ndarray,
    trap: np.ndarray,
    radius: np.ndarray,
    dradius: np.ndarray,
    params: ColorParams,
    max_iteration: int,
    zoom: float,
    *,
    width: Optional[int] = None,
) -> np.ndarray:
    """RGBA (``uint8[n, 4]``) for flat escape buffers.

    ``width`` is the image width in pixels; the boundary outline needs it to
    turn ``outline_width`` into plane units.
    """
    if params.outline_width > 0 and not width:
        raise ValueError("an outline needs the image width")
    n = step.shape[0]
    trap = np.asarray(trap, dtype=np.float64)
    radius = np.asarray(radius, dtype=np.float64)
    dradius = np.asarray(dradius, dtype=np.float64)
    interior = (step < 0) | (step >= max_iteration)
    exterior = ~interior

    with np.errstate(invalid="ignore", over="ignore"):
        trap_root = np.sqrt(np.where(np.isfinite(trap), trap, 0.0))

    rgb = np.zeros((n, 3), dtype=np.float64)

    if exterior.any():
        s, r, dr = step[exterior], radius[exterior], dradius[exterior]
        smooth = _smooth_steps(s, r)
        with np.errstate(invalid="ignore"):
            hue = np.mod(
                0.5 + 0.5 * np.sin(np.log(smooth) * params.color_frequency - params.color_offset * 2.0 * math.pi),
                1.0,
            )
        glow = _glow(r, dr, params, zoom)
        value = np.clip(params.brightness * 0.25 * (1.0 + glow), 0.0, 1.0)
        if params.misc != 0:
            value = value * (1.0 - params.misc * (1.0 - np.clip(trap_root[exterior], 0.0, 1.0)))
        rgb[exterior] = hsv_to_rgb(hue, params.saturation, value)
        if params.outline_width > 0:
            w = _outline_weight(r, dr, params, zoom, width)[:, None]
            tint = np.clip([params.outline_red, params.outline_green, params.outline_blue], 0.0, 1.0)
            rgb[exterior] = rgb[exterior] * (1.0 - w) + tint * w

    if interior.any():
        grey = np.clip(trap_root[interior] * params.brightness * params.internal_brightness, 0.0, 1.0)
        rgb[interior] = grey[:, None]

    rgba = np.empty((n, 4), dtype=np.uint8)
    rgba[:, :3] = np.round(np.clip(rgb, 0.0, 1.0) * 255.0).astype(np.uint8)
    rgba[:, 3] = 255
    return rgba


def colorize_image(step, trap, radius, dradius, params: ColorParams, max_iteration: int, zoom: float,
                   *, width: int, height: int) -> np.ndarray:
    rgba = colorize(step, trap, radius, dradius, params, max_iteration, zoom, width=width)
    return rgba.reshape(height, width, 4)
