"""Small numeric helpers shared by the stages and the reference renderer."""

from __future__ import annotations

import math
from typing import List, Tuple

import numpy as np
from mpmath import mpf, nstr

LONGDOUBLE_IS_WIDER = np.finfo(np.longdouble).maxexp > np.finfo(np.float64).maxexp


def to_longdouble(x: mpf) -> np.longdouble:
    f = float(x)
    if math.isfinite(f) and (f != 0.0 or x == 0):
        return np.longdouble(f)
    if LONGDOUBLE_IS_WIDER:
        # Outside float64's range; numpy parses the decimal form at full width.
        return np.longdouble(nstr(x, 21, min_fixed=1, max_fixed=0))
    return np.longdouble(f)


def row_bands(height: int, band_height: int) -> List[Tuple[int, int]]:
    """Half-open ``(y0, y1)`` row ranges covering ``height`` rows."""
    band_height = max(1, int(band_height))
    bands = []
    y = 0
    while y < height:
        y1 = min(height, y + band_height)
        bands.append((y, y1))
        y = y1
    return bands
