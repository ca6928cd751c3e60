"""Precision tier selection.

Maps a zoom depth (log2 magnitude) to the cheapest numeric representation that
still resolves neighbouring pixels. The cut-offs are configuration: rounding
behaviour differs between devices, so the defaults lean towards precision.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from perturbzoom.errors import ConfigError, PrecisionExhausted

# Bits of headroom kept above the smallest normal of each representation.
_UNDERFLOW_MARGIN_BITS = 32


class Strategy(enum.Enum):
    DIRECT = "direct"
    PERTURBED = "perturbed"


class Representation(enum.Enum):
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    EXTENDED = "extended"

    @property
    def dtype(self) -> np.dtype:
        if self is Representation.FLOAT32:
            return np.dtype(np.float32)
        if self is Representation.FLOAT64:
            return np.dtype(np.float64)
        return np.dtype(np.longdouble)

    @property
    def compiled_kernels(self) -> bool:
        """numba only compiles for IEEE single/double."""
        return self is not Representation.EXTENDED

    @property
    def underflow_zoom(self) -> float:
        return float(-np.log2(np.finfo(self.dtype).tiny))


class PrecisionTier(enum.IntEnum):
    RAW_32 = 0
    RAW_64 = 1
    PROBED_32 = 2
    PROBED_64 = 3
    PROBED_EXTENDED = 4

    @property
    def strategy(self) -> Strategy:
        return Strategy.DIRECT if self <= PrecisionTier.RAW_64 else Strategy.PERTURBED

    @property
    def representation(self) -> Representation:
        return {
            PrecisionTier.RAW_32: Representation.FLOAT32,
            PrecisionTier.RAW_64: Representation.FLOAT64,
            PrecisionTier.PROBED_32: Representation.FLOAT32,
            PrecisionTier.PROBED_64: Representation.FLOAT64,
            PrecisionTier.PROBED_EXTENDED: Representation.EXTENDED,
        }[self]

    @property
    def dtype(self) -> np.dtype:
        return self.representation.dtype

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", "-")

    @classmethod
    def parse(cls, value) -> "PrecisionTier":
        if isinstance(value, PrecisionTier):
            return value
        key = str(value).strip().upper().replace("-", "_")
        try:
            return cls[key]
        except KeyError:
            raise ConfigError(f"Unknown precision tier: {value!r}") from None


def _default_limit(representation: Representation) -> float:
    return float(representation.underflow_zoom - _UNDERFLOW_MARGIN_BITS)


@dataclass(frozen=True)
class PrecisionThresholds:
    """Deepest zoom (log2) each tier is trusted with."""

    raw_32: float = 10.0
    raw_64: float = 38.0
    probed_32: float = 94.0
    probed_64: float = 990.0
    probed_extended: Optional[float] = None

    def __post_init__(self):
        limits = self.as_list()
        for lo, hi in zip(limits, limits[1:]):
            if hi < lo:
                raise ConfigError(f"Precision thresholds must be non-decreasing: {limits}")

    def limit(self, tier: PrecisionTier) -> float:
        return self.as_list()[int(tier)]

    def as_list(self):
        extended = self.probed_extended
        if extended is None:
            extended = max(self.probed_64, _default_limit(Representation.EXTENDED))
        return [self.raw_32, self.raw_64, self.probed_32, self.probed_64, float(extended)]

    @property
    def deepest_zoom(self) -> float:
        return self.as_list()[-1]


def select_tier(zoom: float, thresholds: Optional[PrecisionThresholds] = None) -> PrecisionTier:
    """Pure and monotonic: a deeper zoom never gets a less precise tier."""
    thresholds = thresholds or PrecisionThresholds()
    if not math.isfinite(zoom):
        raise ValueError(f"zoom must be finite, got {zoom!r}")
    for tier, limit in zip(PrecisionTier, thresholds.as_list()):
        if zoom <= limit:
            return tier
    raise PrecisionExhausted(zoom, thresholds.deepest_zoom)


def resolve_tier(
    zoom: float,
    requested: Optional[PrecisionTier] = None,
    thresholds: Optional[PrecisionThresholds] = None,
) -> PrecisionTier:
    selected = select_tier(zoom, thresholds)
    if requested is None:
        return selected
    return max(PrecisionTier.parse(requested), selected)


def probe_dps(zoom: float, max_iteration: int, extra_digits: int = 80, max_dps: int = 5000) -> int:
    """Decimal digits for the reference orbit and the centre coordinates."""
    zdigits = int(max(0.0, zoom) * math.log10(2.0))
    # Whole decades of iterations only.
    iter_term = int(math.log10(max(10, int(max_iteration)))) * 25
    dps = max(100, zdigits + extra_digits + iter_term)
    return min(dps, max_dps)
