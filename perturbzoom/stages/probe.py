"""Reference ("probe") orbit generation.

The probe orbit is the only part of a render computed at full precision. We
iterate ``X_{n+1} = X_n**2 + c`` together with the derivative used by the
exterior distance estimate, ``X'_{n+1} = 2 X_n X'_n + 1``, in mpmath and keep
the samples as ``numpy.longdouble`` so every precision tier can take a cast
copy without touching mpmath again.

Orbits are immutable. A larger iteration cap produces a *new* orbit that
continues from the stored high-precision tail, so the prefix is identical to a
fresh computation and does not have to be recomputed.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Tuple

import numpy as np
from mpmath import mpc, mpf, nstr, workdps

from perturbzoom.model import ESCAPE_RADIUS_SQUARED
from perturbzoom.util.logging_setup import get_logger
from perturbzoom.util.numeric import to_longdouble


class ProbeOutcome(enum.Enum):
    ESCAPED = "escaped"
    NON_ESCAPING = "non-escaping"


def _readonly(values: np.ndarray) -> np.ndarray:
    values.flags.writeable = False
    return values


@dataclass(frozen=True, eq=False)
class ProbeOrbit:
    """Samples ``X_n`` / ``X'_n`` of one reference orbit.

    ``len(orbit)`` is the number of bounded iterations: the first index whose
    squared magnitude exceeds the escape radius, or the cap. For an escaping
    orbit the arrays carry that terminal point as well (``samples ==
    len(orbit) + 1``) so a pixel sitting on the probe escapes at the same step.
    """

    point: Tuple[str, str]
    max_iteration: int
    dps: int
    re: np.ndarray
    im: np.ndarray
    dre: np.ndarray
    dim: np.ndarray
    length: int
    outcome: ProbeOutcome
    # Exact continuation state: c, X, X' after the last stored sample.
    tail: Tuple[mpc, mpc, mpc]

    def __len__(self) -> int:
        return self.length

    @property
    def samples(self) -> int:
        return int(self.re.shape[0])

    @property
    def escaped(self) -> bool:
        return self.outcome is ProbeOutcome.ESCAPED

    def segment(self, start: int, stop: int, dtype) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Samples ``[start, stop)`` cast to the representation of a tier."""
        stop = min(stop, self.samples)
        dtype = np.dtype(dtype)
        with np.errstate(over="ignore"):
            return tuple(
                np.ascontiguousarray(a[start:stop].astype(dtype))
                for a in (self.re, self.im, self.dre, self.dim)
            )

    def truncated(self, max_iteration: int) -> "ProbeOrbit":
        if max_iteration >= self.max_iteration:
            return self
        if self.escaped and self.length < max_iteration:
            return ProbeOrbit(
                point=self.point, max_iteration=max_iteration, dps=self.dps,
                re=self.re, im=self.im, dre=self.dre, dim=self.dim,
                length=self.length, outcome=self.outcome, tail=self.tail,
            )
        n = max_iteration
        return ProbeOrbit(
            point=self.point, max_iteration=max_iteration, dps=self.dps,
            re=self.re[:n], im=self.im[:n], dre=self.dre[:n], dim=self.dim[:n],
            length=n, outcome=ProbeOutcome.NON_ESCAPING,
            # A truncated view cannot be continued from its own end.
            tail=None,
        )

    @property
    def extendable(self) -> bool:
        return self.tail is not None and not self.escaped


ORIGIN_POINT = ("0", "0")


def _run(c: mpc, z: mpc, dz: mpc, start: int, max_iteration: int):
    re, im, dre, dim = [], [], [], []
    escaped_at = None
    n = start
    while n < max_iteration:
        re.append(to_longdouble(z.real))
        im.append(to_longdouble(z.imag))
        dre.append(to_longdouble(dz.real))
        dim.append(to_longdouble(dz.imag))
        if z.real * z.real + z.imag * z.imag > ESCAPE_RADIUS_SQUARED:
            escaped_at = n
            break
        dz = 2 * z * dz + 1
        z = z * z + c
        n += 1
    columns = [np.array(col, dtype=np.longdouble) for col in (re, im, dre, dim)]
    return columns, escaped_at, (c, z, dz)


def _assemble(point, max_iteration, dps, columns, escaped_at, tail) -> ProbeOrbit:
    if escaped_at is None:
        length, outcome = max_iteration, ProbeOutcome.NON_ESCAPING
    else:
        length, outcome = escaped_at, ProbeOutcome.ESCAPED
    re, im, dre, dim = (_readonly(col) for col in columns)
    return ProbeOrbit(
        point=point, max_iteration=max_iteration, dps=dps,
        re=re, im=im, dre=dre, dim=dim,
        length=length, outcome=outcome, tail=tail,
    )


def compute_probe_orbit(point: Tuple[str, str], max_iteration: int, dps: int) -> ProbeOrbit:
    logger = get_logger("probe")
    max_iteration = int(max_iteration)
    logger.info("Probe start point=(%s, %s) max_iter=%s dps=%s",
                nstr(mpf(point[0]), 20), nstr(mpf(point[1]), 20), max_iteration, dps)
    with workdps(dps):
        c = mpc(mpf(point[0]), mpf(point[1]))
        columns, escaped_at, tail = _run(c, mpc(0), mpc(0), 0, max_iteration)
    orbit = _assemble(tuple(point), max_iteration, dps, columns, escaped_at, tail)
    logger.info("Probe done length=%s outcome=%s", len(orbit), orbit.outcome.value)
    return orbit


def extend_probe_orbit(orbit: ProbeOrbit, max_iteration: int) -> ProbeOrbit:
    """Orbit for a larger cap, reusing every sample already computed."""
    if max_iteration <= orbit.max_iteration:
        return orbit.truncated(max_iteration)
    if orbit.point == ORIGIN_POINT and orbit.dps == 0:
        return origin_orbit(max_iteration)
    if orbit.escaped:
        return ProbeOrbit(
            point=orbit.point, max_iteration=max_iteration, dps=orbit.dps,
            re=orbit.re, im=orbit.im, dre=orbit.dre, dim=orbit.dim,
            length=orbit.length, outcome=orbit.outcome, tail=orbit.tail,
        )
    if orbit.tail is None:
        raise ValueError("orbit is a truncated view and cannot be extended")

    logger = get_logger("probe")
    logger.info("Probe extend %s -> %s", orbit.max_iteration, max_iteration)
    with workdps(orbit.dps):
        c, z, dz = orbit.tail
        columns, escaped_at, tail = _run(c, z, dz, orbit.samples, max_iteration)
    joined = [np.concatenate([old, new]) for old, new in zip((orbit.re, orbit.im, orbit.dre, orbit.dim), columns)]
    extended = _assemble(orbit.point, max_iteration, orbit.dps, joined, escaped_at, tail)
    logger.info("Probe extend done length=%s outcome=%s", len(extended), extended.outcome.value)
    return extended


def origin_orbit(max_iteration: int) -> ProbeOrbit:
    """Exact orbit of c = 0, used by the direct tiers.

    Perturbing around the origin turns the delta recurrence into plain
    ``z**2 + c`` with ``delta_0 = c``, so both strategies share one iterator.
    """
    n = int(max_iteration)
    dre = np.ones(n, dtype=np.longdouble)
    dre[0] = 0
    zeros = np.zeros(n, dtype=np.longdouble)
    return ProbeOrbit(
        point=ORIGIN_POINT, max_iteration=n, dps=0,
        re=_readonly(zeros), im=_readonly(zeros.copy()),
        dre=_readonly(dre), dim=_readonly(zeros.copy()),
        length=n, outcome=ProbeOutcome.NON_ESCAPING, tail=None,
    )
