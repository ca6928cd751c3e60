"""Perturbation iterator: advances per-pixel deltas against a probe orbit.

State lives in flat arena buffers (one slot per pixel) so a render can be
paused after any batch and resumed later, including after the iteration cap
grows and the orbit is extended.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from perturbzoom.errors import ConfigError, DeviceUnavailable
from perturbzoom.kernels.cpu import perturb_numba, perturb_numpy
from perturbzoom.kernels.gpu import perturb_cuda, probe_cuda
from perturbzoom.model import ESCAPE_RADIUS_SQUARED
from perturbzoom.precision import PrecisionTier
from perturbzoom.stages.grid import DeltaGrid
from perturbzoom.stages.probe import ProbeOrbit
from perturbzoom.util.logging_setup import get_logger

ACTIVE = -1


class Backend(enum.Enum):
    AUTO = "auto"
    NUMPY = "numpy"
    CPU = "cpu"
    CUDA = "cuda"

    @classmethod
    def parse(cls, value) -> "Backend":
        if isinstance(value, Backend):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigError(f"Unknown backend: {value!r}") from None


def resolve_backend(backend, tier: PrecisionTier) -> Backend:
    """Concrete backend for a tier. Compiled backends only handle IEEE single/double."""
    backend = Backend.parse(backend)
    if not tier.representation.compiled_kernels:
        return Backend.NUMPY
    if backend is Backend.AUTO:
        return Backend.CUDA if probe_cuda().get("available") else Backend.CPU
    if backend is Backend.CUDA and not probe_cuda().get("available"):
        raise DeviceUnavailable(f"CUDA backend requested but unavailable: {probe_cuda().get('error', 'no device')}")
    return backend


@dataclass(eq=False)
class IterationState:
    width: int
    height: int
    tier: PrecisionTier
    d0_re: np.ndarray
    d0_im: np.ndarray
    delta_re: np.ndarray
    delta_im: np.ndarray
    dprime_re: np.ndarray
    dprime_im: np.ndarray
    step: np.ndarray
    trap: np.ndarray
    radius: np.ndarray
    dradius: np.ndarray
    offset: int = 0

    @classmethod
    def allocate(cls, grid: DeltaGrid) -> "IterationState":
        n = len(grid)
        dtype = grid.dtype
        state = cls(
            width=grid.width, height=grid.height, tier=grid.tier,
            d0_re=grid.re, d0_im=grid.im,
            delta_re=np.zeros(n, dtype=dtype), delta_im=np.zeros(n, dtype=dtype),
            dprime_re=np.zeros(n, dtype=dtype), dprime_im=np.zeros(n, dtype=dtype),
            step=np.full(n, ACTIVE, dtype=np.int64),
            trap=np.full(n, np.inf, dtype=dtype),
            radius=np.zeros(n, dtype=np.float64), dradius=np.zeros(n, dtype=np.float64),
        )
        return state

    def reset(self) -> None:
        for buf in (self.delta_re, self.delta_im, self.dprime_re, self.dprime_im, self.radius, self.dradius):
            buf.fill(0)
        self.step.fill(ACTIVE)
        self.trap.fill(np.inf)
        self.offset = 0

    def __len__(self) -> int:
        return int(self.step.shape[0])

    @property
    def dtype(self) -> np.dtype:
        return self.delta_re.dtype

    @property
    def escaped_count(self) -> int:
        return int(np.count_nonzero(self.step >= 0))

    @property
    def active_count(self) -> int:
        return len(self) - self.escaped_count


class PerturbationIterator:
    def __init__(self, backend="auto", batch_iterations: int = 500):
        self.backend = Backend.parse(backend)
        if int(batch_iterations) < 1:
            raise ConfigError("batch_iterations must be >= 1.")
        self.batch_iterations = int(batch_iterations)

    def run(self, backend: Backend, segment, state: IterationState, start: int) -> None:
        x_re, x_im, dx_re, dx_im = segment
        args = (
            x_re, x_im, dx_re, dx_im, int(start),
            state.d0_re, state.d0_im, state.delta_re, state.delta_im,
            state.dprime_re, state.dprime_im,
            state.step, state.trap, state.radius, state.dradius,
            state.dtype.type(ESCAPE_RADIUS_SQUARED),
        )
        if backend is Backend.NUMPY:
            perturb_numpy(*args)
        elif backend is Backend.CPU:
            perturb_numba(*args)
        elif backend is Backend.CUDA:
            perturb_cuda(*args, width=state.width, height=state.height)
        else:
            raise ValueError(f"backend must be resolved before running, got {backend}")

    def run_batch(self, state: IterationState, orbit: ProbeOrbit, stop: int) -> int:
        """Advance active pixels from ``state.offset`` to ``stop``; returns the new offset."""
        stop = min(int(stop), orbit.samples)
        start = state.offset
        if stop <= start:
            return start
        backend = resolve_backend(self.backend, state.tier)
        segment = orbit.segment(start, stop, state.dtype)
        self.run(backend, segment, state, start)
        state.offset = stop
        return stop

    def iterate(
        self,
        state: IterationState,
        orbit: ProbeOrbit,
        max_iteration: int,
        should_continue: Optional[Callable[[], bool]] = None,
        on_batch: Optional[Callable[[IterationState], None]] = None,
    ) -> bool:
        """Run batches up to the cap. Returns False when cancelled between batches."""
        logger = get_logger("iterate")
        stop = min(int(max_iteration), orbit.samples)
        logger.info("Iterate start offset=%s stop=%s pixels=%s tier=%s backend=%s",
                    state.offset, stop, len(state), state.tier.label, self.backend.value)
        while state.offset < stop:
            if should_continue is not None and not should_continue():
                logger.info("Iterate cancelled at offset=%s", state.offset)
                return False
            self.run_batch(state, orbit, min(stop, state.offset + self.batch_iterations))
            logger.debug("Iterate batch offset=%s escaped=%s", state.offset, state.escaped_count)
            if on_batch is not None:
                on_batch(state)
        logger.info("Iterate done offset=%s escaped=%s", state.offset, state.escaped_count)
        return True
