"""Pipeline coordinator.

Runs probe -> grid -> iterate -> color for an ``ImageRequest``, re-running only
the stages whose inputs differ from the buffers it already holds. Every
accepted request gets a fresh generation number; work that belongs to an older
generation is dropped.
"""

from __future__ import annotations

import enum
import itertools
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from perturbzoom.errors import DeviceUnavailable, PrecisionExhausted, StaleGeneration
from perturbzoom.model import ColorParams, Frame, ImageRequest, Viewport
from perturbzoom.precision import PrecisionThresholds, PrecisionTier, Strategy, probe_dps, resolve_tier
from perturbzoom.stages.color import colorize
from perturbzoom.stages.grid import DeltaGrid, base_offset, generate_delta_grid
from perturbzoom.stages.iterate import IterationState, PerturbationIterator
from perturbzoom.stages.probe import (
    ORIGIN_POINT,
    ProbeOrbit,
    compute_probe_orbit,
    extend_probe_orbit,
    origin_orbit,
)
from perturbzoom.util.logging_setup import get_logger, log_duration


class Stage(enum.Enum):
    IDLE = "idle"
    PROBING = "probing"
    GRIDDING = "gridding"
    ITERATING = "iterating"
    COLORING = "coloring"


@dataclass(frozen=True)
class StagePlan:
    tier: PrecisionTier
    probe_point: Tuple[str, str]
    probe_dps: int
    grid_dps: int
    reprobe: bool = False
    extend: bool = False
    regrid: bool = False
    reset_iteration: bool = False
    iterate: bool = False
    recolor: bool = False

    @property
    def start(self) -> Stage:
        if self.reprobe or self.extend:
            return Stage.PROBING
        if self.regrid:
            return Stage.GRIDDING
        if self.iterate:
            return Stage.ITERATING
        if self.recolor:
            return Stage.COLORING
        return Stage.IDLE

    @property
    def is_noop(self) -> bool:
        return self.start is Stage.IDLE


@dataclass(frozen=True)
class Progress:
    generation: int = 0
    stage: Stage = Stage.IDLE
    fraction: float = 0.0
    escaped_pixels: int = 0
    tier: Optional[PrecisionTier] = None
    message: Optional[str] = None
    error: Optional[str] = None


class ProgressBoard:
    """One writer publishes immutable snapshots; readers take the current one."""

    def __init__(self):
        self._snapshot = Progress()

    @property
    def snapshot(self) -> Progress:
        return self._snapshot

    def publish(self, progress: Progress) -> Progress:
        self._snapshot = progress
        return progress

    def update(self, **changes) -> Progress:
        return self.publish(replace(self._snapshot, **changes))


@dataclass(frozen=True)
class PipelineSettings:
    thresholds: PrecisionThresholds = field(default_factory=PrecisionThresholds)
    backend: str = "auto"
    batch_iterations: int = 500
    workers: int = 1
    debounce: float = 0.05
    extra_digits: int = 80


@dataclass(eq=False)
class _Buffers:
    orbit: Optional[ProbeOrbit] = None
    orbit_tier: Optional[PrecisionTier] = None
    grid: Optional[DeltaGrid] = None
    grid_key: Optional[tuple] = None
    state: Optional[IterationState] = None
    colors: Optional[Tuple[ColorParams, int]] = None
    rgba: Optional[np.ndarray] = None
    request: Optional[ImageRequest] = None
    tier: Optional[PrecisionTier] = None


class PipelineCoordinator:
    def __init__(self, settings: Optional[PipelineSettings] = None):
        self.settings = settings or PipelineSettings()
        self.iterator = PerturbationIterator(self.settings.backend, self.settings.batch_iterations)
        self.progress = ProgressBoard()
        self.counters: Dict[str, int] = {"probe": 0, "extend": 0, "grid": 0, "iterate": 0, "color": 0}
        self._buffers = _Buffers()
        self._generations = itertools.count(1)
        self._generation = 0
        self._lock = threading.Lock()
        self.logger = get_logger("pipeline")

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def state(self) -> Optional[IterationState]:
        """Per-pixel buffers of the last iteration run."""
        return self._buffers.state

    def invalidate(self) -> int:
        """Supersede any in-flight render."""
        with self._lock:
            self._generation = next(self._generations)
            return self._generation

    def _check(self, generation: int) -> None:
        if generation != self._generation:
            raise StaleGeneration(generation, self._generation)

    # Planning

    def _grid_key(self, viewport: Viewport, tier: PrecisionTier, point: Tuple[str, str], dps: int) -> tuple:
        return (viewport, tier, point, dps)

    def plan(self, request: ImageRequest) -> StagePlan:
        """Stages needed to turn the cached buffers into ``request``.

        Raises ``PrecisionExhausted`` when the zoom is past every tier.
        """
        vp = request.viewport
        cap = int(request.max_iteration)
        tier = resolve_tier(vp.zoom, request.precision_tier, self.settings.thresholds)
        grid_dps = probe_dps(vp.zoom, 1, extra_digits=self.settings.extra_digits)
        if tier.strategy is Strategy.DIRECT:
            point, dps, needed_dps = ORIGIN_POINT, 0, 0
        else:
            point = request.probe_location
            dps = probe_dps(vp.zoom, cap, extra_digits=self.settings.extra_digits)
            # A cached orbit only has to resolve the zoom; extension keeps its own dps.
            needed_dps = grid_dps
        base = dict(tier=tier, probe_point=point, probe_dps=dps, grid_dps=grid_dps)

        buf = self._buffers
        orbit = buf.orbit
        if orbit is None or buf.orbit_tier is not tier or orbit.point != point or orbit.dps < needed_dps:
            return StagePlan(**base, reprobe=True, regrid=True, reset_iteration=True, iterate=True, recolor=True)

        extend = cap > orbit.max_iteration and not orbit.escaped
        regrid = buf.grid is None or buf.grid_key != self._grid_key(vp, tier, point, grid_dps)
        stop = cap if extend else min(cap, orbit.samples)
        state = buf.state
        reset = regrid or state is None or state.d0_re is not buf.grid.re or state.offset > stop
        iterate = reset or extend or state.offset < stop
        recolor = (
            iterate
            or buf.rgba is None
            or buf.colors != (request.color_params, cap)
        )
        return StagePlan(**base, extend=extend, regrid=regrid, reset_iteration=reset, iterate=iterate, recolor=recolor)

    # Stages

    def _probe(self, plan: StagePlan, cap: int) -> ProbeOrbit:
        if plan.probe_point == ORIGIN_POINT and plan.probe_dps == 0:
            orbit = origin_orbit(cap)
        else:
            orbit = compute_probe_orbit(plan.probe_point, cap, plan.probe_dps)
        self.counters["probe"] += 1
        return orbit

    def _grid(self, plan: StagePlan, viewport: Viewport, base=None) -> DeltaGrid:
        grid = generate_delta_grid(viewport, plan.probe_point, plan.tier, plan.grid_dps,
                                   workers=self.settings.workers, base=base)
        self.counters["grid"] += 1
        return grid

    def _run_plan(self, plan: StagePlan, request: ImageRequest, generation: int,
                  should_continue: Optional[Callable[[], bool]]) -> bool:
        buf = self._buffers
        vp = request.viewport
        cap = int(request.max_iteration)

        if plan.reprobe or plan.regrid:
            self.progress.update(stage=Stage.PROBING if plan.reprobe else Stage.GRIDDING)
            if plan.reprobe:
                # The probe thread owns mpmath's precision while both run.
                base = base_offset(vp, plan.probe_point, plan.tier, plan.grid_dps)
                with ThreadPoolExecutor(max_workers=2, thread_name_prefix="stage") as pool:
                    f_orbit = pool.submit(self._probe, plan, cap)
                    f_grid = pool.submit(self._grid, plan, vp, base)
                    buf.orbit, buf.grid = f_orbit.result(), f_grid.result()
                buf.orbit_tier = plan.tier
            else:
                buf.grid = self._grid(plan, vp)
            buf.grid_key = self._grid_key(vp, plan.tier, plan.probe_point, plan.grid_dps)
            self._check(generation)
        elif plan.extend:
            self.progress.update(stage=Stage.PROBING)
        if plan.extend:
            buf.orbit = extend_probe_orbit(buf.orbit, cap)
            self.counters["extend"] += 1
            self._check(generation)

        orbit = buf.orbit.truncated(cap)

        if plan.reset_iteration:
            if buf.state is not None and buf.state.d0_re is buf.grid.re:
                buf.state.reset()
            else:
                buf.state = IterationState.allocate(buf.grid)

        if plan.iterate:
            state = buf.state
            stop = max(1, min(cap, orbit.samples))
            self.progress.update(stage=Stage.ITERATING, fraction=state.offset / stop)

            def on_batch(s: IterationState) -> None:
                self._check(generation)
                self.progress.update(fraction=s.offset / stop, escaped_pixels=s.escaped_count)

            self.counters["iterate"] += 1
            done = self.iterator.iterate(state, orbit, cap, should_continue=should_continue, on_batch=on_batch)
            if not done:
                return False

        if plan.recolor:
            self.progress.update(stage=Stage.COLORING)
            state = buf.state
            with log_duration(self.logger, "Coloring"):
                buf.rgba = colorize(state.step, state.trap, state.radius, state.dradius,
                                    request.color_params, cap, vp.zoom, width=vp.width)
            buf.colors = (request.color_params, cap)
            self.counters["color"] += 1
        self._check(generation)
        return True

    def render(self, request: ImageRequest, should_continue: Optional[Callable[[], bool]] = None) -> Optional[Frame]:
        generation = self.invalidate()
        self.progress.publish(Progress(generation=generation))
        try:
            plan = self.plan(request)
        except PrecisionExhausted as e:
            self.logger.warning("%s", e)
            self.progress.publish(Progress(generation=generation, error=str(e)))
            return None

        self.logger.info("Render generation=%s tier=%s start=%s cap=%s",
                         generation, plan.tier.label, plan.start.value, request.max_iteration)
        self.progress.update(tier=plan.tier)
        try:
            finished = self._run_plan(plan, request, generation, should_continue)
        except StaleGeneration as e:
            self.logger.debug("Dropped %s", e)
            return None
        except DeviceUnavailable as e:
            self.progress.publish(Progress(generation=generation, tier=plan.tier, error=str(e)))
            raise

        if not finished:
            self.progress.update(stage=Stage.IDLE, message="cancelled")
            return None

        buf = self._buffers
        buf.request = request
        buf.tier = plan.tier
        escaped = buf.state.escaped_count
        self.progress.publish(Progress(generation=generation, stage=Stage.IDLE, fraction=1.0,
                                       escaped_pixels=escaped, tier=plan.tier, message="done"))
        self.logger.info("Render done generation=%s escaped=%s/%s", generation, escaped, len(buf.state))
        return Frame(generation=generation, rgba=buf.rgba, request=request, tier=plan.tier, escaped_pixels=escaped)
