"""Error taxonomy for the render pipeline.

Only conditions the caller can act on are exceptions. An interior probe point
is an ordinary outcome (see ``ProbeOutcome``) and numerically fragile colour
inputs are clamped inside the coloring stage instead of raised.
"""

from __future__ import annotations


class PerturbZoomError(Exception):
    pass


class ConfigError(PerturbZoomError, ValueError):
    pass


class PrecisionExhausted(PerturbZoomError):
    """The requested zoom lies beyond the deepest configured precision tier."""

    def __init__(self, zoom: float, deepest_zoom: float):
        self.zoom = zoom
        self.deepest_zoom = deepest_zoom
        super().__init__(
            f"zoom 2^-{zoom:g} is beyond the deepest precision tier (limit 2^-{deepest_zoom:g})"
        )


class StaleGeneration(PerturbZoomError):
    """A batch finished for a generation that has since been superseded."""

    def __init__(self, generation: int, current: int):
        self.generation = generation
        self.current = current
        super().__init__(f"generation {generation} superseded by {current}")


class DeviceUnavailable(PerturbZoomError):
    """The compute device could not be initialised or a kernel launch failed."""
