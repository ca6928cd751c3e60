"""Background render worker.

The caller context submits requests at whatever rate it likes; the worker
thread only ever renders the newest one. A request that arrives while a render
is in flight cancels it between batches.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Generic, Optional, TypeVar

from perturbzoom.errors import DeviceUnavailable
from perturbzoom.model import Frame, ImageRequest
from perturbzoom.pipeline import PipelineCoordinator
from perturbzoom.util.logging_setup import get_logger

T = TypeVar("T")


class LatestRequestChannel(Generic[T]):
    """Single-slot channel; a new value replaces one that was never taken."""

    def __init__(self):
        self._cond = threading.Condition()
        self._value: Optional[T] = None
        self._pending = False
        self._closed = False

    @property
    def pending(self) -> bool:
        return self._pending

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, value: T) -> None:
        with self._cond:
            self._value = value
            self._pending = True
            self._cond.notify_all()

    def take(self, timeout: Optional[float] = None) -> Optional[T]:
        with self._cond:
            if not self._pending and not self._closed:
                self._cond.wait(timeout)
            if not self._pending:
                return None
            value, self._value = self._value, None
            self._pending = False
            return value

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class Debouncer:
    def __init__(self, wait: float, clock: Callable[[], float] = time.monotonic):
        self.wait = float(wait)
        self._clock = clock
        self._deadline: Optional[float] = None

    def trigger(self) -> None:
        self._deadline = self._clock() + self.wait

    def reset(self) -> None:
        self._deadline = None

    @property
    def active(self) -> bool:
        return self._deadline is not None

    def remaining(self) -> float:
        if self._deadline is None:
            return 0.0
        return max(0.0, self._deadline - self._clock())

    def poll(self) -> bool:
        """True once, when the wait has elapsed since the last trigger."""
        if self._deadline is None or self._clock() < self._deadline:
            return False
        self._deadline = None
        return True


class RenderWorker:
    def __init__(
        self,
        coordinator: PipelineCoordinator,
        debounce: float = 0.05,
        sink: Optional[Callable[[Frame], None]] = None,
    ):
        self.coordinator = coordinator
        self.channel: LatestRequestChannel[ImageRequest] = LatestRequestChannel()
        self.debouncer = Debouncer(debounce)
        self.sink = sink
        self.latest_frame: Optional[Frame] = None
        self.status: Optional[str] = None
        self.error: Optional[BaseException] = None
        self._idle = threading.Event()
        self._idle.set()
        self._idle_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.logger = get_logger("worker")

    def submit(self, request: ImageRequest) -> None:
        with self._idle_lock:
            self._idle.clear()
            self.channel.put(request)

    def _mark_idle(self) -> None:
        with self._idle_lock:
            if not self.channel.pending:
                self._idle.set()

    def start(self) -> "RenderWorker":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._loop, name="render-worker", daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self.channel.close()
        self.coordinator.invalidate()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def _next_request(self) -> Optional[ImageRequest]:
        request = self.channel.take(timeout=0.1)
        if request is None:
            return None
        self.debouncer.trigger()
        while not self.debouncer.poll():
            newer = self.channel.take(timeout=self.debouncer.remaining())
            if newer is not None:
                request = newer
                self.debouncer.trigger()
            if self.channel.closed:
                return None
        return request

    def _loop(self) -> None:
        self.logger.info("Worker start")
        while not self.channel.closed:
            request = self._next_request()
            if request is None:
                self._mark_idle()
                continue
            try:
                frame = self.coordinator.render(request, should_continue=lambda: not self.channel.pending)
            except DeviceUnavailable as e:
                self.logger.error("Device unavailable, worker stopping: %s", e)
                self.status = str(e)
                self.error = e
                self.channel.close()
                break
            if frame is not None:
                self.latest_frame = frame
                self.status = "done"
                if self.sink is not None:
                    self.sink(frame)
            elif self.coordinator.progress.snapshot.error:
                self.status = self.coordinator.progress.snapshot.error
            self._mark_idle()
        self._idle.set()
        self.logger.info("Worker stop")
