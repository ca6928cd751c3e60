"""Tests for the render worker and its coalescing channel."""

import threading

import pytest

from perturbzoom.errors import DeviceUnavailable
from perturbzoom.pipeline import PipelineCoordinator, PipelineSettings
from perturbzoom.worker import Debouncer, LatestRequestChannel, RenderWorker


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestLatestRequestChannel:
    """Only the newest value survives."""

    def test_coalesces(self):
        channel = LatestRequestChannel()
        for value in (1, 2, 3):
            channel.put(value)

        assert channel.pending
        assert channel.take(timeout=0.01) == 3
        assert not channel.pending
        assert channel.take(timeout=0.01) is None

    def test_take_wakes_on_put(self):
        channel = LatestRequestChannel()
        timer = threading.Timer(0.05, channel.put, args=("late",))
        timer.start()
        try:
            assert channel.take(timeout=5.0) == "late"
        finally:
            timer.cancel()

    def test_close(self):
        channel = LatestRequestChannel()
        channel.close()
        assert channel.closed
        assert channel.take(timeout=0.01) is None


class TestDebouncer:
    def test_fires_after_wait(self):
        clock = FakeClock()
        debouncer = Debouncer(0.5, clock=clock)
        assert not debouncer.active
        assert not debouncer.poll()

        debouncer.trigger()
        assert debouncer.active
        clock.now = 0.3
        assert not debouncer.poll()
        assert debouncer.remaining() == pytest.approx(0.2)

        clock.now = 0.6
        assert debouncer.poll()
        assert not debouncer.active
        assert not debouncer.poll()

    def test_retrigger_extends(self):
        clock = FakeClock()
        debouncer = Debouncer(0.5, clock=clock)
        debouncer.trigger()
        clock.now = 0.4
        debouncer.trigger()
        clock.now = 0.6
        assert not debouncer.poll()
        clock.now = 0.95
        assert debouncer.poll()

    def test_reset(self):
        debouncer = Debouncer(10.0)
        debouncer.trigger()
        debouncer.reset()
        assert not debouncer.active
        assert debouncer.remaining() == 0.0


class TestRenderWorker:
    """End-to-end through the worker thread."""

    def test_renders_latest(self, make_request):
        frames = []
        coordinator = PipelineCoordinator(PipelineSettings(backend="numpy"))
        worker = RenderWorker(coordinator, debounce=0.01, sink=frames.append).start()
        try:
            for cap in (20, 40, 60):
                worker.submit(make_request(max_iteration=cap))
            assert worker.wait_idle(60.0)
        finally:
            worker.stop(timeout=5.0)

        assert worker.latest_frame is not None
        assert worker.latest_frame.request.max_iteration == 60
        assert frames[-1] is worker.latest_frame
        assert worker.status == "done"

    def test_device_unavailable_stops_worker(self, make_request, monkeypatch):
        monkeypatch.setattr("perturbzoom.stages.iterate.probe_cuda", lambda: {"available": False})
        coordinator = PipelineCoordinator(PipelineSettings(backend="cuda"))
        worker = RenderWorker(coordinator, debounce=0.0).start()
        try:
            worker.submit(make_request())
            assert worker.wait_idle(30.0)
        finally:
            worker.stop(timeout=5.0)

        assert isinstance(worker.error, DeviceUnavailable)
        assert worker.latest_frame is None
        assert "CUDA" in worker.status

    def test_precision_exhausted_status(self, make_request):
        from perturbzoom.precision import PrecisionThresholds

        coordinator = PipelineCoordinator(PipelineSettings(
            backend="numpy", thresholds=PrecisionThresholds(probed_extended=1000.0)))
        worker = RenderWorker(coordinator, debounce=0.0).start()
        try:
            worker.submit(make_request(zoom=5000.0))
            assert worker.wait_idle(30.0)
        finally:
            worker.stop(timeout=5.0)

        assert worker.latest_frame is None
        assert "beyond" in worker.status
