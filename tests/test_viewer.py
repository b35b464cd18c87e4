"""
Tests for CountdownViewer: ticker, offset and consumer activities.
"""

import threading
import time

import pytest


def wait_for(predicate, timeout=3.0, interval=0.02):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class StaticTracker:
    """Offset tracker stand-in with a fixed offset."""

    def __init__(self, offset_ms=0, has_estimate=True, error=None):
        self.offset_ms = offset_ms
        self.has_estimate = has_estimate
        self.last_error = error
        self.refreshes = 0

    def refresh(self, timeout=None):
        self.refreshes += 1
        return self.offset_ms


class FrameSink:
    """Collects frames from on_tick."""

    def __init__(self):
        self.frames = []
        self._lock = threading.Lock()

    def __call__(self, frame):
        with self._lock:
            self.frames.append(frame)

    def latest(self):
        with self._lock:
            return self.frames[-1] if self.frames else None

    def count(self):
        with self._lock:
            return len(self.frames)


class UnreachableStore:
    """Store whose every call fails."""

    def __init__(self):
        from stage_timer.interfaces.errors import StoreUnavailable
        self.error = StoreUnavailable("connection refused")

    def fetch(self, record_id):
        raise self.error

    def subscribe(self, record_id, on_change, on_error=None):
        raise self.error


@pytest.fixture
def make_viewer(memory_store):
    viewers = []

    def factory(store=None, tracker=None, local_now=None, **kwargs):
        from stage_timer.engine.viewer import CountdownViewer
        sink = FrameSink()
        viewer = CountdownViewer(
            store or memory_store,
            tracker or StaticTracker(),
            on_tick=sink,
            tick_interval=0.1,
            offset_refresh_interval=0,
            local_now=local_now,
            **kwargs
        )
        viewers.append(viewer)
        return viewer, sink

    yield factory
    for viewer in viewers:
        viewer.stop()


class TestFrame:
    """Pure frame projection from cached state."""

    def test_frame_without_record(self, make_viewer):
        viewer, _ = make_viewer()
        frame = viewer.frame()
        assert not frame.has_record
        assert frame.remaining == 0
        assert frame.text == "00:00"

    def test_frame_projects_with_offset(self, make_viewer, fake_clock_cls):
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus

        local = fake_clock_cls(1_000_000)
        viewer, _ = make_viewer(tracker=StaticTracker(offset_ms=5000), local_now=local)
        viewer.accept(TimerRecord(duration=120, status=TimerStatus.RUNNING, start_time=1_000_000))
        local.advance(60_000)
        frame = viewer.frame()
        assert frame.remaining == 55
        assert frame.text == "00:55"
        assert frame.urgency == 'warning'
        assert frame.offset_ms == 5000
        assert frame.synced

    def test_unsynced_frame_flags_error(self, make_viewer):
        from stage_timer.interfaces.errors import OffsetMeasurementFailure

        tracker = StaticTracker(has_estimate=False, error=OffsetMeasurementFailure("down"))
        viewer, _ = make_viewer(tracker=tracker)
        frame = viewer.frame()
        assert not frame.synced
        assert frame.offset_error == "down"

    def test_accept_ignores_other_records(self, make_viewer):
        from stage_timer.interfaces.timer_record import TimerRecord

        viewer, _ = make_viewer()
        viewer.accept(TimerRecord(id=2, duration=10))
        assert viewer.record.get() is None


class TestViewerLifecycle:
    """Running viewer against a live store."""

    def test_initial_fetch_and_ticks(self, make_viewer, controller):
        controller.set_duration(4)
        viewer, sink = make_viewer()
        viewer.start()
        assert wait_for(lambda: sink.latest() is not None and sink.latest().remaining == 240)
        assert wait_for(lambda: viewer.offset_tracker.refreshes == 1)

    def test_pushed_change_replaces_record(self, make_viewer, controller):
        from stage_timer.interfaces.timer_record import TimerStatus

        controller.ensure_record()
        viewer, sink = make_viewer()
        viewer.start()
        assert wait_for(lambda: sink.count() > 0)

        controller.set_duration(9)
        controller.start()
        assert wait_for(lambda: sink.latest().status == TimerStatus.RUNNING)
        assert viewer.stats['records_received'] >= 2

    def test_no_ticks_after_stop(self, make_viewer, controller):
        controller.ensure_record()
        viewer, sink = make_viewer()
        viewer.start()
        assert wait_for(lambda: sink.count() >= 2)
        viewer.stop()
        stopped_at = sink.count()
        time.sleep(0.35)
        assert sink.count() == stopped_at
        assert not viewer.running

    def test_stop_unsubscribes(self, make_viewer, memory_store, controller):
        controller.ensure_record()
        viewer, _ = make_viewer()
        viewer.start()
        assert memory_store.subscriber_count == 1
        viewer.stop()
        assert memory_store.subscriber_count == 0

    def test_resync_fetch_when_push_is_missed(self, make_viewer, memory_store, controller):
        controller.ensure_record()
        viewer, sink = make_viewer(resync_interval=0.1)
        viewer.start()
        assert wait_for(lambda: sink.count() > 0)
        # Drop the push channel so only resync fetches can see the change
        viewer._subscription.unsubscribe()
        controller.set_duration(2)
        assert wait_for(lambda: sink.latest().remaining == 120)
        assert viewer.stats['resyncs'] >= 2

    def test_store_failure_keeps_last_countdown(self, make_viewer, fake_clock_cls):
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus

        local = fake_clock_cls(0)
        viewer, sink = make_viewer(store=UnreachableStore(), local_now=local)
        viewer.accept(TimerRecord(duration=90, status=TimerStatus.RUNNING, start_time=0))
        viewer.start()
        local.advance(30_000)
        assert wait_for(lambda: sink.latest() is not None and sink.latest().remaining == 60)
        frame = sink.latest()
        assert frame.remaining == 60
        assert frame.status == TimerStatus.RUNNING
        assert frame.store_error == "connection refused"
        assert viewer.stats['store_errors'] >= 1

    def test_start_twice_is_harmless(self, make_viewer, memory_store, controller):
        controller.ensure_record()
        viewer, _ = make_viewer()
        viewer.start()
        viewer.start()
        assert memory_store.subscriber_count == 1


class TestLatestCell:

    def test_get_set(self):
        from stage_timer.engine.viewer import LatestCell

        cell = LatestCell()
        assert cell.get() is None
        cell.set(5)
        assert cell.get() == 5
