"""
Unit tests for TimerController actions.
"""

import threading

import pytest


class TestLazyCreation:
    """The record is created on first use."""

    def test_ensure_record_creates_default(self, controller, memory_store):
        from stage_timer.interfaces.errors import RecordNotFound
        from stage_timer.interfaces.timer_record import TimerStatus

        with pytest.raises(RecordNotFound):
            memory_store.fetch(1)
        record = controller.ensure_record()
        assert record.duration == 300
        assert record.status == TimerStatus.STOPPED
        assert memory_store.fetch(1) == record

    def test_ensure_record_keeps_existing(self, controller, memory_store):
        from stage_timer.interfaces.timer_record import TimerRecord

        memory_store.insert_if_absent(TimerRecord(duration=42))
        assert controller.ensure_record().duration == 42


class TestStart:
    """stopped/paused -> running"""

    def test_start_stamps_reference_time(self, controller, reference_clock):
        from stage_timer.interfaces.timer_record import TimerStatus

        outcome = controller.start()
        assert outcome.applied
        assert outcome.record.status == TimerStatus.RUNNING
        assert outcome.record.start_time == reference_clock()
        assert outcome.record.duration == 300

    def test_started_countdown_projects_from_start_time(self, controller, reference_clock):
        from stage_timer.timing.countdown import project_remaining

        T = reference_clock()
        controller.set_duration(2)
        record = controller.start().record
        assert project_remaining(record, 0, lambda: T + 65_000) == 55
        assert project_remaining(record, 0, lambda: T + 130_000) == 0

    def test_start_while_running_is_noop(self, controller, reference_clock):
        first = controller.start()
        reference_clock.advance(5000)
        second = controller.start()
        assert not second.applied
        assert second.reason
        assert second.record.start_time == first.record.start_time

    def test_start_with_zero_duration_is_noop(self, controller):
        from stage_timer.interfaces.timer_record import TimerStatus

        controller.set_duration(0)
        outcome = controller.start()
        assert not outcome.applied
        assert outcome.record.status == TimerStatus.STOPPED


class TestPause:
    """running -> paused with elapsed baked into duration"""

    def test_pause_bakes_remaining(self, controller, memory_store, reference_clock):
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus

        T = reference_clock()
        memory_store.insert_if_absent(TimerRecord(duration=100, status=TimerStatus.RUNNING, start_time=T))
        reference_clock.advance(30_000)
        outcome = controller.pause()
        assert outcome.applied
        assert outcome.record.duration == 70
        assert outcome.record.start_time is None
        assert outcome.record.status == TimerStatus.PAUSED

    def test_pause_past_expiry_floors_at_zero(self, controller, memory_store, reference_clock):
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus

        T = reference_clock()
        memory_store.insert_if_absent(TimerRecord(duration=10, status=TimerStatus.RUNNING, start_time=T))
        reference_clock.advance(25_000)
        assert controller.pause().record.duration == 0

    def test_pause_when_not_running_is_noop(self, controller):
        from stage_timer.interfaces.timer_record import TimerStatus

        outcome = controller.pause()
        assert not outcome.applied
        assert outcome.record.status == TimerStatus.STOPPED
        assert outcome.record.duration == 300

    def test_pause_then_start_preserves_trajectory(self, controller, reference_clock):
        from stage_timer.timing.countdown import project_remaining

        controller.set_duration(2)
        controller.start()
        reference_clock.advance(50_000)
        paused = controller.pause().record
        assert paused.duration == 70

        # Time passing while paused does not count
        reference_clock.advance(600_000)
        assert project_remaining(paused, 0, reference_clock) == 70

        resumed = controller.start().record
        reference_clock.advance(20_000)
        assert project_remaining(resumed, 0, reference_clock) == 50


class TestReset:
    """any -> stopped, duration kept"""

    def test_reset_keeps_duration(self, controller, reference_clock):
        from stage_timer.interfaces.timer_record import TimerStatus

        controller.set_duration(3)
        controller.start()
        reference_clock.advance(10_000)
        outcome = controller.reset()
        assert outcome.applied
        assert outcome.record.status == TimerStatus.STOPPED
        assert outcome.record.start_time is None
        assert outcome.record.duration == 180

    def test_reset_after_pause_keeps_baked_duration(self, controller, reference_clock):
        controller.start()
        reference_clock.advance(100_000)
        controller.pause()
        assert controller.reset().record.duration == 200


class TestSetDuration:
    """duration = minutes * 60"""

    def test_set_duration_idempotent(self, controller):
        assert controller.set_duration(5).record.duration == 300
        assert controller.set_duration(5).record.duration == 300

    def test_set_duration_accepts_digit_string(self, controller):
        assert controller.set_duration("7").record.duration == 420

    def test_set_duration_leaves_status(self, controller):
        from stage_timer.interfaces.timer_record import TimerStatus

        started = controller.start().record
        updated = controller.set_duration(10).record
        assert updated.status == TimerStatus.RUNNING
        assert updated.start_time == started.start_time
        assert updated.duration == 600

    @pytest.mark.parametrize("value", ["abc", "", "-3", "2.5", 1.5, -1, None, True, [5]])
    def test_invalid_minutes_rejected_without_write(self, controller, memory_store, value):
        from stage_timer.interfaces.errors import InvalidActionInput

        before = controller.ensure_record()
        with pytest.raises(InvalidActionInput):
            controller.set_duration(value)
        assert memory_store.fetch(1) == before
        assert controller.stats['rejected'] == 1

    def test_concurrent_set_duration_last_write_wins(self, controller, memory_store):
        controller.ensure_record()
        barrier = threading.Barrier(2)

        def worker(minutes):
            barrier.wait()
            controller.set_duration(minutes)

        threads = [threading.Thread(target=worker, args=(m,)) for m in (3, 7)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5.0)

        assert memory_store.fetch(1).duration in (180, 420)


class TestSharedFileStoreRaces:
    """Two controllers, each with its own file store on one directory."""

    @pytest.fixture
    def controllers(self, tmp_path, fake_clock_cls):
        from stage_timer.engine.controller import TimerController
        from stage_timer.store.file_store import JsonFileTimerStore

        root = str(tmp_path / 'shared')
        clock = fake_clock_cls()
        stores = [JsonFileTimerStore(root), JsonFileTimerStore(root)]
        pair = [TimerController(store, reference_now=clock) for store in stores]
        pair[0].ensure_record()
        yield pair, stores[0], clock
        for store in stores:
            store.close()

    @staticmethod
    def _race(first, second):
        barrier = threading.Barrier(2)
        errors = []

        def run(action):
            barrier.wait()
            try:
                action()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(a,)) for a in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5.0)
        assert errors == []

    def test_set_duration_last_write_wins(self, controllers):
        (a, b), store, _ = controllers
        for _ in range(20):
            self._race(lambda: a.set_duration(3), lambda: b.set_duration(7))
            record = store.fetch(1)
            assert record.duration in (180, 420)
            record.validate()

    def test_start_against_pause_keeps_record_valid(self, controllers):
        from stage_timer.interfaces.timer_record import TimerStatus

        (a, b), store, clock = controllers
        for _ in range(20):
            a.reset()
            a.set_duration(2)
            b.start()
            clock.advance(1500)
            self._race(a.reset, b.pause)
            store.fetch(1).validate()

            self._race(a.start, b.pause)
            record = store.fetch(1).validate()
            assert record.status in (TimerStatus.RUNNING, TimerStatus.PAUSED, TimerStatus.STOPPED)
            assert (record.start_time is not None) == (record.status == TimerStatus.RUNNING)


class TestParseMinutes:
    """Operator input validation."""

    @pytest.mark.parametrize("value,expected", [
        (0, 0),
        (5, 5),
        ("10", 10),
        (" 3 ", 3),
        ("+4", 4),
        (2.0, 2),
    ])
    def test_accepts(self, value, expected):
        from stage_timer.engine.controller import parse_minutes
        assert parse_minutes(value) == expected

    @pytest.mark.parametrize("value", ["x", "1e3", "5m", -2, 0.5, False, {}])
    def test_rejects(self, value):
        from stage_timer.engine.controller import parse_minutes
        from stage_timer.interfaces.errors import InvalidActionInput

        with pytest.raises(InvalidActionInput):
            parse_minutes(value)


class TestApply:
    """Dispatch by action name."""

    def test_dispatch(self, controller):
        from stage_timer.interfaces.timer_record import TimerStatus

        assert controller.apply('duration', 1).record.duration == 60
        assert controller.apply('start').record.status == TimerStatus.RUNNING
        assert controller.apply('pause').record.status == TimerStatus.PAUSED
        assert controller.apply('reset').record.status == TimerStatus.STOPPED

    def test_unknown_action(self, controller):
        from stage_timer.interfaces.errors import InvalidActionInput

        with pytest.raises(InvalidActionInput):
            controller.apply('rewind')

    def test_outcome_to_dict(self, controller):
        data = controller.start().to_dict()
        assert data['applied'] is True
        assert data['reason'] is None
        assert data['record']['status'] == 'running'
