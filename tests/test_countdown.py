"""
Unit tests for the countdown projection.

The projection is pure, so every test pins the local clock and offset.
"""

import pytest


T = 1_700_000_000_000


class TestProjectRemaining:
    """remaining = max(0, duration - floor(elapsed))"""

    def test_not_running_returns_duration(self):
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus
        from stage_timer.timing.countdown import project_remaining

        for status in (TimerStatus.STOPPED, TimerStatus.PAUSED):
            record = TimerRecord(duration=75, status=status)
            assert project_remaining(record, 5000, lambda: T) == 75

    def test_running_scenario_120s(self):
        """Start at T, 65 s later 55 remain; after 130 s it is 0, not negative."""
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus
        from stage_timer.timing.countdown import project_remaining

        record = TimerRecord(duration=120, status=TimerStatus.RUNNING, start_time=T)
        assert project_remaining(record, 0, lambda: T + 65000) == 55
        assert project_remaining(record, 0, lambda: T + 130000) == 0

    def test_offset_is_applied_to_local_clock(self):
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus
        from stage_timer.timing.countdown import project_remaining

        record = TimerRecord(duration=120, status=TimerStatus.RUNNING, start_time=T)
        # Local clock runs 10 s behind the reference; offset corrects it
        local = T + 65000 - 10000
        assert project_remaining(record, 10000, lambda: local) == 55

    def test_two_viewers_with_different_drift_agree(self):
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus
        from stage_timer.timing.countdown import project_remaining

        record = TimerRecord(duration=300, status=TimerStatus.RUNNING, start_time=T)
        reference_now = T + 42_300
        fast_viewer = project_remaining(record, -7000, lambda: reference_now + 7000)
        slow_viewer = project_remaining(record, 2500, lambda: reference_now - 2500)
        assert fast_viewer == slow_viewer == 258

    def test_elapsed_is_floored(self):
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus
        from stage_timer.timing.countdown import project_remaining

        record = TimerRecord(duration=10, status=TimerStatus.RUNNING, start_time=T)
        assert project_remaining(record, 0, lambda: T + 999) == 10
        assert project_remaining(record, 0, lambda: T + 1000) == 9

    def test_start_in_future_does_not_add_time(self):
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus
        from stage_timer.timing.countdown import project_remaining

        record = TimerRecord(duration=30, status=TimerStatus.RUNNING, start_time=T)
        assert project_remaining(record, 0, lambda: T - 1500) == 30

    def test_deterministic(self):
        from stage_timer.interfaces.timer_record import TimerRecord, TimerStatus
        from stage_timer.timing.countdown import project_remaining

        record = TimerRecord(duration=500, status=TimerStatus.RUNNING, start_time=T)
        results = {project_remaining(record, 123, lambda: T + 77_777) for _ in range(50)}
        assert results == {423}

    def test_monotonic_and_floored_at_zero(self):
        from stage_timer.timing.countdown import remaining_after

        for duration in (0, 1, 59, 300):
            values = [remaining_after(duration, elapsed) for elapsed in range(0, 400)]
            assert all(v >= 0 for v in values)
            assert all(a >= b for a, b in zip(values, values[1:]))
            assert values[-1] == 0


class TestFormatting:
    """Display helpers."""

    @pytest.mark.parametrize("seconds,expected", [
        (0, "00:00"),
        (5, "00:05"),
        (65, "01:05"),
        (300, "05:00"),
        (3600, "60:00"),
        (-12, "00:00"),
    ])
    def test_format_time(self, seconds, expected):
        from stage_timer.timing.countdown import format_time
        assert format_time(seconds) == expected

    @pytest.mark.parametrize("remaining,level", [
        (0, 'expired'),
        (1, 'critical'),
        (10, 'critical'),
        (11, 'warning'),
        (60, 'warning'),
        (61, 'normal'),
    ])
    def test_urgency(self, remaining, level):
        from stage_timer.timing.countdown import urgency
        assert urgency(remaining) == level

    def test_tick_interval_clamped(self):
        from stage_timer.timing.countdown import clamp_tick_interval

        assert clamp_tick_interval(0.01) == 0.1
        assert clamp_tick_interval(0.2) == 0.2
        assert clamp_tick_interval(5) == 1.0
