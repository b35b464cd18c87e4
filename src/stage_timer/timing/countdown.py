"""
Countdown projection.

Pure functions turning a TimerRecord, a clock offset and the viewer's
local clock into the displayed remaining time. Nothing here does I/O, so
a viewer can call it on every tick.
"""

from typing import Callable

from ..interfaces.timer_record import TimerRecord, TimerStatus

DEFAULT_TICK_INTERVAL = 0.2  # seconds
MIN_TICK_INTERVAL = 0.1
MAX_TICK_INTERVAL = 1.0

WARNING_THRESHOLD = 60   # seconds
CRITICAL_THRESHOLD = 10  # seconds


def remaining_after(duration: int, elapsed: int) -> int:
    """max(0, duration - elapsed)"""
    return max(0, duration - elapsed)


def elapsed_seconds(reference_now_ms: int, start_time_ms: int) -> int:
    """Whole seconds since start, floored; a start in the future counts as 0."""
    return max(0, (reference_now_ms - start_time_ms) // 1000)


def project_remaining(
    record: TimerRecord,
    offset_ms: int,
    local_now_fn: Callable[[], int]
) -> int:
    """
    Remaining whole seconds as seen by one viewer.

    Args:
        record: Latest known timer record
        offset_ms: Viewer's reference-minus-local clock offset
        local_now_fn: Viewer's local clock in epoch ms

    Returns:
        Remaining seconds, never negative
    """
    if record.status != TimerStatus.RUNNING or record.start_time is None:
        return max(0, record.duration)

    reference_now = int(local_now_fn()) + int(offset_ms)
    return remaining_after(record.duration, elapsed_seconds(reference_now, record.start_time))


def format_time(seconds: int) -> str:
    """MM:SS; minutes keep counting past 59."""
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    return f"{minutes:02d}:{secs:02d}"


def urgency(remaining: int) -> str:
    """Display urgency level for a remaining-seconds value."""
    if remaining <= 0:
        return 'expired'
    if remaining <= CRITICAL_THRESHOLD:
        return 'critical'
    if remaining <= WARNING_THRESHOLD:
        return 'warning'
    return 'normal'


def clamp_tick_interval(interval: float) -> float:
    return min(MAX_TICK_INTERVAL, max(MIN_TICK_INTERVAL, float(interval)))
