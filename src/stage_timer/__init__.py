"""
stage-timer: Shared Stage Countdown

Keeps one countdown consistent across an operator console and any number
of passive displays, each running on its own clock and receiving changes
over an unreliable network.

Architecture:
    operator action -> TimerController -> TimerStore -> change stream
                                                          -> every viewer

Each viewer derives remaining time itself from:
    1. The shared TimerRecord (rarely changes)
    2. Its own offset to the reference clock (round-trip probe)
    3. Its own local clock, sampled every ~200 ms

so no single viewer's drift or latency leaks into what the others show.

Version: 1.0.0
"""

__version__ = "1.0.0"

from .interfaces.timer_record import TimerRecord, TimerStatus
from .interfaces.errors import (
    StageTimerError,
    OffsetMeasurementFailure,
    RecordNotFound,
    InvalidActionInput,
    StoreUnavailable,
)
from .timing.countdown import project_remaining
from .timing.clock_offset import ClockOffsetEstimator, OffsetTracker
from .engine.controller import TimerController

__all__ = [
    "TimerRecord",
    "TimerStatus",
    "StageTimerError",
    "OffsetMeasurementFailure",
    "RecordNotFound",
    "InvalidActionInput",
    "StoreUnavailable",
    "project_remaining",
    "ClockOffsetEstimator",
    "OffsetTracker",
    "TimerController",
    "__version__",
]
