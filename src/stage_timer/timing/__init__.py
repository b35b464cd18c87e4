"""
Clock alignment and countdown math for stage-timer.

Reference clock access, per-viewer offset estimation, and the pure
countdown projection every viewer runs on its own tick.
"""

from .reference_clock import ReferenceClock, HttpReferenceClient, system_now_ms
from .clock_offset import ClockOffsetEstimator, OffsetTracker, OffsetSample, compute_offset
from .countdown import project_remaining, format_time, urgency, DEFAULT_TICK_INTERVAL

__all__ = [
    'ReferenceClock',
    'HttpReferenceClient',
    'system_now_ms',
    'ClockOffsetEstimator',
    'OffsetTracker',
    'OffsetSample',
    'compute_offset',
    'project_remaining',
    'format_time',
    'urgency',
    'DEFAULT_TICK_INTERVAL',
]
