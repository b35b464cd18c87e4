"""Shared data contracts: the timer record and the error taxonomy."""

from .errors import (
    StageTimerError,
    OffsetMeasurementFailure,
    RecordNotFound,
    InvalidActionInput,
    StoreUnavailable,
)
from .timer_record import TimerRecord, TimerStatus, DEFAULT_RECORD_ID, DEFAULT_DURATION

__all__ = [
    'StageTimerError',
    'OffsetMeasurementFailure',
    'RecordNotFound',
    'InvalidActionInput',
    'StoreUnavailable',
    'TimerRecord',
    'TimerStatus',
    'DEFAULT_RECORD_ID',
    'DEFAULT_DURATION',
]
