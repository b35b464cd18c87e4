"""
Error taxonomy for stage-timer.

Every failure the core can surface derives from StageTimerError so callers
can catch the whole family at a transport boundary (HTTP handler, CLI).

    OffsetMeasurementFailure  - reference-time round trip failed or timed out
    RecordNotFound            - shared TimerRecord is absent from the store
    InvalidActionInput        - operator input rejected before any write
    StoreUnavailable          - fetch/update/subscribe could not reach the store
"""

from typing import Optional


class StageTimerError(Exception):
    """Base class for all stage-timer errors."""


class OffsetMeasurementFailure(StageTimerError):
    """Round trip to the reference clock failed or timed out."""

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class RecordNotFound(StageTimerError):
    """The requested TimerRecord does not exist in the store."""

    def __init__(self, record_id: int):
        super().__init__(f"Timer record {record_id} not found")
        self.record_id = record_id


class InvalidActionInput(StageTimerError):
    """Operator input failed validation; nothing was written."""

    def __init__(self, message: str, value: Optional[object] = None):
        super().__init__(message)
        self.value = value


class StoreUnavailable(StageTimerError):
    """The shared store could not be reached or returned garbage."""
