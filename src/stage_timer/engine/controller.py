"""
Timer Controller - the only writer of the shared TimerRecord.

Applies operator actions as single-record writes:

    start()          stopped/paused -> running   (needs duration > 0)
    pause()          running -> paused           (bakes elapsed into duration)
    reset()          any -> stopped              (duration kept)
    set_duration(m)  any -> same status          (duration = m * 60)

Every write carries all the fields it changes in one store update, so the
record invariants hold after each commit no matter how concurrent writes
interleave; concurrent writes resolve as last-write-wins at the store.

start() while already running is an idempotent no-op. Re-basing
start_time would silently shorten the visible countdown on a double click.
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..interfaces.errors import InvalidActionInput, RecordNotFound
from ..interfaces.timer_record import (
    DEFAULT_DURATION,
    DEFAULT_RECORD_ID,
    TimerRecord,
    TimerStatus,
)
from ..store.base import TimerStore
from ..timing.countdown import elapsed_seconds, remaining_after

logger = logging.getLogger(__name__)

_MINUTES_PATTERN = re.compile(r'^\s*\+?\d+\s*$')


def parse_minutes(value: Any) -> int:
    """
    Validate operator duration input.

    Accepts non-negative integers and strings of digits. Floats are
    accepted only when integral.

    Raises:
        InvalidActionInput: anything else
    """
    if isinstance(value, bool) or value is None:
        raise InvalidActionInput(f"Minutes must be a non-negative integer, got {value!r}", value)
    if isinstance(value, int):
        minutes = value
    elif isinstance(value, float):
        if not value.is_integer():
            raise InvalidActionInput(f"Minutes must be a whole number, got {value!r}", value)
        minutes = int(value)
    elif isinstance(value, str):
        if not _MINUTES_PATTERN.match(value):
            raise InvalidActionInput(f"Minutes must be a non-negative integer, got {value!r}", value)
        minutes = int(value)
    else:
        raise InvalidActionInput(f"Minutes must be a non-negative integer, got {value!r}", value)

    if minutes < 0:
        raise InvalidActionInput(f"Minutes must be >= 0, got {minutes}", value)
    return minutes


@dataclass(frozen=True)
class ActionOutcome:
    """Result of one controller action."""
    record: TimerRecord
    applied: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'applied': self.applied,
            'reason': self.reason,
            'record': self.record.to_dict(),
        }


class TimerController:
    """
    State machine over the shared TimerRecord.

    Args:
        store: Shared store holding the record
        reference_now: Reference clock in epoch ms (server clock, or a
            viewer's offset-corrected clock)
        record_id: Id of the singleton record
        default_duration: Duration of the lazily created record
    """

    def __init__(
        self,
        store: TimerStore,
        reference_now: Callable[[], int],
        record_id: int = DEFAULT_RECORD_ID,
        default_duration: int = DEFAULT_DURATION
    ):
        self.store = store
        self.reference_now = reference_now
        self.record_id = record_id
        self.default_duration = default_duration
        self._lock = threading.Lock()
        self.stats = {
            'start': 0,
            'pause': 0,
            'reset': 0,
            'duration': 0,
            'rejected': 0,
        }

    def ensure_record(self) -> TimerRecord:
        """Fetch the record, creating the default one if it is missing."""
        try:
            return self.store.fetch(self.record_id)
        except RecordNotFound:
            logger.info(f"Timer record {self.record_id} missing, creating default "
                        f"({self.default_duration}s, stopped)")
            return self.store.insert_if_absent(
                TimerRecord.default(self.record_id, self.default_duration)
            )

    def current(self) -> TimerRecord:
        return self.ensure_record()

    def _skip(self, record: TimerRecord, reason: str) -> ActionOutcome:
        self.stats['rejected'] += 1
        logger.info(f"Action ignored: {reason}")
        return ActionOutcome(record=record, applied=False, reason=reason)

    def start(self) -> ActionOutcome:
        with self._lock:
            record = self.ensure_record()
            if record.status == TimerStatus.RUNNING:
                return self._skip(record, "timer already running")
            if record.duration <= 0:
                return self._skip(record, "cannot start with zero duration")

            now = int(self.reference_now())
            updated = self.store.update(self.record_id, status=TimerStatus.RUNNING, start_time=now)
            self.stats['start'] += 1
            logger.info(f"Timer started: {updated.duration}s remaining at {now}")
            return ActionOutcome(record=updated, applied=True)

    def pause(self) -> ActionOutcome:
        with self._lock:
            record = self.ensure_record()
            if record.status != TimerStatus.RUNNING or record.start_time is None:
                return self._skip(record, f"cannot pause while {record.status.value}")

            now = int(self.reference_now())
            elapsed = elapsed_seconds(now, record.start_time)
            remaining = remaining_after(record.duration, elapsed)
            updated = self.store.update(
                self.record_id,
                status=TimerStatus.PAUSED,
                start_time=None,
                duration=remaining
            )
            self.stats['pause'] += 1
            logger.info(f"Timer paused: {elapsed}s elapsed, {remaining}s remaining")
            return ActionOutcome(record=updated, applied=True)

    def reset(self) -> ActionOutcome:
        with self._lock:
            self.ensure_record()
            updated = self.store.update(self.record_id, status=TimerStatus.STOPPED, start_time=None)
            self.stats['reset'] += 1
            logger.info(f"Timer reset: duration kept at {updated.duration}s")
            return ActionOutcome(record=updated, applied=True)

    def set_duration(self, minutes: Any) -> ActionOutcome:
        """
        Set the configured length.

        Does not touch status or start_time: while running this retargets
        the countdown on the fly.

        Raises:
            InvalidActionInput: minutes is not a non-negative integer
        """
        try:
            parsed = parse_minutes(minutes)
        except InvalidActionInput:
            self.stats['rejected'] += 1
            raise
        with self._lock:
            record = self.ensure_record()
            updated = self.store.update(self.record_id, duration=parsed * 60)
            self.stats['duration'] += 1
            if record.status == TimerStatus.RUNNING:
                logger.info(f"Duration retargeted to {parsed}min while running")
            else:
                logger.info(f"Duration set to {parsed}min")
            return ActionOutcome(record=updated, applied=True)

    def apply(self, action: str, minutes: Any = None) -> ActionOutcome:
        """Dispatch an operator action by name."""
        if action == 'start':
            return self.start()
        if action == 'pause':
            return self.pause()
        if action == 'reset':
            return self.reset()
        if action == 'duration':
            return self.set_duration(minutes)
        raise InvalidActionInput(f"Unknown action: {action!r}", action)
