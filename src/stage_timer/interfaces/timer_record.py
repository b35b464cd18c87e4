"""
Timer Record Data Model

The TimerRecord is the one shared record every viewer reads. It is the
contract between the controller, the store backends and the viewers, and
is serialized to JSON for the file store, the HTTP API and the SSE stream.

Records are treated as immutable snapshots: a change always produces a
whole new record, never a partially mutated one.

Contract Version: 1.0.0
"""

from dataclasses import dataclass, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union
import json
import math


DEFAULT_RECORD_ID = 1
DEFAULT_DURATION = 300  # seconds


class TimerStatus(str, Enum):
    """Run state of the shared countdown."""
    STOPPED = "stopped"   # Configured, never started or reset
    PAUSED = "paused"     # Elapsed time baked into duration
    RUNNING = "running"   # Counting down from start_time


def _parse_timestamp_ms(value: Union[int, float, str, None]) -> Optional[int]:
    """Accept epoch milliseconds or an ISO-8601 string."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Timestamp must be finite, got {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601, used for updated_at stamps."""
    return datetime.now(timezone.utc).isoformat()


def ms_to_iso(ms: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string."""
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class TimerRecord:
    """
    Shared countdown configuration and run state.

    duration is the configured length while stopped, the exact remaining
    time while paused, and the remaining time at the moment of the last
    start while running. start_time is a reference-clock instant in epoch
    milliseconds and is set only while running.
    """
    id: int = DEFAULT_RECORD_ID
    duration: int = DEFAULT_DURATION
    start_time: Optional[int] = None
    status: TimerStatus = TimerStatus.STOPPED
    updated_at: Optional[str] = None  # advisory only

    @classmethod
    def default(cls, record_id: int = DEFAULT_RECORD_ID,
                duration: int = DEFAULT_DURATION) -> "TimerRecord":
        """Record created lazily on first access."""
        return cls(id=record_id, duration=duration, start_time=None,
                   status=TimerStatus.STOPPED, updated_at=utc_now_iso())

    @property
    def is_running(self) -> bool:
        return self.status == TimerStatus.RUNNING

    def validate(self) -> "TimerRecord":
        """
        Check record invariants.

        Raises:
            ValueError: if duration is negative or not an integer, or if
                start_time and running status disagree
        """
        if not isinstance(self.status, TimerStatus):
            raise ValueError(f"Unknown status: {self.status!r}")
        if isinstance(self.duration, bool) or not isinstance(self.duration, int):
            raise ValueError(f"duration must be an integer, got {self.duration!r}")
        if self.duration < 0:
            raise ValueError(f"duration must be >= 0, got {self.duration}")
        if self.status == TimerStatus.RUNNING and self.start_time is None:
            raise ValueError("running timer requires start_time")
        if self.status != TimerStatus.RUNNING and self.start_time is not None:
            raise ValueError(f"start_time must be null while {self.status.value}")
        return self

    def with_fields(self, **fields: Any) -> "TimerRecord":
        """Return a new record with the given fields replaced."""
        if 'status' in fields and not isinstance(fields['status'], TimerStatus):
            fields['status'] = TimerStatus(fields['status'])
        if 'start_time' in fields:
            fields['start_time'] = _parse_timestamp_ms(fields['start_time'])
        return replace(self, **fields)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    def to_json(self) -> str:
        """Serialize to JSON for the file store and HTTP API."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimerRecord":
        """Build a record from a dict, tolerating ISO start_time strings."""
        try:
            duration = data.get('duration', DEFAULT_DURATION)
            if isinstance(duration, float) and duration.is_integer():
                duration = int(duration)
            return cls(
                id=int(data.get('id', DEFAULT_RECORD_ID)),
                duration=duration,
                start_time=_parse_timestamp_ms(data.get('start_time')),
                status=TimerStatus(data.get('status', TimerStatus.STOPPED.value)),
                updated_at=data.get('updated_at'),
            )
        except (TypeError, AttributeError, OverflowError) as e:
            raise ValueError(f"Malformed timer record: {e}") from e

    @classmethod
    def from_json(cls, json_str: str) -> "TimerRecord":
        """Deserialize from JSON."""
        return cls.from_dict(json.loads(json_str))


RECORD_FIELDS = ('duration', 'start_time', 'status')
