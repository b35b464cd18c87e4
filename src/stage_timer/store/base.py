"""
Shared store contract.

The core needs four things from whatever holds the TimerRecord:

    fetch(record_id)                 -> TimerRecord
    update(record_id, **fields)      -> TimerRecord   (all fields or none)
    insert_if_absent(record)         -> TimerRecord
    subscribe(record_id, on_change)  -> Subscription

Backends differ in reach (one process, one host, over HTTP) but share the
same atomicity rule: a single update applies all of its fields together,
and concurrent updates resolve as last-write-wins.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..interfaces.errors import InvalidActionInput, StageTimerError
from ..interfaces.timer_record import TimerRecord, RECORD_FIELDS, utc_now_iso

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[TimerRecord], None]
ErrorCallback = Callable[[StageTimerError], None]


class Subscription:
    """
    Handle for one change-notification registration.

    Once unsubscribe() returns, on_change will not be called again. A
    callback may unsubscribe from inside itself.
    """

    def __init__(
        self,
        record_id: int,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
        on_close: Optional[Callable[["Subscription"], None]] = None
    ):
        self.record_id = record_id
        self._on_change = on_change
        self._on_error = on_error
        self._on_close = on_close
        self._lock = threading.RLock()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, record: TimerRecord) -> None:
        with self._lock:
            if not self._active or record.id != self.record_id:
                return
            try:
                self._on_change(record)
            except Exception:
                logger.exception(f"Subscriber callback failed for record {record.id}")

    def fail(self, error: StageTimerError) -> None:
        with self._lock:
            if not self._active or self._on_error is None:
                return
            try:
                self._on_error(error)
            except Exception:
                logger.exception("Subscriber error callback failed")

    def unsubscribe(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        if self._on_close:
            self._on_close(self)


class SubscriberSet:
    """Thread-safe fan-out list used by the local backends."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subs: List[Subscription] = []

    def add(self, sub: Subscription) -> Subscription:
        with self._lock:
            self._subs.append(sub)
        return sub

    def remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def snapshot(self) -> List[Subscription]:
        with self._lock:
            return list(self._subs)

    def notify(self, record: TimerRecord) -> None:
        for sub in self.snapshot():
            sub.deliver(record)

    def fail(self, error: StageTimerError) -> None:
        for sub in self.snapshot():
            sub.fail(error)

    def clear(self) -> None:
        for sub in self.snapshot():
            sub.unsubscribe()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)


def apply_fields(current: TimerRecord, fields: Dict[str, Any]) -> TimerRecord:
    """
    Build the record an update would commit.

    Raises:
        InvalidActionInput: unknown field names, or a result that breaks
            the record invariants; nothing is written in either case
    """
    unknown = set(fields) - set(RECORD_FIELDS)
    if unknown:
        raise InvalidActionInput(f"Unknown timer fields: {', '.join(sorted(unknown))}")
    try:
        updated = current.with_fields(updated_at=utc_now_iso(), **fields)
        return updated.validate()
    except (ValueError, TypeError) as e:
        raise InvalidActionInput(f"Rejected update: {e}", value=fields) from e


class TimerStore(ABC):
    """Abstract shared store for timer records."""

    @abstractmethod
    def fetch(self, record_id: int) -> TimerRecord:
        """
        Raises:
            RecordNotFound: no record with this id
            StoreUnavailable: store could not be reached
        """

    @abstractmethod
    def update(self, record_id: int, **fields: Any) -> TimerRecord:
        """
        Apply a partial update atomically and notify subscribers.

        Raises:
            RecordNotFound: no record with this id
            InvalidActionInput: fields rejected
            StoreUnavailable: store could not be reached
        """

    @abstractmethod
    def insert_if_absent(self, record: TimerRecord) -> TimerRecord:
        """Insert record unless one with the same id exists; return the stored one."""

    @abstractmethod
    def subscribe(
        self,
        record_id: int,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> Subscription:
        """Register for change notifications on one record."""

    @property
    def subscriber_count(self) -> int:
        return 0

    def close(self) -> None:
        """Release resources held by the store."""
