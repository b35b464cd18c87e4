"""
In-process timer store.

Backs the web server by default. All mutations and the fan-out that
follows them happen under one re-entrant lock, so subscribers always see
changes in commit order. Subscriber callbacks must therefore be quick
(the viewer's callback only enqueues the snapshot).
"""

import logging
import threading
from typing import Any, Dict, Optional

from ..interfaces.errors import RecordNotFound
from ..interfaces.timer_record import TimerRecord
from .base import (
    ChangeCallback,
    ErrorCallback,
    Subscription,
    SubscriberSet,
    TimerStore,
    apply_fields,
)

logger = logging.getLogger(__name__)


class InMemoryTimerStore(TimerStore):
    """Dict-backed store guarded by a lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[int, TimerRecord] = {}
        self._subscribers: Dict[int, SubscriberSet] = {}
        self.stats = {'updates': 0, 'inserts': 0}

    def fetch(self, record_id: int) -> TimerRecord:
        with self._lock:
            record = self._records.get(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def update(self, record_id: int, **fields: Any) -> TimerRecord:
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise RecordNotFound(record_id)
            updated = apply_fields(current, fields)
            self._records[record_id] = updated
            self.stats['updates'] += 1
            self._notify(updated)
        logger.debug(f"Record {record_id} updated: {fields}")
        return updated

    def insert_if_absent(self, record: TimerRecord) -> TimerRecord:
        record.validate()
        with self._lock:
            existing = self._records.get(record.id)
            if existing is not None:
                return existing
            self._records[record.id] = record
            self.stats['inserts'] += 1
            self._notify(record)
        logger.info(f"Created timer record {record.id} (duration={record.duration}s)")
        return record

    def subscribe(
        self,
        record_id: int,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> Subscription:
        with self._lock:
            subs = self._subscribers.setdefault(record_id, SubscriberSet())
        return subs.add(Subscription(record_id, on_change, on_error, on_close=subs.remove))

    def _notify(self, record: TimerRecord) -> None:
        subs = self._subscribers.get(record.id)
        if subs:
            subs.notify(record)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return sum(len(s) for s in self._subscribers.values())

    def close(self) -> None:
        with self._lock:
            subscriber_sets = list(self._subscribers.values())
            self._subscribers.clear()
        for subs in subscriber_sets:
            subs.clear()
