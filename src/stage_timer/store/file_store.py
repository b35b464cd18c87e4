"""
File-backed timer store shared between processes on one host.

Each record lives in its own JSON file, by default under
/dev/shm/stage_timer so that it never touches disk. Writes are atomic
(write to temp, rename) so readers never see a partial record, and the
read-modify-write of an update is serialized across processes with an
advisory flock on a sidecar lock file.

Change notification is by polling: a background thread watches each
subscribed record's mtime and delivers the new record when it changes.

Usage:
    store = JsonFileTimerStore('/dev/shm/stage_timer')
    store.insert_if_absent(TimerRecord.default())
    store.update(1, duration=600)
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from ..interfaces.errors import RecordNotFound, StoreUnavailable
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


class JsonFileTimerStore(TimerStore):
    """Atomic JSON files plus flock, polled for changes."""

    DEFAULT_PATH = "/dev/shm/stage_timer"

    def __init__(self, root: Optional[str] = None, poll_interval: float = 0.2):
        """
        Args:
            root: Directory holding the record files
            poll_interval: Seconds between change checks for subscribers
        """
        self.root = Path(root or self.DEFAULT_PATH)
        self.poll_interval = poll_interval
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create store directory {self.root}: {e}") from e

        self._subscribers: Dict[int, SubscriberSet] = {}
        self._subs_lock = threading.Lock()
        self._seen: Dict[int, Tuple[int, int]] = {}
        self._poll_thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self.write_count = 0

        logger.info(f"JsonFileTimerStore initialized: {self.root}")

    def _record_path(self, record_id: int) -> Path:
        return self.root / f"timer_{record_id}.json"

    @contextmanager
    def _locked(self, record_id: int) -> Iterator[None]:
        lock_path = self.root / f".timer_{record_id}.lock"
        try:
            fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StoreUnavailable(f"Cannot open lock file {lock_path}: {e}") from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _read(self, record_id: int) -> TimerRecord:
        path = self._record_path(record_id)
        try:
            with open(path, 'r') as f:
                json_data = f.read()
        except FileNotFoundError:
            raise RecordNotFound(record_id)
        except OSError as e:
            raise StoreUnavailable(f"Failed to read {path}: {e}") from e

        try:
            return TimerRecord.from_json(json_data)
        except ValueError as e:
            raise StoreUnavailable(f"Corrupt timer record in {path}: {e}") from e

    def _write(self, record: TimerRecord) -> None:
        path = self._record_path(record.id)
        try:
            # Temp file in the same directory so the rename is atomic
            fd, temp_path = tempfile.mkstemp(
                dir=self.root,
                prefix=f'.timer_{record.id}_',
                suffix='.tmp'
            )
            try:
                with os.fdopen(fd, 'w') as f:
                    f.write(record.to_json())
                os.replace(temp_path, path)
            except Exception:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
        except OSError as e:
            raise StoreUnavailable(f"Failed to write {path}: {e}") from e
        self.write_count += 1

    def fetch(self, record_id: int) -> TimerRecord:
        return self._read(record_id)

    def update(self, record_id: int, **fields: Any) -> TimerRecord:
        with self._locked(record_id):
            updated = apply_fields(self._read(record_id), fields)
            self._write(updated)
        logger.debug(f"Record {record_id} updated: {fields}")
        return updated

    def insert_if_absent(self, record: TimerRecord) -> TimerRecord:
        record.validate()
        with self._locked(record.id):
            try:
                return self._read(record.id)
            except RecordNotFound:
                pass
            self._write(record)
        logger.info(f"Created timer record {record.id} in {self.root}")
        return record

    def subscribe(
        self,
        record_id: int,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> Subscription:
        with self._subs_lock:
            subs = self._subscribers.setdefault(record_id, SubscriberSet())
            if record_id not in self._seen:
                self._seen[record_id] = self._stat(record_id)
            if self._poll_thread is None:
                self._stop.clear()
                self._poll_thread = threading.Thread(
                    target=self._poll_loop,
                    name="FileStorePoll",
                    daemon=True
                )
                self._poll_thread.start()
        return subs.add(Subscription(record_id, on_change, on_error, on_close=subs.remove))

    def _stat(self, record_id: int) -> Tuple[int, int]:
        try:
            st = os.stat(self._record_path(record_id))
            return (st.st_mtime_ns, st.st_ino)
        except FileNotFoundError:
            return (0, 0)

    def _poll_loop(self) -> None:
        """Watch subscribed records and fan out changes."""
        logger.debug("File store poll thread started")
        while not self._stop.wait(self.poll_interval):
            with self._subs_lock:
                watched = list(self._subscribers.items())
            for record_id, subs in watched:
                if not len(subs):
                    continue
                try:
                    marker = self._stat(record_id)
                    if marker == self._seen.get(record_id) or marker == (0, 0):
                        continue
                    record = self._read(record_id)
                except RecordNotFound:
                    continue
                except (StoreUnavailable, OSError) as e:
                    error = e if isinstance(e, StoreUnavailable) else StoreUnavailable(str(e))
                    logger.warning(f"File store poll failed for record {record_id}: {error}")
                    subs.fail(error)
                    continue
                self._seen[record_id] = marker
                subs.notify(record)

    @property
    def subscriber_count(self) -> int:
        with self._subs_lock:
            return sum(len(s) for s in self._subscribers.values())

    def close(self) -> None:
        self._stop.set()
        if self._poll_thread:
            self._poll_thread.join(timeout=2.0)
            self._poll_thread = None
        with self._subs_lock:
            subscriber_sets = list(self._subscribers.values())
            self._subscribers.clear()
            self._seen.clear()
        for subs in subscriber_sets:
            subs.clear()
