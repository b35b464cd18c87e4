#!/usr/bin/env python3
"""
Countdown Viewer - one display's local loop.

Three independent activities, each on its own thread, sharing only two
cells (latest record, offset) that are replaced whole, never mutated:

    TICKER   (every ~200 ms): project remaining time from the cached
             record and offset, hand a ViewerFrame to on_tick. No I/O.
    OFFSET   (at start, then every offset_refresh_interval): round trip
             to the reference clock. Failures keep the previous offset.
    CONSUMER (push driven): drain the subscription channel and replace
             the cached record. If nothing arrives for resync_interval,
             fetch directly so a missed push self-corrects.

Store failures never blank the display: the last known countdown keeps
running and the frame carries store_error so the UI can flag it.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from ..interfaces.errors import RecordNotFound, StageTimerError, StoreUnavailable
from ..interfaces.timer_record import DEFAULT_RECORD_ID, TimerRecord, TimerStatus
from ..store.base import Subscription, TimerStore
from ..timing.clock_offset import OffsetTracker
from ..timing.countdown import (
    DEFAULT_TICK_INTERVAL,
    clamp_tick_interval,
    format_time,
    project_remaining,
    urgency,
)
from ..timing.reference_clock import system_now_ms

logger = logging.getLogger(__name__)


class LatestCell:
    """Holds one value; readers always see a whole, consistent value."""

    def __init__(self, value=None):
        self._lock = threading.Lock()
        self._value = value

    def get(self):
        with self._lock:
            return self._value

    def set(self, value) -> None:
        with self._lock:
            self._value = value


@dataclass(frozen=True)
class ViewerFrame:
    """What a display renders on one tick."""
    remaining: int
    text: str
    status: Optional[TimerStatus]
    urgency: str
    offset_ms: int
    synced: bool                   # offset measured at least once
    store_error: Optional[str] = None
    offset_error: Optional[str] = None

    @property
    def has_record(self) -> bool:
        return self.status is not None


class CountdownViewer:
    """
    Passive (or operator) display kept in step with the shared record.

    Usage:
        viewer = CountdownViewer(store, tracker, on_tick=render)
        viewer.start()
        ...
        viewer.stop()   # no on_tick calls after this returns
    """

    _STOP = object()

    def __init__(
        self,
        store: TimerStore,
        offset_tracker: OffsetTracker,
        on_tick: Callable[[ViewerFrame], None],
        record_id: int = DEFAULT_RECORD_ID,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        offset_timeout: Optional[float] = 2.0,
        offset_refresh_interval: float = 60.0,
        resync_interval: float = 30.0,
        local_now: Optional[Callable[[], int]] = None,
        on_record: Optional[Callable[[TimerRecord], None]] = None
    ):
        self.store = store
        self.offset_tracker = offset_tracker
        self.on_tick = on_tick
        self.on_record = on_record
        self.record_id = record_id
        self.tick_interval = clamp_tick_interval(tick_interval)
        self.offset_timeout = offset_timeout
        self.offset_refresh_interval = offset_refresh_interval
        self.resync_interval = resync_interval
        self.local_now = local_now or system_now_ms

        self.record = LatestCell()
        self.store_error = LatestCell()
        self._channel: "queue.Queue" = queue.Queue()
        self._subscription: Optional[Subscription] = None

        self.running = False
        self._stop_event = threading.Event()
        self.ticker_thread: Optional[threading.Thread] = None
        self.offset_thread: Optional[threading.Thread] = None
        self.consumer_thread: Optional[threading.Thread] = None

        self.stats = {
            'ticks': 0,
            'records_received': 0,
            'resyncs': 0,
            'store_errors': 0,
        }

    # =========================================================================
    # Pure frame computation
    # =========================================================================

    def frame(self) -> ViewerFrame:
        """Project the current frame from cached state."""
        record = self.record.get()
        offset = self.offset_tracker.offset_ms
        offset_error = self.offset_tracker.last_error
        store_error = self.store_error.get()

        if record is None:
            remaining, status = 0, None
        else:
            remaining = project_remaining(record, offset, self.local_now)
            status = record.status

        return ViewerFrame(
            remaining=remaining,
            text=format_time(remaining),
            status=status,
            urgency=urgency(remaining) if record is not None else 'normal',
            offset_ms=offset,
            synced=self.offset_tracker.has_estimate,
            store_error=str(store_error) if store_error else None,
            offset_error=str(offset_error) if offset_error else None,
        )

    def accept(self, record: TimerRecord) -> None:
        """Replace the cached record with a newer snapshot."""
        if record.id != self.record_id:
            return
        self.record.set(record)
        self.store_error.set(None)
        self.stats['records_received'] += 1
        if self.on_record:
            self.on_record(record)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        if self.running:
            logger.warning("Viewer already running")
            return

        logger.info(f"Starting viewer for record {self.record_id} "
                    f"(tick={self.tick_interval:.2f}s)")
        self.running = True
        self._stop_event.clear()

        try:
            self._subscription = self.store.subscribe(
                self.record_id,
                on_change=self._channel.put,
                on_error=self._on_store_error
            )
        except StageTimerError as e:
            logger.warning(f"Subscribe failed, relying on resync fetches: {e}")
            self._on_store_error(e)

        self.ticker_thread = threading.Thread(target=self._ticker_loop, name="ViewerTicker", daemon=True)
        self.offset_thread = threading.Thread(target=self._offset_loop, name="ViewerOffset", daemon=True)
        self.consumer_thread = threading.Thread(target=self._consumer_loop, name="ViewerConsumer", daemon=True)

        self.consumer_thread.start()
        self.offset_thread.start()
        self.ticker_thread.start()

    def stop(self) -> None:
        """Unsubscribe and stop all activities; no callbacks fire afterwards."""
        if not self.running:
            return
        logger.info("Stopping viewer...")
        self.running = False
        self._stop_event.set()

        if self._subscription:
            self._subscription.unsubscribe()
            self._subscription = None
        self._channel.put(self._STOP)

        current = threading.current_thread()
        for thread in (self.ticker_thread, self.consumer_thread, self.offset_thread):
            if thread and thread is not current:
                thread.join(timeout=5.0)

        logger.info(f"Viewer stopped: {self.stats['ticks']} ticks, "
                    f"{self.stats['records_received']} records")

    # =========================================================================
    # Activities
    # =========================================================================

    def _ticker_loop(self) -> None:
        while not self._stop_event.is_set():
            frame = self.frame()
            if self._stop_event.is_set():
                break
            self.stats['ticks'] += 1
            try:
                self.on_tick(frame)
            except Exception:
                logger.exception("on_tick callback failed")
            self._stop_event.wait(self.tick_interval)

    def _offset_loop(self) -> None:
        self.offset_tracker.refresh(self.offset_timeout)
        if self.offset_refresh_interval <= 0:
            return
        while not self._stop_event.wait(self.offset_refresh_interval):
            self.offset_tracker.refresh(self.offset_timeout)

    def _consumer_loop(self) -> None:
        self._resync()
        while not self._stop_event.is_set():
            try:
                item = self._channel.get(timeout=self.resync_interval)
            except queue.Empty:
                self._resync()
                continue
            if item is self._STOP:
                break
            self.accept(item)

    def _resync(self) -> None:
        """Direct fetch; the latest-seen record wins regardless of source."""
        if self._stop_event.is_set():
            return
        try:
            record = self.store.fetch(self.record_id)
        except RecordNotFound:
            logger.debug(f"Record {self.record_id} not created yet")
            return
        except StoreUnavailable as e:
            self._on_store_error(e)
            return
        self.stats['resyncs'] += 1
        self.accept(record)

    def _on_store_error(self, error: StageTimerError) -> None:
        self.stats['store_errors'] += 1
        self.store_error.set(error)
        logger.warning(f"Store unavailable, keeping last known countdown: {error}")
