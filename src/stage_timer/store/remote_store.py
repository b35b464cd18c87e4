"""
HTTP client for a stage-timer server.

Lets a viewer or operator in another process use the server's store as if
it were local:

    GET   /api/timer?id=N     -> fetch
    PATCH /api/timer?id=N     -> update (partial fields)
    PUT   /api/timer          -> insert-if-absent
    GET   /events?id=N        -> Server-Sent Events stream of records

Subscriptions run one reader thread each. When the stream drops, the
reader reports StoreUnavailable to on_error and reconnects with back-off;
the first event of every (re)connect is the current record, so missed
changes are recovered on reconnect.
"""

import json
import logging
import threading
import urllib.error
import urllib.request
from typing import Any, Dict, Optional

from ..interfaces.errors import (
    InvalidActionInput,
    RecordNotFound,
    StageTimerError,
    StoreUnavailable,
)
from ..interfaces.timer_record import TimerRecord
from .base import ChangeCallback, ErrorCallback, Subscription, TimerStore

logger = logging.getLogger(__name__)


class RemoteTimerStore(TimerStore):
    """TimerStore over the stage-timer HTTP API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        stream_timeout: float = 45.0,
        max_backoff: float = 10.0
    ):
        """
        Args:
            base_url: Server root, e.g. http://stage-host:8090
            timeout: Per-request timeout in seconds
            stream_timeout: Read timeout on the event stream; must exceed
                the server's keepalive interval
            max_backoff: Cap on reconnect delay in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        self.max_backoff = max_backoff
        self._readers: Dict[Subscription, "_EventStreamReader"] = {}
        self._lock = threading.Lock()

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = json.dumps(body).encode() if body is not None else None
        req = urllib.request.Request(self.base_url + path, data=data, method=method)
        if data is not None:
            req.add_header('Content-Type', 'application/json')
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return json.loads(response.read())
        except urllib.error.HTTPError as e:
            message = _error_message(e)
            if e.code == 404:
                raise RecordNotFound(_record_id_from(path)) from e
            if e.code == 400:
                raise InvalidActionInput(message) from e
            raise StoreUnavailable(f"{method} {path} failed ({e.code}): {message}") from e
        except (urllib.error.URLError, OSError) as e:
            raise StoreUnavailable(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise StoreUnavailable(f"{method} {path} returned invalid JSON: {e}") from e

    def fetch(self, record_id: int) -> TimerRecord:
        return _parse_record(self._request('GET', f'/api/timer?id={record_id}'))

    def update(self, record_id: int, **fields: Any) -> TimerRecord:
        return _parse_record(self._request('PATCH', f'/api/timer?id={record_id}', fields))

    def insert_if_absent(self, record: TimerRecord) -> TimerRecord:
        return _parse_record(self._request('PUT', f'/api/timer?id={record.id}', record.to_dict()))

    def request_action(self, action: str, minutes: Any = None, record_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Issue an operator action (start, pause, reset, duration).

        Returns:
            Server response with 'applied', 'reason' and 'record'
        """
        path = f'/api/timer/{action}'
        if record_id is not None:
            path += f'?id={record_id}'
        body = {'minutes': minutes} if action == 'duration' else {}
        return self._request('POST', path, body)

    def subscribe(
        self,
        record_id: int,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> Subscription:
        sub = Subscription(record_id, on_change, on_error, on_close=self._close_reader)
        reader = _EventStreamReader(self, sub)
        with self._lock:
            self._readers[sub] = reader
        reader.start()
        return sub

    def _close_reader(self, sub: Subscription) -> None:
        with self._lock:
            reader = self._readers.pop(sub, None)
        if reader:
            reader.stop()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._readers)

    def close(self) -> None:
        with self._lock:
            subs = list(self._readers)
        for sub in subs:
            sub.unsubscribe()


class _EventStreamReader:
    """Background reader for one /events subscription."""

    def __init__(self, store: RemoteTimerStore, sub: Subscription):
        self.store = store
        self.sub = sub
        self.url = f"{store.base_url}/events?id={sub.record_id}"
        self._stop = threading.Event()
        self._response = None
        self._thread = threading.Thread(target=self._run, name=f"EventStream-{sub.record_id}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        response = self._response
        if response is not None:
            try:
                response.close()
            except OSError as e:
                logger.debug(f"Error closing event stream: {e}")
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=1.0)

    def _run(self) -> None:
        backoff = 0.5
        while not self._stop.is_set():
            try:
                self._consume()
                backoff = 0.5
                if self._stop.is_set():
                    break
                error: StageTimerError = StoreUnavailable("Event stream closed by server")
            except StoreUnavailable as e:
                error = e
            except Exception as e:
                if self._stop.is_set():
                    break
                error = StoreUnavailable(f"Event stream failed: {e}")

            logger.warning(f"{error}; reconnecting in {backoff:.1f}s")
            self.sub.fail(error)
            if self._stop.wait(backoff):
                break
            backoff = min(self.store.max_backoff, backoff * 2)
        logger.debug(f"Event stream reader for {self.url} stopped")

    def _consume(self) -> None:
        try:
            self._response = urllib.request.urlopen(self.url, timeout=self.store.stream_timeout)
        except urllib.error.HTTPError as e:
            raise StoreUnavailable(f"Event stream refused ({e.code})") from e
        except (urllib.error.URLError, OSError) as e:
            raise StoreUnavailable(f"Event stream connect failed: {e}") from e

        logger.info(f"Subscribed to {self.url}")
        data_lines = []
        try:
            for raw in self._response:
                if self._stop.is_set():
                    return
                line = raw.decode('utf-8').rstrip('\r\n')
                if line.startswith('data:'):
                    data_lines.append(line[5:].lstrip())
                elif line == '' and data_lines:
                    payload = '\n'.join(data_lines)
                    data_lines = []
                    self._dispatch(payload)
                # ':' comment lines are keepalives
        finally:
            response, self._response = self._response, None
            if response is not None:
                response.close()

    def _dispatch(self, payload: str) -> None:
        try:
            record = TimerRecord.from_json(payload).validate()
        except ValueError as e:
            logger.warning(f"Ignoring malformed event: {e}")
            return
        self.sub.deliver(record)


def _parse_record(data: Dict[str, Any]) -> TimerRecord:
    try:
        return TimerRecord.from_dict(data).validate()
    except ValueError as e:
        raise StoreUnavailable(f"Server returned invalid record: {e}") from e


def _error_message(error: urllib.error.HTTPError) -> str:
    try:
        return json.loads(error.read()).get('error', error.reason)
    except (ValueError, AttributeError, OSError):
        return str(error.reason)


def _record_id_from(path: str) -> int:
    if 'id=' in path:
        try:
            return int(path.split('id=')[1].split('&')[0])
        except ValueError:
            pass
    return 0
