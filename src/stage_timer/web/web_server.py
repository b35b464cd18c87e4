"""
Web Server for stage-timer.

Provides HTTP endpoints for:
- Reference time (the clock every viewer aligns to)
- The shared timer record and its store primitives
- Operator actions routed through the TimerController
- Server-Sent Events carrying every record change
- Health, status and Prometheus metrics

Endpoints:
    GET   /health              - Basic health check (200 OK if running)
    GET   /status              - JSON record, projected remaining, counters
    GET   /metrics             - Prometheus-compatible metrics
    GET   /api/time            - {"now": ISO-8601, "now_ms": int}
    GET   /api/timer           - Current record (created on first access)
    PATCH /api/timer           - Partial update of record fields
    PUT   /api/timer           - Insert record if absent
    POST  /api/timer/start     - Controller actions; /pause, /reset,
                                 /duration with {"minutes": N}
    GET   /events              - SSE stream of record snapshots

Usage:
    from stage_timer.web import WebServer

    server = WebServer(port=8090)
    server.set_backend(store, controller, reference_clock)
    server.start()
"""

import json
import logging
import queue
import threading
import time
from http.server import HTTPServer, BaseHTTPRequestHandler
from socketserver import ThreadingMixIn
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

from ..engine.controller import TimerController
from ..interfaces.errors import (
    InvalidActionInput,
    RecordNotFound,
    StageTimerError,
    StoreUnavailable,
)
from ..interfaces.timer_record import DEFAULT_RECORD_ID, TimerRecord
from ..store.base import TimerStore
from ..timing.countdown import format_time, project_remaining
from ..timing.reference_clock import ReferenceClock

logger = logging.getLogger(__name__)

ACTIONS = ('start', 'pause', 'reset', 'duration')
STATE_VALUES = {'stopped': 0, 'paused': 1, 'running': 2}


class WebRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the timer API."""

    # Class-level references, set by WebServer
    store: Optional[TimerStore] = None
    controller: Optional[TimerController] = None
    clock: Optional[ReferenceClock] = None
    server_state: Optional["WebServer"] = None
    keepalive_interval = 15.0

    def log_message(self, format, *args):
        """Suppress default HTTP logging for cleaner output."""
        pass

    # =========================================================================
    # Routing
    # =========================================================================

    def do_GET(self):
        """Handle GET requests."""
        parsed = urlparse(self.path)
        path = parsed.path
        query = parse_qs(parsed.query)

        if path == '/health':
            self._handle_health()
        elif path == '/status':
            self._guarded(self._handle_status)
        elif path == '/metrics':
            self._handle_metrics()
        elif path == '/api/time':
            self._handle_api_time()
        elif path == '/api/timer':
            self._guarded(self._handle_api_timer_get, self._record_id(query))
        elif path == '/events':
            self._handle_sse(self._record_id(query))
        else:
            self.send_error(404, "Not Found")

    def do_POST(self):
        """Handle operator actions."""
        parsed = urlparse(self.path)
        query = parse_qs(parsed.query)
        if parsed.path.startswith('/api/timer/'):
            action = parsed.path[len('/api/timer/'):]
            if action in ACTIONS:
                self._guarded(self._handle_action, action, self._record_id(query))
                return
        self.send_error(404, "Not Found")

    def do_PATCH(self):
        """Handle store-level partial updates."""
        parsed = urlparse(self.path)
        if parsed.path == '/api/timer':
            self._guarded(self._handle_api_timer_patch, self._record_id(parse_qs(parsed.query)))
        else:
            self.send_error(404, "Not Found")

    def do_PUT(self):
        """Handle insert-if-absent."""
        parsed = urlparse(self.path)
        if parsed.path == '/api/timer':
            self._guarded(self._handle_api_timer_put)
        else:
            self.send_error(404, "Not Found")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _send_json(self, data: Any, status: int = 200):
        """Send JSON response."""
        body = json.dumps(data, indent=2).encode()
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.send_header('Access-Control-Allow-Origin', '*')
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> Dict[str, Any]:
        try:
            length = int(self.headers.get('Content-Length') or 0)
        except ValueError as e:
            raise InvalidActionInput(f"Invalid Content-Length: {e}") from e
        if length < 0:
            raise InvalidActionInput(f"Invalid Content-Length: {length}")
        if length == 0:
            return {}
        try:
            data = json.loads(self.rfile.read(length))
        except ValueError as e:
            raise InvalidActionInput(f"Invalid JSON body: {e}") from e
        if not isinstance(data, dict):
            raise InvalidActionInput("JSON body must be an object")
        return data

    def _record_id(self, query: Dict[str, Any]) -> int:
        if self.controller is not None:
            default = self.controller.record_id
        else:
            default = DEFAULT_RECORD_ID
        try:
            return int(query.get('id', [default])[0])
        except ValueError:
            return default

    def _guarded(self, handler, *args):
        """Run a handler, mapping stage-timer errors onto HTTP status codes."""
        if self.store is None or self.controller is None:
            self._send_json({'error': 'No store connected'}, 503)
            return
        try:
            handler(*args)
        except InvalidActionInput as e:
            self._send_json({'error': str(e)}, 400)
        except RecordNotFound as e:
            self._send_json({'error': str(e)}, 404)
        except StoreUnavailable as e:
            logger.warning(f"Store unavailable: {e}")
            self._send_json({'error': str(e)}, 503)
        except StageTimerError as e:
            self._send_json({'error': str(e)}, 500)

    def _current_record(self, record_id: int) -> TimerRecord:
        if record_id == self.controller.record_id:
            return self.controller.ensure_record()
        return self.store.fetch(record_id)

    # =========================================================================
    # Health endpoints
    # =========================================================================

    def _handle_health(self):
        """Basic health check."""
        self.send_response(200)
        self.send_header('Content-Type', 'text/plain')
        self.end_headers()
        self.wfile.write(b'OK\n')

    def _handle_status(self):
        """JSON status with the record and its projection."""
        self._send_json(self._get_status())

    def _get_status(self) -> Dict[str, Any]:
        record = self.controller.ensure_record()
        remaining = project_remaining(record, 0, self.clock.now_ms)
        state = self.server_state
        return {
            'timestamp': time.time(),
            'record': record.to_dict(),
            'remaining_seconds': remaining,
            'remaining_text': format_time(remaining),
            'subscribers': self.store.subscriber_count,
            'event_streams': state.stream_count if state else 0,
            'actions': dict(self.controller.stats),
            'uptime_seconds': time.time() - state.start_time if state else 0.0,
        }

    def _handle_metrics(self):
        """Prometheus-compatible metrics."""
        if self.store is None or self.controller is None:
            self.send_response(503)
            self.send_header('Content-Type', 'text/plain')
            self.end_headers()
            self.wfile.write(b'# No store connected\n')
            return

        try:
            metrics = self._format_prometheus_metrics(self._get_status())
            self.send_response(200)
            self.send_header('Content-Type', 'text/plain; version=0.0.4')
            self.end_headers()
            self.wfile.write(metrics.encode())
        except StageTimerError as e:
            self.send_response(500)
            self.send_header('Content-Type', 'text/plain')
            self.end_headers()
            self.wfile.write(f'# Error: {e}\n'.encode())

    def _format_prometheus_metrics(self, status: Dict[str, Any]) -> str:
        """Format status as Prometheus metrics."""
        record = status.get('record', {})
        lines = [
            '# HELP stage_timer_remaining_seconds Remaining countdown on the reference clock',
            '# TYPE stage_timer_remaining_seconds gauge',
            f'stage_timer_remaining_seconds {status.get("remaining_seconds", 0)}',
            '',
            '# HELP stage_timer_duration_seconds Stored duration field of the timer record',
            '# TYPE stage_timer_duration_seconds gauge',
            f'stage_timer_duration_seconds {record.get("duration", 0)}',
            '',
            '# HELP stage_timer_state Timer state (0=stopped, 1=paused, 2=running)',
            '# TYPE stage_timer_state gauge',
            f'stage_timer_state {STATE_VALUES.get(record.get("status"), 0)}',
            '',
            '# HELP stage_timer_subscribers Active change subscriptions on the store',
            '# TYPE stage_timer_subscribers gauge',
            f'stage_timer_subscribers {status.get("subscribers", 0)}',
            '',
            '# HELP stage_timer_actions_total Operator actions by outcome',
            '# TYPE stage_timer_actions_total counter',
        ]
        for action, count in sorted(status.get('actions', {}).items()):
            lines.append(f'stage_timer_actions_total{{action="{action}"}} {count}')
        lines.append('')
        return '\n'.join(lines)

    # =========================================================================
    # Timer API endpoints
    # =========================================================================

    def _handle_api_time(self):
        """Reference time for viewer offset probes."""
        clock = self.clock or ReferenceClock()
        self._send_json(clock.payload())

    def _handle_api_timer_get(self, record_id: int):
        self._send_json(self._current_record(record_id).to_dict())

    def _handle_api_timer_patch(self, record_id: int):
        fields = self._read_json()
        fields.pop('id', None)
        fields.pop('updated_at', None)
        record = self.store.update(record_id, **fields)
        self._send_json(record.to_dict())

    def _handle_api_timer_put(self):
        try:
            record = TimerRecord.from_dict(self._read_json())
        except ValueError as e:
            raise InvalidActionInput(f"Invalid timer record: {e}") from e
        try:
            record.validate()
        except ValueError as e:
            raise InvalidActionInput(str(e)) from e
        self._send_json(self.store.insert_if_absent(record).to_dict())

    def _handle_action(self, action: str, record_id: int):
        if record_id != self.controller.record_id:
            raise RecordNotFound(record_id)
        body = self._read_json()
        outcome = self.controller.apply(action, body.get('minutes'))
        self._send_json(outcome.to_dict())

    # =========================================================================
    # Server-Sent Events
    # =========================================================================

    def _handle_sse(self, record_id: int):
        """Stream record snapshots: current one first, then every change."""
        if self.store is None or self.controller is None:
            self._send_json({'error': 'No store connected'}, 503)
            return

        channel: "queue.Queue" = queue.Queue()
        try:
            subscription = self.store.subscribe(record_id, channel.put)
            current = self._current_record(record_id)
        except StageTimerError as e:
            self._send_json({'error': str(e)}, 503)
            return

        self.send_response(200)
        self.send_header('Content-Type', 'text/event-stream')
        self.send_header('Cache-Control', 'no-cache')
        self.send_header('Connection', 'keep-alive')
        self.send_header('Access-Control-Allow-Origin', '*')
        self.end_headers()

        state = self.server_state
        if state:
            state.stream_opened(channel)
        try:
            self._write_event(current)
            while state is None or state.running:
                try:
                    record = channel.get(timeout=self.keepalive_interval)
                except queue.Empty:
                    self.wfile.write(b': keepalive\n\n')
                    self.wfile.flush()
                    continue
                if record is None:
                    break
                self._write_event(record)
        except (BrokenPipeError, ConnectionResetError):
            pass  # Client disconnected
        finally:
            subscription.unsubscribe()
            if state:
                state.stream_closed(channel)

    def _write_event(self, record: TimerRecord):
        self.wfile.write(f"data: {record.to_json()}\n\n".encode())
        self.wfile.flush()


class WebServer:
    """
    HTTP server for stage-timer.

    Runs in a background thread and serves the reference clock, the
    shared record, the operator actions and the change stream.
    """

    def __init__(self, port: int = 8090, bind_address: str = '0.0.0.0'):
        """
        Initialize the web server.

        Args:
            port: HTTP port to listen on (0 picks a free port)
            bind_address: Address to bind to (default: all interfaces)
        """
        self.port = port
        self.bind_address = bind_address
        self.server: Optional[HTTPServer] = None
        self.thread: Optional[threading.Thread] = None
        self.store: Optional[TimerStore] = None
        self.controller: Optional[TimerController] = None
        self.running = False
        self.start_time = 0.0
        self._streams_lock = threading.Lock()
        self._streams = 0
        self._channels = []

    def set_backend(self, store: TimerStore, controller: TimerController,
                    clock: Optional[ReferenceClock] = None):
        """
        Connect the store and controller the endpoints serve.

        Args:
            store: Shared timer store
            controller: Controller writing to that store
            clock: Reference clock (default: host clock)
        """
        self.store = store
        self.controller = controller
        WebRequestHandler.store = store
        WebRequestHandler.controller = controller
        WebRequestHandler.clock = clock or ReferenceClock()
        WebRequestHandler.server_state = self

    @property
    def stream_count(self) -> int:
        with self._streams_lock:
            return self._streams

    def stream_opened(self, channel):
        with self._streams_lock:
            self._streams += 1
            self._channels.append(channel)

    def stream_closed(self, channel):
        with self._streams_lock:
            self._streams -= 1
            if channel in self._channels:
                self._channels.remove(channel)

    @property
    def url(self) -> str:
        host = '127.0.0.1' if self.bind_address in ('0.0.0.0', '') else self.bind_address
        return f"http://{host}:{self.port}"

    def start(self):
        """Start the web server in a background thread."""
        if self.running:
            logger.warning("Web server already running")
            return

        # Use ThreadingMixIn so each event stream gets its own thread
        class ThreadedHTTPServer(ThreadingMixIn, HTTPServer):
            daemon_threads = True
            allow_reuse_address = True

        try:
            self.server = ThreadedHTTPServer(
                (self.bind_address, self.port),
                WebRequestHandler
            )
        except OSError as e:
            logger.error(f"Failed to start web server: {e}")
            raise

        self.port = self.server.server_address[1]
        self.running = True
        self.start_time = time.time()

        self.thread = threading.Thread(
            target=self._serve,
            name="WebServer",
            daemon=True
        )
        self.thread.start()

        logger.info(f"Web server started on http://{self.bind_address}:{self.port}")
        logger.info(f"  GET  /api/time   - Reference time")
        logger.info(f"  GET  /api/timer  - Timer record")
        logger.info(f"  POST /api/timer/{{start,pause,reset,duration}} - Operator actions")
        logger.info(f"  GET  /events     - Server-Sent Events")

    def _serve(self):
        """Server loop (runs in background thread)."""
        self.server.serve_forever(poll_interval=0.5)

    def stop(self):
        """Stop the web server."""
        self.running = False
        with self._streams_lock:
            channels = list(self._channels)
        for channel in channels:
            channel.put(None)  # wakes open event streams
        if self.server:
            try:
                self.server.shutdown()
                self.server.server_close()
            except OSError:
                pass
            self.server = None
        if self.thread:
            self.thread.join(timeout=2.0)
        logger.info("Web server stopped")
