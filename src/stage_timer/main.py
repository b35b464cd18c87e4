#!/usr/bin/env python3
"""
stage-timer: Shared Stage Countdown

Main entry point. One process serves the reference clock and the shared
timer record; any number of displays and operator consoles align to it.

Usage:
    # Run the server (reference clock + store + API + event stream)
    stage-timer --serve --config /etc/stage-timer/config.toml

    # Passive console display
    stage-timer --display --server-url http://stage-host:8090

    # Operator actions
    stage-timer --action duration --minutes 5
    stage-timer --action start

Architecture:
    ┌───────────────────────────────────────────────────────────────┐
    │                      stage-timer server                        │
    │  ReferenceClock ── /api/time                                   │
    │  TimerController ── store.update ── TimerStore ── /events (SSE)│
    └───────────────────────────────────────────────────────────────┘
             ▲ actions                       │ record snapshots
             │                               ▼
      operator console          displays: offset probe + 200 ms ticker
"""

import argparse
import copy
import json
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import toml

# Set up logging before imports that use it
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger('stage-timer')

from .engine.controller import TimerController
from .engine.viewer import CountdownViewer, ViewerFrame
from .interfaces.errors import StageTimerError
from .store.base import TimerStore
from .store.file_store import JsonFileTimerStore
from .store.memory_store import InMemoryTimerStore
from .store.remote_store import RemoteTimerStore
from .timing.clock_offset import ClockOffsetEstimator, OffsetTracker
from .timing.countdown import clamp_tick_interval
from .timing.reference_clock import HttpReferenceClient, ReferenceClock
from .web import WebServer


DEFAULT_CONFIG: Dict[str, Any] = {
    'server': {
        'bind_address': '0.0.0.0',
        'port': 8090,
    },
    'store': {
        'backend': 'memory',
        'path': JsonFileTimerStore.DEFAULT_PATH,
        'poll_interval': 0.2,
    },
    'timer': {
        'record_id': 1,
        'default_duration': 300,
    },
    'viewer': {
        'server_url': 'http://127.0.0.1:8090',
        'tick_interval': 0.2,
        'offset_timeout': 2.0,
        'offset_refresh_interval': 60.0,
        'offset_samples': 1,
        'resync_interval': 30.0,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from TOML file, merged over the defaults."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path and Path(config_path).exists():
        with open(config_path, 'r') as f:
            _merge(config, toml.load(f))
        logger.info(f"Loaded configuration from {config_path}")
    elif config_path:
        logger.warning(f"Config file {config_path} not found, using defaults")

    tick = float(config['viewer']['tick_interval'])
    clamped = clamp_tick_interval(tick)
    if clamped != tick:
        logger.warning(f"viewer.tick_interval {tick}s out of range, using {clamped}s")
        config['viewer']['tick_interval'] = clamped
    return config


def build_store(config: Dict[str, Any]) -> TimerStore:
    """Create the store backend named in [store]."""
    store_config = config.get('store', {})
    backend = store_config.get('backend', 'memory')
    if backend == 'memory':
        return InMemoryTimerStore()
    if backend == 'file':
        return JsonFileTimerStore(
            store_config.get('path'),
            poll_interval=store_config.get('poll_interval', 0.2)
        )
    raise ValueError(f"Unknown store backend: {backend!r}")


class StageTimerDaemon:
    """
    Server process: reference clock, shared store, controller and web API.
    """

    def __init__(self, config: Dict[str, Any], store: Optional[TimerStore] = None):
        self.config = config
        self.clock = ReferenceClock()
        self.store = store or build_store(config)
        timer_config = config.get('timer', {})
        self.controller = TimerController(
            self.store,
            reference_now=self.clock.now_ms,
            record_id=timer_config.get('record_id', 1),
            default_duration=timer_config.get('default_duration', 300)
        )
        server_config = config.get('server', {})
        self.web_server = WebServer(
            port=server_config.get('port', 8090),
            bind_address=server_config.get('bind_address', '0.0.0.0')
        )
        self.web_server.set_backend(self.store, self.controller, self.clock)
        self._stop_event = threading.Event()

        logger.info("=" * 60)
        logger.info("stage-timer initializing")
        logger.info(f"  Store: {type(self.store).__name__}")
        logger.info(f"  Record: {self.controller.record_id}")
        logger.info(f"  Listen: {self.web_server.bind_address}:{self.web_server.port}")
        logger.info("=" * 60)

    def start(self):
        """Create the record if needed and start serving."""
        record = self.controller.ensure_record()
        logger.info(f"Timer record: {record.status.value}, {record.duration}s")
        self.web_server.start()

    def stop(self):
        self._stop_event.set()
        self.web_server.stop()
        self.store.close()
        logger.info("stage-timer stopped")

    def run(self):
        """Serve until SIGINT/SIGTERM."""
        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self._stop_event.set()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        self.start()
        try:
            while not self._stop_event.wait(1.0):
                pass
        finally:
            self.stop()


class ConsoleDisplay:
    """Renders viewer frames on one terminal line."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self._last = None

    def render(self, frame: ViewerFrame):
        status = frame.status.value.upper() if frame.status else 'WAITING'
        flags = []
        if not frame.synced:
            flags.append('unsynced')
        if frame.store_error:
            flags.append('stale')
        suffix = f" ({', '.join(flags)})" if flags else ''
        line = f"{frame.text}  {status:<8} offset {frame.offset_ms:+d}ms{suffix}"
        if line != self._last:
            self.stream.write('\r' + line.ljust(60))
            self.stream.flush()
            self._last = line


def build_viewer(config: Dict[str, Any], on_tick, server_url: Optional[str] = None) -> CountdownViewer:
    """Wire a viewer against a remote server."""
    viewer_config = config.get('viewer', {})
    url = server_url or viewer_config.get('server_url')
    store = RemoteTimerStore(url)
    estimator = ClockOffsetEstimator(
        HttpReferenceClient(url).probe,
        timeout=viewer_config.get('offset_timeout', 2.0)
    )
    tracker = OffsetTracker(estimator, samples_per_refresh=viewer_config.get('offset_samples', 1))
    return CountdownViewer(
        store,
        tracker,
        on_tick=on_tick,
        record_id=config.get('timer', {}).get('record_id', 1),
        tick_interval=viewer_config.get('tick_interval', 0.2),
        offset_timeout=viewer_config.get('offset_timeout', 2.0),
        offset_refresh_interval=viewer_config.get('offset_refresh_interval', 60.0),
        resync_interval=viewer_config.get('resync_interval', 30.0),
    )


def run_display(config: Dict[str, Any], server_url: Optional[str] = None):
    """Run a console display until interrupted."""
    display = ConsoleDisplay()
    viewer = build_viewer(config, display.render, server_url)
    viewer.start()
    try:
        while viewer.running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        viewer.stop()
        viewer.store.close()
        sys.stdout.write('\n')


def run_action(config: Dict[str, Any], action: str, minutes: Any = None,
               server_url: Optional[str] = None) -> int:
    """Send one operator action; returns a process exit code."""
    url = server_url or config.get('viewer', {}).get('server_url')
    store = RemoteTimerStore(url)
    try:
        result = store.request_action(action, minutes)
    except StageTimerError as e:
        logger.error(f"Action '{action}' failed: {e}")
        return 1
    print(json.dumps(result, indent=2))
    if not result.get('applied', False):
        logger.warning(f"Action '{action}' not applied: {result.get('reason')}")
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='stage-timer: Shared Stage Countdown',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Serve with a config file
    stage-timer --serve --config /etc/stage-timer/config.toml

    # Share the record through /dev/shm instead of process memory
    stage-timer --serve --store-path /dev/shm/stage_timer

    # Console display against a remote server
    stage-timer --display --server-url http://stage-host:8090

    # Set 10 minutes, then start
    stage-timer --action duration --minutes 10
    stage-timer --action start
        """
    )

    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        '--serve',
        action='store_true',
        help='Run the timer server'
    )
    mode.add_argument(
        '--display',
        action='store_true',
        help='Run a console countdown display'
    )
    mode.add_argument(
        '--action',
        choices=['start', 'pause', 'reset', 'duration'],
        help='Send one operator action to the server'
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to TOML configuration file'
    )
    parser.add_argument(
        '--minutes', '-m',
        help='Minutes for --action duration'
    )
    parser.add_argument(
        '--port',
        type=int,
        help='HTTP port for --serve (overrides config)'
    )
    parser.add_argument(
        '--server-url',
        help='Server URL for --display/--action (overrides config)'
    )
    parser.add_argument(
        '--store-path',
        help='Use the shared file store at this directory (overrides config)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    config = load_config(args.config)

    # Apply command-line overrides
    if args.port is not None:
        config['server']['port'] = args.port
    if args.store_path:
        config['store']['backend'] = 'file'
        config['store']['path'] = args.store_path

    if args.serve:
        daemon = StageTimerDaemon(config)
        daemon.run()
    elif args.display:
        run_display(config, args.server_url)
    else:
        if args.action == 'duration' and args.minutes is None:
            parser.error('--action duration requires --minutes')
        sys.exit(run_action(config, args.action, args.minutes, args.server_url))


if __name__ == '__main__':
    main()
