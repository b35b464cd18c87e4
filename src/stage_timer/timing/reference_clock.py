"""
Reference Clock

The single trusted source of "now" that every viewer aligns to. On the
server it is simply the host clock; viewers reach it over HTTP through
HttpReferenceClient and correct their own clocks with an offset.
"""

import json
import logging
import socket
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Optional

from ..interfaces.errors import OffsetMeasurementFailure
from ..interfaces.timer_record import ms_to_iso

logger = logging.getLogger(__name__)


def system_now_ms() -> int:
    """Local wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


class ReferenceClock:
    """Stateless accessor for the reference instant."""

    def __init__(self, now_fn: Optional[Callable[[], int]] = None):
        self._now_fn = now_fn or system_now_ms

    def now_ms(self) -> int:
        return int(self._now_fn())

    def payload(self) -> Dict[str, Any]:
        """Body of the reference time endpoint."""
        now = self.now_ms()
        return {'now': ms_to_iso(now), 'now_ms': now}


class HttpReferenceClient:
    """
    Round-trip probe against a server's /api/time endpoint.

    Usage:
        client = HttpReferenceClient('http://stage-host:8090')
        server_ms = client.probe(timeout=2.0)
    """

    def __init__(self, base_url: str, path: str = '/api/time'):
        self.url = base_url.rstrip('/') + path

    def probe(self, timeout: Optional[float] = None) -> int:
        """
        Fetch the server's current instant.

        Returns:
            Reference time in epoch milliseconds

        Raises:
            OffsetMeasurementFailure: on timeout, transport error or a
                response without a usable now_ms field
        """
        try:
            with urllib.request.urlopen(self.url, timeout=timeout) as response:
                body = json.loads(response.read())
        except socket.timeout as e:
            raise OffsetMeasurementFailure(f"Reference time request timed out: {self.url}",
                                           timed_out=True) from e
        except urllib.error.URLError as e:
            timed_out = isinstance(e.reason, socket.timeout)
            raise OffsetMeasurementFailure(f"Reference time request failed: {e.reason}",
                                           timed_out=timed_out) from e
        except (OSError, ValueError) as e:
            raise OffsetMeasurementFailure(f"Reference time request failed: {e}") from e

        server_ms = body.get('now_ms') if isinstance(body, dict) else None
        if isinstance(server_ms, bool) or not isinstance(server_ms, (int, float)):
            raise OffsetMeasurementFailure(f"Reference time response missing now_ms: {body!r}")
        return int(server_ms)
