"""
Clock Offset Estimation

Each viewer owns an offset such that

    reference_now ≈ local_now + offset

measured with a single round-trip probe. Network latency is assumed
symmetric, so the reference instant is attributed to the midpoint of the
local send/receive times rather than the receive time, halving the
one-way latency error.

Two layers:
    ClockOffsetEstimator - one measurement, raises on failure, no state
    OffsetTracker        - caller-side policy: keeps the last good
                           offset (fail open) and exposes the error state
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

import numpy as np

from ..interfaces.errors import OffsetMeasurementFailure
from .reference_clock import system_now_ms

logger = logging.getLogger(__name__)


def compute_offset(t0: int, t1: int, server_ms: int) -> int:
    """
    Offset from one round trip.

    Args:
        t0: Local time the request was sent (ms)
        t1: Local time the response arrived (ms)
        server_ms: Reference instant carried in the response (ms)

    Returns:
        server_ms - round((t0 + t1) / 2)
    """
    midpoint = round((t0 + t1) / 2)
    return int(server_ms - midpoint)


@dataclass(frozen=True)
class OffsetSample:
    """One round-trip measurement."""
    offset_ms: int
    rtt_ms: int
    measured_at_ms: int  # local clock


class ClockOffsetEstimator:
    """
    Measures local-vs-reference offset with a round-trip probe.

    Side-effect free beyond the probe itself, so repeated calls are safe.
    """

    def __init__(
        self,
        probe: Callable[[Optional[float]], int],
        local_now: Optional[Callable[[], int]] = None,
        timeout: Optional[float] = 2.0
    ):
        """
        Args:
            probe: Callable(timeout) -> reference epoch ms, e.g.
                HttpReferenceClient.probe
            local_now: Local clock in epoch ms (injectable for tests)
            timeout: Default per-probe timeout in seconds
        """
        self._probe = probe
        self._local_now = local_now or system_now_ms
        self.timeout = timeout

    def sample(self, timeout: Optional[float] = None) -> OffsetSample:
        """Run one probe and return the full sample."""
        effective_timeout = self.timeout if timeout is None else timeout
        t0 = int(self._local_now())
        try:
            server_ms = self._probe(effective_timeout)
        except OffsetMeasurementFailure:
            raise
        except Exception as e:
            raise OffsetMeasurementFailure(f"Reference probe failed: {e}") from e
        t1 = int(self._local_now())

        if t1 < t0:
            raise OffsetMeasurementFailure(f"Local clock went backwards during probe ({t0} -> {t1})")
        rtt = t1 - t0
        if effective_timeout is not None and rtt > effective_timeout * 1000:
            raise OffsetMeasurementFailure(
                f"Probe round trip {rtt}ms exceeded timeout {effective_timeout}s",
                timed_out=True
            )

        offset = compute_offset(t0, t1, server_ms)
        logger.debug(f"Offset probe: t0={t0} t1={t1} server={server_ms} rtt={rtt}ms offset={offset:+d}ms")
        return OffsetSample(offset_ms=offset, rtt_ms=rtt, measured_at_ms=t1)

    def estimate(self, timeout: Optional[float] = None) -> int:
        """
        Measure the offset once.

        Returns:
            Offset in milliseconds

        Raises:
            OffsetMeasurementFailure: if the round trip fails or times out
        """
        return self.sample(timeout).offset_ms


class OffsetTracker:
    """
    Fail-open offset policy for one viewer.

    Keeps the last good estimate when a refresh fails. Before the first
    success it reports offset 0 but has_estimate stays False and
    last_error is set, so the caller can show the unsynced state instead
    of silently assuming zero drift.

    With samples_per_refresh > 1, several probes are taken and the
    offset is the median of the lower-RTT half, since the samples with
    the shortest round trip carry the least asymmetry error.
    """

    def __init__(
        self,
        estimator: ClockOffsetEstimator,
        samples_per_refresh: int = 1,
        history_size: int = 32
    ):
        self.estimator = estimator
        self.samples_per_refresh = max(1, int(samples_per_refresh))
        self.history: Deque[OffsetSample] = deque(maxlen=history_size)

        self._lock = threading.Lock()
        self._offset_ms = 0
        self._has_estimate = False
        self._last_error: Optional[OffsetMeasurementFailure] = None
        self.stats = {
            'refresh_count': 0,
            'failure_count': 0,
            'last_success_time': 0.0,
        }

    @property
    def offset_ms(self) -> int:
        with self._lock:
            return self._offset_ms

    @property
    def has_estimate(self) -> bool:
        with self._lock:
            return self._has_estimate

    @property
    def last_error(self) -> Optional[OffsetMeasurementFailure]:
        with self._lock:
            return self._last_error

    @property
    def rtt_jitter_ms(self) -> float:
        """Standard deviation of recent round-trip times."""
        with self._lock:
            rtts = [s.rtt_ms for s in self.history]
        if len(rtts) < 2:
            return 0.0
        return float(np.std(rtts))

    @staticmethod
    def combine(samples: List[OffsetSample]) -> int:
        """Median offset of the lower-RTT half of the samples."""
        ordered = sorted(samples, key=lambda s: s.rtt_ms)
        best = ordered[:max(1, (len(ordered) + 1) // 2)]
        return int(round(float(np.median([s.offset_ms for s in best]))))

    def refresh(self, timeout: Optional[float] = None) -> int:
        """
        Re-measure the offset, retaining the previous value on failure.

        Returns:
            The offset now in effect (new on success, previous on failure)
        """
        samples: List[OffsetSample] = []
        error: Optional[OffsetMeasurementFailure] = None
        for _ in range(self.samples_per_refresh):
            try:
                samples.append(self.estimator.sample(timeout))
            except OffsetMeasurementFailure as e:
                error = e

        with self._lock:
            self.stats['refresh_count'] += 1
            if not samples:
                self.stats['failure_count'] += 1
                self._last_error = error
                if self._has_estimate:
                    logger.warning(f"Offset refresh failed, keeping {self._offset_ms:+d}ms: {error}")
                else:
                    logger.warning(f"Offset refresh failed, no estimate yet: {error}")
                return self._offset_ms

            self.history.extend(samples)
            previous = self._offset_ms if self._has_estimate else None
            self._offset_ms = self.combine(samples)
            self._has_estimate = True
            self._last_error = None
            self.stats['last_success_time'] = time.time()

            if previous is None:
                logger.info(f"Clock offset established: {self._offset_ms:+d}ms "
                            f"({len(samples)} sample(s))")
            elif previous != self._offset_ms:
                logger.debug(f"Clock offset updated: {previous:+d}ms -> {self._offset_ms:+d}ms")
            return self._offset_ms

    def reference_now(self, local_now: Optional[Callable[[], int]] = None) -> int:
        """Local clock corrected to the reference clock."""
        now_fn = local_now or system_now_ms
        return int(now_fn()) + self.offset_ms
