"""
Pytest configuration and fixtures for stage-timer tests.
"""

import pytest
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def reference_clock():
    """Reference clock the controller stamps start times with."""
    return FakeClock()


@pytest.fixture
def memory_store():
    """Empty in-process store."""
    from stage_timer.store.memory_store import InMemoryTimerStore
    store = InMemoryTimerStore()
    yield store
    store.close()


@pytest.fixture
def controller(memory_store, reference_clock):
    """Controller over the in-memory store and fake reference clock."""
    from stage_timer.engine.controller import TimerController
    return TimerController(memory_store, reference_now=reference_clock)


@pytest.fixture
def fake_clock_cls():
    return FakeClock
