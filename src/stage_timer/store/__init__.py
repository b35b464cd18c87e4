"""Store backends - in-process, shared file, and remote HTTP."""

from .base import TimerStore, Subscription, SubscriberSet, apply_fields
from .memory_store import InMemoryTimerStore
from .file_store import JsonFileTimerStore
from .remote_store import RemoteTimerStore

__all__ = [
    'TimerStore',
    'Subscription',
    'SubscriberSet',
    'apply_fields',
    'InMemoryTimerStore',
    'JsonFileTimerStore',
    'RemoteTimerStore',
]
