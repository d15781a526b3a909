"""
Per-run state shared by the sync pipelines: progress, cancellation and the
single-run guard.
"""

import threading
from typing import Callable, Optional


class SyncError(Exception):
    """Base exception for run-level sync errors."""
    pass


class PipelineBusyError(SyncError):
    """Raised when a pipeline is asked to start while a run is active."""
    pass


class CancellationToken:
    """Cooperative stop flag, polled by pipelines between chunks or records."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ProgressTracker:
    """
    Progress of the active run as a value between 0 and 100.

    Updates never move the value backwards and are clamped at 100; only
    ``reset`` returns it to 0.
    """

    def __init__(self, on_change: Optional[Callable[[float], None]] = None):
        self._value = 0
        self._lock = threading.Lock()
        self.on_change = on_change

    @property
    def value(self) -> float:
        return self._value

    def update(self, value: float) -> float:
        with self._lock:
            value = max(self._value, min(value, 100))
            changed = value != self._value
            self._value = value
        if changed and self.on_change:
            self.on_change(value)
        return value

    def reset(self) -> None:
        with self._lock:
            self._value = 0
        if self.on_change:
            self.on_change(0)


class RunGuard:
    """Allows one run at a time; a second concurrent start is rejected."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def __enter__(self):
        if not self._lock.acquire(blocking=False):
            raise PipelineBusyError(f"{self.name} is already running")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._lock.release()
