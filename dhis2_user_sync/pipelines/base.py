"""
Common functionality of the bulk pipelines.

Every pipeline runs against a UsersAPI, reports run events to an EventLog,
tracks progress, and permits a single active run. Pipelines that write to
the server additionally refuse to start unless the connection monitor
reports CONNECTED.
"""

from typing import Optional

from dhis2_user_sync.logging_setup import EventLog
from dhis2_user_sync.monitor import ConnectionMonitor
from dhis2_user_sync.run_state import ProgressTracker, RunGuard, SyncError


class ValidationError(SyncError):
    """Raised before any network call when the submitted records are invalid."""

    def __init__(self, invalid_count: int, problems=None):
        self.invalid_count = invalid_count
        self.problems = problems or []
        super().__init__(f"Invalid users detected: {invalid_count}")


class PreconditionError(SyncError):
    """Raised when a pipeline is started while the server is not connected."""
    pass


class Pipeline:
    """Base class for the bulk pipelines."""

    name = 'pipeline'
    requires_connection = True

    def __init__(self, users_api, event_log: Optional[EventLog] = None,
                 monitor: Optional[ConnectionMonitor] = None,
                 progress: Optional[ProgressTracker] = None):
        self.users_api = users_api
        self.event_log = event_log if event_log is not None else EventLog()
        self.monitor = monitor
        self.progress = progress if progress is not None else ProgressTracker()
        self.guard = RunGuard(self.name)

    @property
    def busy(self) -> bool:
        return self.guard.busy

    def log(self, message: str, severity: str = 'info'):
        self.event_log.append(message, severity)

    def require_connection(self):
        """Fail fast unless the monitor reports CONNECTED."""
        if not self.requires_connection:
            return
        if self.monitor is None or not self.monitor.connected:
            status = self.monitor.status.value if self.monitor is not None else 'unknown'
            raise PreconditionError(f"Cannot start {self.name}: server status is {status}")

