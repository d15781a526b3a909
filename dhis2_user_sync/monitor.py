"""
Connection liveness monitor.

Probes the DHIS2 ping endpoint in the background and keeps a tri-state
connection status that the bulk pipelines check before starting.
"""

import logging
import threading
from enum import Enum
from typing import Optional

from dhis2_user_sync.transport import TransportError

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConnectionMonitor:
    """
    Periodic ping with edge-triggered status transitions.

    The monitor counts consecutive probe failures on its own, on top of
    whatever retries the transport performed inside a single probe. Below
    ``failure_threshold`` failures the next probe follows after
    ``backoff_base * 2^failures`` seconds; from the threshold on the status
    is DISCONNECTED and probes return to the regular interval.
    """

    def __init__(self, users_api, event_log=None, interval: float = 30,
                 failure_threshold: int = 3, backoff_base: float = 1.0):
        self.users_api = users_api
        self.event_log = event_log
        self.interval = interval
        self.failure_threshold = failure_threshold
        self.backoff_base = backoff_base

        self.status = ConnectionStatus.CHECKING
        self.failures = 0

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def _emit(self, message: str, severity: str):
        if self.event_log is not None:
            self.event_log.append(message, severity)
        else:
            logger.info(message)

    def check_once(self) -> float:
        """
        Run one probe and apply the resulting transition.

        Returns:
            Seconds to wait before the next probe
        """
        try:
            self.users_api.ping()
        except TransportError as e:
            return self._record_failure(e)

        with self._lock:
            self.failures = 0
            became_connected = self.status != ConnectionStatus.CONNECTED
            self.status = ConnectionStatus.CONNECTED

        if became_connected:
            self._emit('Server connected', 'success')
        return self.interval

    def _record_failure(self, error: Exception) -> float:
        logger.debug(f"Connection probe failed: {error}")

        with self._lock:
            self.failures += 1
            below_threshold = self.failures < self.failure_threshold
            became_disconnected = (not below_threshold
                                   and self.status != ConnectionStatus.DISCONNECTED)
            if became_disconnected:
                self.status = ConnectionStatus.DISCONNECTED

        if became_disconnected:
            self._emit('Failed to connect to server after retries', 'error')

        if below_threshold:
            return self.backoff_base * (2 ** self.failures)
        return self.interval

    def _run(self):
        while not self._stop_event.is_set():
            try:
                delay = self.check_once()
            except Exception as e:
                logger.error(f"Connection monitor probe crashed: {e}", exc_info=True)
                delay = self.interval
            self._stop_event.wait(delay)

    def start(self) -> None:
        """Probe immediately, then keep probing on a daemon thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='connection-monitor', daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def wait_for_status(self, timeout: float) -> ConnectionStatus:
        """Wait until the first probe has settled the status (or timeout elapses)."""
        waited = 0.0
        step = 0.05
        while self.status == ConnectionStatus.CHECKING and waited < timeout:
            if self._stop_event.wait(step):
                break
            waited += step
        return self.status
