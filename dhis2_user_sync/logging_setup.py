"""
Logging setup and configuration for DHIS2 User Sync.

This module provides centralized logging configuration (file rotation,
retention and console output) and the EventLog that collects the
user-facing run events emitted by the sync pipelines.
"""

import os
import re
import sys
import time
import logging
import logging.handlers
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, List, Optional


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'newPassword', 'new_password', 'token', 'secret',
        'credential', 'pwd', 'authorization', 'api_key', 'access_token'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            for keyword in self.SENSITIVE_KEYWORDS:
                # key=value
                pattern1 = rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)'
                msg = re.sub(pattern1, r'\1****\2', msg, flags=re.IGNORECASE)

                # "key": "value" and "key": value in JSON
                pattern2 = rf'("{keyword}"\s*:\s*")[^"]*(")'
                msg = re.sub(pattern2, r'\1****\2', msg, flags=re.IGNORECASE)
                pattern3 = rf'("{keyword}"\s*:\s*)([^",}}\s]+)(\s*[,}}\]])'
                msg = re.sub(pattern3, r'\1****\3', msg, flags=re.IGNORECASE)

                # 'key': 'value' in repr'd dicts
                pattern4 = rf"('{keyword}'\s*:\s*')[^']*(')"
                msg = re.sub(pattern4, r'\1****\2', msg, flags=re.IGNORECASE)

            # Authorization header schemes used against DHIS2
            msg = re.sub(r'((?:ApiToken|Bearer|Basic)\s+)[^\s,}}\]\'"]+', r'\1****',
                         msg, flags=re.IGNORECASE)

            record.msg = msg

        return True


LOG_FILE_NAME = 'dhis2-user-sync.log'
FILE_FORMAT = '%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s - %(message)s'
CONSOLE_FORMAT = '%(levelname)s: %(message)s'


def _level(name: Optional[str], fallback: int) -> int:
    level = logging.getLevelName(str(name or '').upper())
    return level if isinstance(level, int) else fallback


class LoggingManager:
    """
    Owns the root logger handlers of the process.

    One log file in ``log_dir`` (rotated at midnight unless rotation is
    'none'), an optional console stream, and the sensitive-data filter on
    both. Rotated files older than ``retention_days`` are pruned at setup.
    """

    def __init__(self):
        self.configured = False
        self.log_path: Optional[str] = None

    def setup_logging(self, config: Dict[str, Any]) -> None:
        if self.configured:
            return

        config = config or {}
        level = _level(config.get('level'), logging.INFO)
        retention_days = config.get('retention_days', 7)
        log_dir = self._log_directory(config.get('log_dir', 'logs'))
        self.log_path = os.path.join(log_dir, LOG_FILE_NAME)

        handlers = [self._file_handler(self.log_path, config.get('rotation', 'daily'),
                                       retention_days, level)]
        if config.get('console_output', True):
            console = logging.StreamHandler()
            console.setLevel(_level(config.get('console_level'), logging.WARNING))
            console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
            handlers.append(console)

        scrubber = SensitiveDataFilter()
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        root.setLevel(level)
        for handler in handlers:
            handler.addFilter(scrubber)
            root.addHandler(handler)

        pruned = self._prune_rotated(log_dir, retention_days)
        self.configured = True
        logging.getLogger(__name__).info(
            f"Logging to {self.log_path} at {logging.getLevelName(level)} "
            f"(keeping {retention_days} days, pruned {pruned} old files)"
        )

    @staticmethod
    def _log_directory(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            print(f"Cannot create log directory {log_dir} ({e}), logging to the working directory",
                  file=sys.stderr)
            return '.'
        return log_dir

    @staticmethod
    def _file_handler(path: str, rotation: str, retention_days: int, level: int) -> logging.Handler:
        if str(rotation).lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                path, when='midnight', backupCount=retention_days, encoding='utf-8'
            )
        else:
            handler = logging.FileHandler(path, encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(FILE_FORMAT))
        return handler

    @staticmethod
    def _prune_rotated(log_dir: str, retention_days: int) -> int:
        """Remove rotated log files whose last write is past the retention window."""
        if retention_days <= 0:
            return 0

        cutoff = time.time() - retention_days * 86400
        pruned = 0
        for entry in os.scandir(log_dir):
            if not entry.name.startswith(LOG_FILE_NAME + '.'):
                continue
            try:
                if entry.stat().st_mtime < cutoff:
                    os.remove(entry.path)
                    pruned += 1
            except OSError as e:
                print(f"Could not remove expired log file {entry.path}: {e}", file=sys.stderr)
        return pruned


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure process logging once from the ``logging`` config section."""
    _logging_manager.setup_logging(config)


@dataclass(frozen=True)
class LogEvent:
    """One user-facing run event."""
    message: str
    severity: str
    timestamp: datetime


class EventLog:
    """
    Bounded, thread-safe log of run events.

    Every connect/disconnect transition, retry, per-record outcome and run
    summary is appended here. Each event is also forwarded to the
    ``dhis2_user_sync.events`` logger so it reaches the configured handlers.
    """

    SEVERITIES = {
        'info': logging.INFO,
        'success': logging.INFO,
        'warning': logging.WARNING,
        'error': logging.ERROR,
    }

    def __init__(self, max_events: int = 100):
        self.logger = logging.getLogger('dhis2_user_sync.events')
        self._events = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def append(self, message: str, severity: str = 'info') -> LogEvent:
        if severity not in self.SEVERITIES:
            raise ValueError(f"Unknown severity '{severity}'")

        event = LogEvent(message, severity, datetime.now())
        with self._lock:
            self._events.append(event)
        self.logger.log(self.SEVERITIES[severity], f"[{severity}] {message}")
        return event

    @property
    def events(self) -> List[LogEvent]:
        with self._lock:
            return list(self._events)

    def messages(self, severity: str = None) -> List[str]:
        """Messages in arrival order, optionally restricted to one severity."""
        return [e.message for e in self.events if severity is None or e.severity == severity]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
