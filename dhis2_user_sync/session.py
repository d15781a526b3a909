"""
Sync session: wires transport, monitor and pipelines together from the
loaded configuration and keeps the caches that outlive a single run.
"""

import csv
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from dhis2_user_sync.logging_setup import EventLog
from dhis2_user_sync.models import EXPORT_COLUMNS, ExportedRow, PipelineResult, UpsertResult
from dhis2_user_sync.monitor import ConnectionMonitor
from dhis2_user_sync.pipelines import (
    BatchUpsertEngine, DeletionPipeline, ExportEngine, PasswordUpdatePipeline
)
from dhis2_user_sync.run_state import CancellationToken, ProgressTracker
from dhis2_user_sync.transport import Transport
from dhis2_user_sync.users_api import UsersAPI

logger = logging.getLogger(__name__)


class SyncSession:
    """
    One operator session against a DHIS2 instance.

    The failed-records list of the last import and the rows of the last
    export live here until they are cleared or replaced by the next run.
    """

    def __init__(self, config: Dict[str, Any], event_log: Optional[EventLog] = None):
        self.config = config
        self.event_log = event_log if event_log is not None else EventLog()
        self.progress = ProgressTracker()

        dhis2_config = config['dhis2']
        monitor_config = config.get('monitor', {})
        sync_config = config.get('sync', {})

        self.transport = Transport(dhis2_config, config.get('error_handling'), self.event_log)
        self.users_api = UsersAPI(self.transport, monitor_config.get('ping_path', '/system/ping'))
        self.monitor = ConnectionMonitor(
            self.users_api,
            self.event_log,
            interval=monitor_config.get('interval_seconds', 30),
            failure_threshold=monitor_config.get('failure_threshold', 3),
        )

        self.batch_size = sync_config.get('batch_size', 2)
        common = dict(event_log=self.event_log, monitor=self.monitor, progress=self.progress)
        self.importer = BatchUpsertEngine(self.users_api, **common)
        self.deleter = DeletionPipeline(
            self.users_api,
            minimal_role_id=sync_config.get('minimal_role_id', 'oO6BBApzmHZ'),
            settle_seconds=sync_config.get('delete_settle_seconds', 1),
            delete_timeout=dhis2_config.get('delete_timeout_seconds', 60),
            **common
        )
        self.password_updater = PasswordUpdatePipeline(self.users_api, **common)
        self.exporter = ExportEngine(
            self.users_api, page_size=sync_config.get('export_page_size', 10000), **common
        )

    def start(self):
        self.monitor.start()

    def close(self):
        self.monitor.stop(timeout=5)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def failed_records(self):
        return self.importer.failed_records

    @property
    def exported_rows(self) -> List[ExportedRow]:
        return self.exporter.rows

    def import_users(self, records: Iterable[Any], batch_size: Optional[int] = None,
                     cancel_token: Optional[CancellationToken] = None) -> UpsertResult:
        return self.importer.run(records, batch_size or self.batch_size, cancel_token)

    def retry_failed(self, batch_size: Optional[int] = None,
                     cancel_token: Optional[CancellationToken] = None) -> UpsertResult:
        return self.importer.retry_failed(batch_size or self.batch_size, cancel_token)

    def clear_failed(self) -> int:
        return self.importer.clear_failed()

    def update_passwords(self, updates: Iterable[Any],
                         cancel_token: Optional[CancellationToken] = None) -> PipelineResult:
        return self.password_updater.run(updates, cancel_token)

    def export_users(self) -> List[ExportedRow]:
        return self.exporter.run()

    def delete_users(self, targets: Iterable[Any],
                     cancel_token: Optional[CancellationToken] = None) -> PipelineResult:
        """Delete the targets and drop them from the exported-row cache."""
        result = self.deleter.run(targets, cancel_token)
        self.exporter.remove(set(result.succeeded))
        return result


def write_failed_records(records, output_path: str) -> int:
    """Write records as a JSON array in the shape accepted by an import."""
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump([record.to_dict() for record in records], f, indent=2)
    logger.info(f"Wrote {len(records)} failed records to {output_path}")
    return len(records)


def write_rows_csv(rows: List[ExportedRow], output_path: str,
                   columns: Optional[List[str]] = None) -> int:
    """
    Write exported rows to CSV.

    Args:
        rows: Rows to write
        output_path: Destination file
        columns: Column ids from EXPORT_COLUMNS, in output order; all by default

    Returns:
        Number of rows written
    """
    columns = columns or list(EXPORT_COLUMNS)
    unknown = [c for c in columns if c not in EXPORT_COLUMNS]
    if unknown:
        raise ValueError(f"Unknown export columns: {', '.join(unknown)}")

    with open(output_path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow([EXPORT_COLUMNS[c] for c in columns])
        for row in rows:
            values = row.as_dict()
            writer.writerow([values[c] for c in columns])

    logger.info(f"Wrote {len(rows)} rows to {output_path}")
    return len(rows)


def write_rows_json(rows: List[ExportedRow], output_path: str) -> int:
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump([row.as_dict() for row in rows], f, indent=2)
    logger.info(f"Wrote {len(rows)} rows to {output_path}")
    return len(rows)
