"""
Command-line entry point for DHIS2 User Sync.

Loads configuration, sets up logging, waits for the connection monitor to
settle and runs one pipeline.
"""

import sys
import json
import signal
import logging
import argparse
from datetime import datetime
from typing import Any, Dict, List, Optional

from dhis2_user_sync.config import load_config, ConfigurationError
from dhis2_user_sync.logging_setup import setup_logging
from dhis2_user_sync.models import EXPORT_COLUMNS
from dhis2_user_sync.pipelines import ExportAbortedError, PreconditionError, ValidationError
from dhis2_user_sync.run_state import CancellationToken
from dhis2_user_sync.session import (
    SyncSession, write_failed_records, write_rows_csv, write_rows_json
)
from dhis2_user_sync.transport import TransportError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG_ERROR = 2
EXIT_NOT_CONNECTED = 3
EXIT_UNEXPECTED = 4

# Upper bound on how long a command waits for the first probes to settle
CONNECT_WAIT_SECONDS = 20


def _read_json_array(path: str) -> List[Dict[str, Any]]:
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} should contain a JSON array")
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='DHIS2 User Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    sub = parser.add_subparsers(dest='command', required=True)

    import_cmd = sub.add_parser('import', help='Create or update users from a JSON record array')
    import_cmd.add_argument('file')
    import_cmd.add_argument('--batch-size', type=int, choices=(1, 2, 5, 10))
    import_cmd.add_argument('--failed-out', help='Write records that failed to this JSON file')

    passwords_cmd = sub.add_parser('passwords', help='Update passwords from a JSON array')
    passwords_cmd.add_argument('file')

    delete_cmd = sub.add_parser('delete', help='Delete users listed as [{"id", "username"}]')
    delete_cmd.add_argument('file')

    export_cmd = sub.add_parser('export', help='Export all users')
    export_cmd.add_argument('--csv', dest='csv_path')
    export_cmd.add_argument('--json', dest='json_path')
    export_cmd.add_argument('--columns', nargs='+', choices=list(EXPORT_COLUMNS))

    sub.add_parser('health-check', help='Check configuration and server connectivity')
    return parser


class SyncCommand:
    """Runs one CLI command against a SyncSession."""

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.config = None
        self.session: Optional[SyncSession] = None
        self.cancel_token = CancellationToken()

    def _on_interrupt(self, signum, frame):
        if not self.cancel_token.cancelled:
            self.cancel_token.cancel()
            if self.session is not None:
                self.session.event_log.append(
                    "Stopping process after current batch completes...", 'warning')

    def run(self) -> int:
        try:
            self.config = load_config(self.args.config)
            setup_logging(self.config.get('logging', {}))

            self.session = SyncSession(self.config)
            self.session.start()
            self.session.monitor.wait_for_status(CONNECT_WAIT_SECONDS)

            signal.signal(signal.SIGINT, self._on_interrupt)
            handler = getattr(self, '_cmd_' + self.args.command.replace('-', '_'))
            return handler()

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_CONFIG_ERROR
        except PreconditionError as e:
            logger.error(str(e))
            print(str(e), file=sys.stderr)
            return EXIT_NOT_CONNECTED
        except (ValidationError, ExportAbortedError) as e:
            print(str(e), file=sys.stderr)
            return EXIT_FAILURES
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            print(f"Unexpected error: {e}", file=sys.stderr)
            return EXIT_UNEXPECTED
        finally:
            if self.session is not None:
                self.session.close()

    def _cmd_import(self) -> int:
        records = _read_json_array(self.args.file)
        result = self.session.import_users(records, self.args.batch_size, self.cancel_token)
        if self.args.failed_out and result.failed_records:
            write_failed_records(result.failed_records, self.args.failed_out)
        print(f"Imported {result.success_count}/{result.total} users, "
              f"{result.failure_count} failed{' (stopped)' if result.cancelled else ''}")
        return EXIT_FAILURES if result.failure_count else EXIT_OK

    def _cmd_passwords(self) -> int:
        result = self.session.update_passwords(_read_json_array(self.args.file), self.cancel_token)
        print(f"Updated {result.success_count}/{result.total} passwords, {result.failure_count} failed")
        return EXIT_FAILURES if result.failure_count else EXIT_OK

    def _cmd_delete(self) -> int:
        result = self.session.delete_users(_read_json_array(self.args.file), self.cancel_token)
        print(f"Deleted {result.success_count}/{result.total} users, {result.failure_count} failed")
        return EXIT_FAILURES if result.failure_count else EXIT_OK

    def _cmd_export(self) -> int:
        rows = self.session.export_users()
        stamp = datetime.now().strftime('%Y-%m-%d')
        if self.args.csv_path or not self.args.json_path:
            write_rows_csv(rows, self.args.csv_path or f"dhis2_users_{stamp}.csv", self.args.columns)
        if self.args.json_path:
            write_rows_json(rows, self.args.json_path)
        print(f"Exported {len(rows)} users")
        return EXIT_OK

    def _cmd_health_check(self) -> int:
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {
                'configuration': {'status': 'pass', 'message': 'Configuration loaded successfully'},
            },
        }
        try:
            self.session.users_api.ping()
            health_status['checks']['dhis2'] = {'status': 'pass', 'message': 'Ping successful'}
        except TransportError as e:
            health_status['checks']['dhis2'] = {'status': 'fail', 'message': f'Ping failed: {e}'}
            health_status['status'] = 'unhealthy'

        print(json.dumps(health_status, indent=2))
        return EXIT_OK if health_status['status'] == 'healthy' else EXIT_FAILURES


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)
    sys.exit(SyncCommand(args).run())


if __name__ == "__main__":
    main()
