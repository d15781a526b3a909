"""
Batch upsert engine.

Validates a record set, then runs the conflict resolver over it in
contiguous chunks. Records inside a chunk are resolved concurrently; chunks
run strictly one after another, so at most ``batch_size`` requests are in
flight at any time.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Iterable, List, Mapping, Optional

from dhis2_user_sync.models import UserRecord, BatchResult, UpsertResult
from dhis2_user_sync.pipelines.base import Pipeline, ValidationError
from dhis2_user_sync.resolver import ConflictResolver
from dhis2_user_sync.run_state import CancellationToken

logger = logging.getLogger(__name__)

ALLOWED_BATCH_SIZES = (1, 2, 5, 10)


def chunked(records: List[Any], size: int) -> List[List[Any]]:
    """Split records into contiguous chunks of at most ``size`` items."""
    return [records[i:i + size] for i in range(0, len(records), size)]


class BatchUpsertEngine(Pipeline):
    """Create-or-update a set of users in bounded-concurrency chunks."""

    name = 'user import'

    def __init__(self, users_api, event_log=None, monitor=None, progress=None,
                 resolver: Optional[ConflictResolver] = None):
        super().__init__(users_api, event_log, monitor, progress)
        self.resolver = resolver or ConflictResolver(users_api, self.event_log)
        self.failed_records: List[UserRecord] = []

    @staticmethod
    def _coerce(records: Iterable[Any]) -> List[Optional[UserRecord]]:
        """Build UserRecords; entries that are not objects become None and fail validation."""
        coerced = []
        for r in records:
            if isinstance(r, UserRecord):
                coerced.append(r)
            elif isinstance(r, Mapping):
                coerced.append(UserRecord.from_dict(r))
            else:
                coerced.append(None)
        return coerced

    def validate(self, records: List[Optional[UserRecord]]) -> None:
        """
        Check every record before anything is sent.

        Raises:
            ValidationError: If one or more records are invalid
        """
        problems = []
        for index, record in enumerate(records):
            if record is None:
                problems.append((index, '', 'Record is not an object'))
                continue
            problem = record.validate()
            if problem:
                problems.append((index, record.username, problem))

        if problems:
            self.log(f"Invalid users detected: {len(problems)}", 'warning')
            for index, username, problem in problems:
                logger.debug(f"Record {index} ({username or '<no username>'}): {problem}")
            raise ValidationError(len(problems), problems)

    def run(self, records: Iterable[Any], batch_size: int = 2,
            cancel_token: Optional[CancellationToken] = None) -> UpsertResult:
        """
        Import a record set.

        Args:
            records: Raw record dicts or UserRecord instances
            batch_size: Chunk size, one of 1, 2, 5 or 10
            cancel_token: Checked between chunks; a running chunk always finishes

        Returns:
            Success count and the records that failed

        Raises:
            PipelineBusyError: Another import is running
            PreconditionError: The server is not connected
            ValidationError: Any record is invalid; nothing is sent
            ValueError: Unsupported batch size
        """
        if batch_size not in ALLOWED_BATCH_SIZES:
            raise ValueError(f"batch_size must be one of {ALLOWED_BATCH_SIZES}, got {batch_size}")

        with self.guard:
            self.require_connection()
            records = self._coerce(records)
            self.validate(records)
            return self._run(records, batch_size, cancel_token or CancellationToken())

    def retry_failed(self, batch_size: int = 2,
                     cancel_token: Optional[CancellationToken] = None) -> UpsertResult:
        """Run again over the records that failed in the previous run."""
        if not self.failed_records:
            self.log('No failed users to retry', 'warning')
            return UpsertResult(total=0)
        return self.run(list(self.failed_records), batch_size, cancel_token)

    def clear_failed(self) -> int:
        cleared = len(self.failed_records)
        self.failed_records = []
        if cleared:
            self.log(f"Cleared failed users list ({cleared})", 'success')
        return cleared

    def _run(self, records: List[UserRecord], batch_size: int,
             cancel_token: CancellationToken) -> UpsertResult:
        total = len(records)
        chunks = chunked(records, batch_size)
        result = UpsertResult(total=total)
        processed = 0

        self.progress.reset()
        self.log(f"Starting import of {total} users ({len(chunks)} batches)", 'info')

        with ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix='upsert') as executor:
            for number, chunk in enumerate(chunks, start=1):
                if cancel_token.cancelled:
                    result.cancelled = True
                    break

                self.log(f"Processing batch {number}/{len(chunks)}", 'info')
                for batch_result in self._process_chunk(executor, chunk):
                    if batch_result.success:
                        result.success_count += 1
                    else:
                        result.failed_records.append(batch_result.record)

                processed += len(chunk)
                self.progress.update(round(processed / total * 100))

            # a stop requested during the last chunk still counts as a stop
            if cancel_token.cancelled:
                result.cancelled = True

        self.failed_records = list(result.failed_records)
        self.log(
            f"Process {'stopped' if result.cancelled else 'completed'}. "
            f"Success: {result.success_count}, Errors: {result.failure_count}",
            'warning' if result.failure_count else 'success'
        )
        self.progress.reset()
        return result

    def _process_chunk(self, executor: ThreadPoolExecutor,
                       chunk: List[UserRecord]) -> List[BatchResult]:
        """Resolve every record of the chunk concurrently and wait for all of them."""
        futures = [executor.submit(self.resolver.resolve, record) for record in chunk]
        wait(futures)

        results = []
        for record, future in zip(chunk, futures):
            try:
                results.append(future.result())
            except Exception as e:
                self.log(f"Failed to process {record.username}: {e}", 'error')
                results.append(BatchResult(record, False))
        return results
