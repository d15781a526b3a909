"""
Safe two-step user deletion.

DHIS2 refuses to delete a user that still holds role, organisation unit or
group references, so each user is first disabled and stripped down to a
single minimal role, and only then deleted. Deletion is slow server-side;
a client-side timeout on the DELETE says nothing about whether it happened,
so it is resolved by re-reading the user.
"""

import time
import logging
from typing import Any, Iterable, Optional

from dhis2_user_sync.models import DeleteOutcome, DeleteTarget, PipelineResult
from dhis2_user_sync.pipelines.base import Pipeline
from dhis2_user_sync.run_state import CancellationToken
from dhis2_user_sync.transport import TransportError, HttpError, RequestTimeout, describe_error

logger = logging.getLogger(__name__)

DEFAULT_MINIMAL_ROLE_ID = 'oO6BBApzmHZ'


class DeletionPipeline(Pipeline):
    """Delete users one at a time."""

    name = 'user deletion'

    def __init__(self, users_api, event_log=None, monitor=None, progress=None,
                 minimal_role_id: str = DEFAULT_MINIMAL_ROLE_ID,
                 settle_seconds: float = 1.0, delete_timeout: float = 60):
        super().__init__(users_api, event_log, monitor, progress)
        self.minimal_role_id = minimal_role_id
        self.settle_seconds = settle_seconds
        self.delete_timeout = delete_timeout

    def run(self, targets: Iterable[Any],
            cancel_token: Optional[CancellationToken] = None) -> PipelineResult:
        """
        Delete each target in turn.

        Args:
            targets: Objects with ``id`` and ``username`` (DeleteTarget,
                ExportedRow) or dicts with those keys
            cancel_token: Checked between users

        Returns:
            Success and failure counts
        """
        targets = [t if hasattr(t, 'id') else DeleteTarget.from_dict(t) for t in targets]
        cancel_token = cancel_token or CancellationToken()

        with self.guard:
            self.require_connection()

            result = PipelineResult(total=len(targets))
            if not targets:
                self.log('No users selected for deletion', 'warning')
                return result

            self.progress.reset()
            for index, target in enumerate(targets, start=1):
                if cancel_token.cancelled:
                    result.cancelled = True
                    break

                if self.delete_user(target.id, target.username) == DeleteOutcome.DELETED:
                    result.success_count += 1
                    result.succeeded.append(target.id)
                else:
                    result.failure_count += 1
                self.progress.update(round(index / len(targets) * 100))

            self.log(
                f"Deletion {'stopped' if result.cancelled else 'completed'}. "
                f"Success: {result.success_count}, Failed: {result.failure_count}",
                'warning' if result.failure_count else 'success'
            )
            self.progress.reset()
            return result

    def delete_user(self, user_id: str, username: str) -> DeleteOutcome:
        """
        Strip, then delete one user.

        Returns:
            DELETED or FAILED; an ambiguous timeout is settled before returning
        """
        try:
            self._strip_references(user_id)
        except TransportError as e:
            self.log(f"Failed to delete {username}: {describe_error(e)}", 'error')
            return DeleteOutcome.FAILED

        time.sleep(self.settle_seconds)

        try:
            self.users_api.delete_user(user_id, timeout=self.delete_timeout)
        except RequestTimeout:
            self.log(f"Timeout while deleting {username}, checking if it was deleted...", 'warning')
            return self._confirm_deleted(user_id, username)
        except HttpError as e:
            if e.status_code != 404:
                self.log(f"Failed to delete {username}: {describe_error(e)}", 'error')
                return DeleteOutcome.FAILED
            # a resent DELETE finds the user already gone after an earlier attempt timed out
            self.log(f"Confirmed: User '{username}' was deleted", 'success')
            return DeleteOutcome.DELETED
        except TransportError as e:
            self.log(f"Failed to delete {username}: {describe_error(e)}", 'error')
            return DeleteOutcome.FAILED

        self.log(f"Deleted user: {username}", 'success')
        return DeleteOutcome.DELETED

    def _strip_references(self, user_id: str):
        """Disable the user and drop everything that would block deletion."""
        user = self.users_api.get_user(user_id)
        user['disabled'] = True
        user['userRoles'] = [{'id': self.minimal_role_id}]
        user['organisationUnits'] = []
        user['dataViewOrganisationUnits'] = []
        user['teiSearchOrganisationUnits'] = []
        user['userGroups'] = []
        self.users_api.update_user(user_id, user)

    def _confirm_deleted(self, user_id: str, username: str) -> DeleteOutcome:
        """Compensating read after a DELETE timeout: a 404 means it went through."""
        outcome = DeleteOutcome.UNKNOWN
        try:
            self.users_api.get_user(user_id)
        except HttpError as e:
            if e.status_code == 404:
                outcome = DeleteOutcome.DELETED
            else:
                logger.debug(f"Verification of {username} failed: {e}")
        except TransportError as e:
            logger.debug(f"Verification of {username} failed: {e}")
        else:
            self.log(f"User '{username}' still exists after timeout", 'warning')
            outcome = DeleteOutcome.FAILED

        if outcome == DeleteOutcome.DELETED:
            self.log(f"Confirmed: User '{username}' was deleted", 'success')
            return outcome

        if outcome == DeleteOutcome.UNKNOWN:
            self.log(f"Failed to delete {username}: could not verify deletion after timeout", 'error')
        return DeleteOutcome.FAILED
