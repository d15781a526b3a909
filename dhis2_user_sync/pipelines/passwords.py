"""
Bulk password update.
"""

import logging
from typing import Any, Iterable, Optional

from dhis2_user_sync.models import PasswordUpdate, PipelineResult
from dhis2_user_sync.pipelines.base import Pipeline
from dhis2_user_sync.run_state import CancellationToken
from dhis2_user_sync.transport import TransportError, describe_error

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = (200, 204)


class PasswordUpdatePipeline(Pipeline):
    """Rewrite the password of each listed user, one user at a time."""

    name = 'password update'

    def run(self, updates: Iterable[Any],
            cancel_token: Optional[CancellationToken] = None) -> PipelineResult:
        updates = [u if isinstance(u, PasswordUpdate) else PasswordUpdate.from_dict(u) for u in updates]
        cancel_token = cancel_token or CancellationToken()

        with self.guard:
            self.require_connection()

            result = PipelineResult(total=len(updates))
            if not updates:
                self.log('No users imported for password update', 'warning')
                return result

            self.progress.reset()
            self.log(f"Starting password update for {len(updates)} users", 'info')

            for index, update in enumerate(updates, start=1):
                if cancel_token.cancelled:
                    result.cancelled = True
                    break

                if self.update_password(update):
                    result.success_count += 1
                    result.succeeded.append(update.username)
                else:
                    result.failure_count += 1
                self.progress.update(round(index / len(updates) * 100))

            self.log(
                f"Password update {'stopped' if result.cancelled else 'completed'}. "
                f"Success: {result.success_count}, Errors: {result.failure_count}",
                'warning' if result.failure_count else 'success'
            )
            self.progress.reset()
            return result

    def update_password(self, update: PasswordUpdate) -> bool:
        username = update.username
        logger.debug(f"Updating password for '{username}'")
        try:
            user_id = self.users_api.find_user_id(username)
            if not user_id:
                self.log(f"User '{username}' not found", 'warning')
                return False

            user = self.users_api.get_user(user_id)
            credentials = user.get('userCredentials')
            if not isinstance(credentials, dict):
                credentials = user['userCredentials'] = {}
            credentials['password'] = update.new_password

            response = self.users_api.update_user(user_id, user)
        except TransportError as e:
            self.log(f"Error updating '{username}': {describe_error(e)}", 'error')
            return False

        if response.status in SUCCESS_STATUSES:
            self.log(f"Password updated successfully for user '{username}'", 'success')
            return True

        self.log(f"Failed to update user '{username}'. HTTP {response.status}", 'error')
        return False
