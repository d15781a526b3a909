"""
Per-record create-or-update resolution.
"""

import logging

from dhis2_user_sync.models import UserRecord, BatchResult
from dhis2_user_sync.transport import TransportError, ConflictError, describe_error

logger = logging.getLogger(__name__)


class ConflictResolver:
    """
    Create a user, falling back to a full-replace update on conflict.

    The create is attempted first; only a 409 answer costs the extra lookup
    and update round-trips. The conflict branch runs at most once per call
    and any failure is final for the current pass.
    """

    def __init__(self, users_api, event_log):
        self.users_api = users_api
        self.event_log = event_log

    def resolve(self, record: UserRecord) -> BatchResult:
        username = record.username
        logger.debug(f"Resolving user {username}")
        try:
            self.users_api.create_user(record.to_create_payload())
        except ConflictError:
            return BatchResult(record, self._update_existing(record))
        except TransportError as e:
            self.event_log.append(f"Error for {username}: {describe_error(e)}", 'error')
            return BatchResult(record, False)

        self.event_log.append(f"Created user: {username}", 'success')
        return BatchResult(record, True)

    def _update_existing(self, record: UserRecord) -> bool:
        username = record.username
        try:
            user_id = self.users_api.find_user_id(username)
        except TransportError as e:
            self.event_log.append(f"Error fetching user ID for {username}: {describe_error(e)}", 'warning')
            user_id = None

        if not user_id:
            self.event_log.append(f"Conflict and ID not found: {username}", 'error')
            return False

        self.event_log.append(f"Conflict: Updating user {username}", 'warning')
        try:
            self.users_api.update_user(user_id, record.to_update_payload())
        except TransportError as e:
            self.event_log.append(f"Error updating user {username}: {describe_error(e)}", 'error')
            return False

        self.event_log.append(f"Updated user: {username}", 'success')
        return True
