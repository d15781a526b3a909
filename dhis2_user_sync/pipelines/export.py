"""
Full user export.

Walks the paginated users collection, dropping ids already seen on an
earlier page, and flattens each user into an ExportedRow.
"""

import logging
from typing import Any, Dict, List, Optional, Set

from dhis2_user_sync.models import ExportedRow
from dhis2_user_sync.pipelines.base import Pipeline
from dhis2_user_sync.run_state import SyncError
from dhis2_user_sync.transport import TransportError, describe_error

logger = logging.getLogger(__name__)

# Only units at this depth (four ancestors) get a path and uid
ORG_UNIT_ANCESTOR_DEPTH = 4


class ExportAbortedError(SyncError):
    """Raised when a page could not be fetched; nothing from the run is kept."""

    def __init__(self, message: str, pages_fetched: int = 0):
        self.pages_fetched = pages_fetched
        super().__init__(message)


def _name(item: Dict[str, Any]) -> str:
    # the server sends "name": null for some units and groups
    return item.get('name') or ''


def _joined_names(items: Optional[List[Dict[str, Any]]]) -> str:
    return "; ".join(_name(item) for item in items or [])


def project_user(user: Dict[str, Any]) -> ExportedRow:
    """Flatten one user from the export projection into a row."""
    paths = []
    uids = []
    for unit in user.get('organisationUnits') or []:
        ancestors = unit.get('ancestors') or []
        if len(ancestors) == ORG_UNIT_ANCESTOR_DEPTH:
            paths.append(" > ".join([_name(a) for a in ancestors] + [_name(unit)]))
            uids.append(unit.get('id') or '')

    return ExportedRow(
        id=user['id'],
        name=user.get('name') or '',
        username=user.get('username') or '',
        groups=_joined_names(user.get('userGroups')),
        roles=_joined_names(user.get('userRoles')),
        last_login=user.get('lastLogin') or '',
        org_unit_path=" | ".join(paths),
        org_unit_uid=" | ".join(uids),
    )


class ExportEngine(Pipeline):
    """Fetch every user page by page into a fresh set of rows."""

    name = 'user export'
    requires_connection = False

    def __init__(self, users_api, event_log=None, monitor=None, progress=None,
                 page_size: int = 10000):
        super().__init__(users_api, event_log, monitor, progress)
        self.page_size = page_size
        self.rows: List[ExportedRow] = []
        self.seen_ids: Set[str] = set()

    def run(self) -> List[ExportedRow]:
        """
        Export all users.

        A page that fails or answers with anything but 200 aborts the run;
        there is no resume, because the page URL carries the cursor state.

        Returns:
            The exported rows, which also replace ``self.rows``

        Raises:
            ExportAbortedError: A page could not be fetched
        """
        with self.guard:
            self.log("Starting DHIS2 user export...", 'info')
            self.progress.reset()
            try:
                rows, seen_ids = self._fetch_all()
            finally:
                self.progress.reset()

            self.rows = rows
            self.seen_ids = seen_ids
            self.log(f"Export complete. Total users: {len(seen_ids)}", 'success')
            return rows

    def _fetch_all(self):
        seen_ids: Set[str] = set()
        rows: List[ExportedRow] = []
        next_url = self.users_api.export_url(self.page_size)
        page_count = 0

        while next_url:
            try:
                response = self.users_api.get_page(next_url)
            except TransportError as e:
                self.log(f"Export failed: {describe_error(e)}", 'error')
                raise ExportAbortedError(f"Export failed: {e}", page_count)

            if response.status != 200:
                self.log(f"Export failed: page answered HTTP {response.status}", 'error')
                raise ExportAbortedError(f"Page answered HTTP {response.status}", page_count)

            data = response.body if isinstance(response.body, dict) else {}
            pager = data.get('pager') or {}

            page_count += 1
            total_pages = pager.get('totalPages') or 1
            self.progress.update(min(page_count / total_pages * 100, 100))

            for user in data.get('users') or []:
                uid = user.get('id')
                if not uid or uid in seen_ids:
                    continue
                seen_ids.add(uid)
                rows.append(project_user(user))

            self.log(f"Page {pager.get('page', page_count)} fetched. Total: {len(seen_ids)}", 'success')
            next_url = pager.get('nextPage') or None

        return rows, seen_ids

    def remove(self, ids: Set[str]) -> None:
        """Drop rows for users that no longer exist."""
        logger.debug(f"Dropping {len(ids)} deleted users from the export cache")
        self.rows = [row for row in self.rows if row.id not in ids]
        self.seen_ids -= set(ids)
