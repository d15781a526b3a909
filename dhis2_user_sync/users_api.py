"""
DHIS2 users API.

This module maps the user-management operations the pipelines need onto the
DHIS2 Web API resources, on top of the retrying Transport.
"""

import logging
from typing import Dict, Any, Optional
from urllib.parse import quote

from dhis2_user_sync.transport import Transport, ApiResponse

logger = logging.getLogger(__name__)

EXPORT_FIELDS = (
    'id,name,username,userGroups[name],userRoles[name],lastLogin,'
    'organisationUnits[ancestors[name],name,id]'
)


class UsersAPI:
    """
    DHIS2 user resource client.

    Errors raised by the transport (NetworkError, HttpError and their
    subclasses) propagate unchanged; callers decide what a failure means
    for the record in hand.
    """

    def __init__(self, transport: Transport, ping_path: str = '/system/ping'):
        self.transport = transport
        self.ping_path = ping_path

    def ping(self) -> ApiResponse:
        return self.transport.request('GET', self.ping_path)

    def find_user_id(self, username: str) -> Optional[str]:
        """
        Find user by exact username and return their id.

        Args:
            username: Username to match with ``username:eq``

        Returns:
            User id if found, None otherwise
        """
        response = self.transport.request(
            'GET', f"/users?filter=username:eq:{quote(str(username), safe='')}&fields=id"
        )
        users = response.body.get('users', []) if isinstance(response.body, dict) else []
        if not users:
            return None
        return users[0].get('id') or None

    def create_user(self, payload: Dict[str, Any]) -> ApiResponse:
        # DHIS2 API: POST /users
        return self.transport.request('POST', '/users', body=payload)

    def get_user(self, user_id: str) -> Dict[str, Any]:
        response = self.transport.request('GET', f'/users/{user_id}')
        return response.body if isinstance(response.body, dict) else {}

    def update_user(self, user_id: str, payload: Dict[str, Any]) -> ApiResponse:
        """Full replace of the user; fields missing from payload are cleared server-side."""
        return self.transport.request('PUT', f'/users/{user_id}', body=payload)

    def delete_user(self, user_id: str, timeout: Optional[float] = None) -> ApiResponse:
        return self.transport.request('DELETE', f'/users/{user_id}', timeout=timeout)

    def export_url(self, page_size: int = 10000) -> str:
        """First page of the full user collection with the export projection."""
        return f"/users.json?fields={EXPORT_FIELDS}&paging=true&pageSize={page_size}"

    def get_page(self, url: str) -> ApiResponse:
        """Fetch one collection page; ``url`` may be the pager's absolute nextPage."""
        return self.transport.request('GET', url)
