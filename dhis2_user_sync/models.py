"""
Data models shared by the sync pipelines.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional

# DHIS2 field names of the reference sets carried by a user record
ROLE_FIELD = 'userRoles'
ORG_UNIT_FIELD = 'organisationUnits'
DATA_VIEW_ORG_UNIT_FIELD = 'dataViewOrganisationUnits'
SEARCH_ORG_UNIT_FIELD = 'teiSearchOrganisationUnits'
GROUP_FIELD = 'userGroups'

_KNOWN_FIELDS = {
    'username', 'firstName', 'surname', 'password',
    ROLE_FIELD, ORG_UNIT_FIELD, DATA_VIEW_ORG_UNIT_FIELD, SEARCH_ORG_UNIT_FIELD, GROUP_FIELD,
}


def _id_list(value: Any) -> List[str]:
    """Normalize ``[{"id": x}, ...]`` or ``[x, ...]`` to a list of ids."""
    if not value:
        return []
    ids = []
    for item in value:
        if isinstance(item, dict):
            item = item.get('id')
        if item not in (None, ''):
            ids.append(str(item))
    return ids


def _id_refs(ids: List[str]) -> List[Dict[str, str]]:
    return [{'id': i} for i in ids]


@dataclass
class UserRecord:
    """One user entity submitted for synchronization."""
    username: str
    first_name: str = ""
    surname: str = ""
    password: str = ""
    user_roles: List[str] = field(default_factory=list)
    organisation_units: List[str] = field(default_factory=list)
    data_view_organisation_units: List[str] = field(default_factory=list)
    tei_search_organisation_units: List[str] = field(default_factory=list)
    user_groups: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserRecord':
        username = data.get('username')
        return cls(
            username='' if username is None else str(username).strip(),
            first_name=data.get('firstName') or '',
            surname=data.get('surname') or '',
            password=data.get('password') or '',
            user_roles=_id_list(data.get(ROLE_FIELD)),
            organisation_units=_id_list(data.get(ORG_UNIT_FIELD)),
            data_view_organisation_units=_id_list(data.get(DATA_VIEW_ORG_UNIT_FIELD)),
            tei_search_organisation_units=_id_list(data.get(SEARCH_ORG_UNIT_FIELD)),
            user_groups=_id_list(data.get(GROUP_FIELD)),
            extra={k: v for k, v in data.items() if k not in _KNOWN_FIELDS},
        )

    def validate(self) -> Optional[str]:
        """Return the first validation problem, or None for a valid record."""
        if not self.username:
            return 'Username is required'
        if not self.user_roles:
            return 'At least one user role is required'
        if not self.organisation_units:
            return 'At least one organization unit is required'
        return None

    def _references(self) -> Dict[str, Any]:
        return {
            ROLE_FIELD: _id_refs(self.user_roles),
            ORG_UNIT_FIELD: _id_refs(self.organisation_units),
            DATA_VIEW_ORG_UNIT_FIELD: _id_refs(self.data_view_organisation_units),
            SEARCH_ORG_UNIT_FIELD: _id_refs(self.tei_search_organisation_units),
            GROUP_FIELD: _id_refs(self.user_groups),
        }

    def to_create_payload(self) -> Dict[str, Any]:
        """Full record as sent to ``POST /users``."""
        payload = dict(self.extra)
        payload.update({
            'firstName': self.first_name,
            'surname': self.surname,
            'username': self.username,
        })
        if self.password:
            payload['password'] = self.password
        payload.update(self._references())
        return payload

    def to_update_payload(self) -> Dict[str, Any]:
        """
        Full-replace payload for ``PUT /users/{id}``.

        The reference sets replace the server's sets wholesale, so they must
        hold the complete desired membership.
        """
        payload = {
            'firstName': self.first_name,
            'surname': self.surname,
            'username': self.username,
        }
        payload.update(self._references())
        return payload

    def to_dict(self) -> Dict[str, Any]:
        """Ingestion-shaped dict, suitable for writing failed records back out."""
        return self.to_create_payload()


@dataclass
class BatchResult:
    record: UserRecord
    success: bool


@dataclass
class UpsertResult:
    """Aggregate of one upsert run."""
    total: int
    success_count: int = 0
    failed_records: List[UserRecord] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failure_count(self) -> int:
        return len(self.failed_records)


@dataclass
class PasswordUpdate:
    username: str
    new_password: str
    role_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PasswordUpdate':
        role_ids = data.get('roleIds', data.get('user_role_ids', []))
        if isinstance(role_ids, str):
            role_ids = [r.strip() for r in role_ids.split(',') if r.strip()]
        return cls(
            username=str(data.get('username', '')).strip(),
            new_password=data.get('newPassword', data.get('new_password', '')),
            role_ids=_id_list(role_ids),
        )


@dataclass(frozen=True)
class DeleteTarget:
    id: str
    username: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeleteTarget':
        return cls(id=str(data['id']), username=str(data.get('username', '')))


class DeleteOutcome(Enum):
    """Result of one safe delete; UNKNOWN only exists until the compensating read."""
    DELETED = "deleted"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass
class PipelineResult:
    """Success/failure counts of a sequential pipeline run."""
    total: int
    success_count: int = 0
    failure_count: int = 0
    cancelled: bool = False
    # user ids (deletion) or usernames (password update) that succeeded
    succeeded: List[str] = field(default_factory=list)


# Column id -> label, in display order
EXPORT_COLUMNS = {
    'id': 'ID',
    'name': 'Name',
    'username': 'Username',
    'groups': 'Groups',
    'roles': 'Roles',
    'last_login': 'Last Login',
    'org_unit_path': 'Orgunit Path',
    'org_unit_uid': 'Orgunit UID',
}


@dataclass(frozen=True)
class ExportedRow:
    """Flattened projection of one exported user."""
    id: str
    name: str = ""
    username: str = ""
    groups: str = ""
    roles: str = ""
    last_login: str = ""
    org_unit_path: str = ""
    org_unit_uid: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {column: getattr(self, column) for column in EXPORT_COLUMNS}
