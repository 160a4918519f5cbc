"""Group membership reconciliation through the Azure DevOps Graph API."""

import threading
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..api.client import Transport
from ..api.exceptions import TARGET, NotFoundError
from .base import EntityHandler

# Graph descriptors are "<subject type>.<base64 id>"
DESCRIPTOR_PREFIXES = ('vssgp.', 'aadgp.', 'aad.', 'msa.', 'svc.', 'win.', 'bnd.')


def is_descriptor(value: str) -> bool:
    return value.lower().startswith(DESCRIPTOR_PREFIXES)


class MembershipSpec(BaseModel):
    """A member that must belong to a target group.

    Both sides accept a Graph descriptor or a principal name: a group like
    ``[acme]\\Contributors`` or a user's sign-in address.
    """

    group: str = Field(..., description='Container group descriptor or principal name')
    member: str = Field(..., description='Member descriptor or principal name')


class GraphDirectory:
    """Cached descriptor lookups for groups and users."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self._listings: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def api_version(self) -> str:
        return f'{self.transport.negotiate_api_version()}-preview.1'

    def url(self, path: str) -> str:
        return f'{self.transport.config.target.graph_url}/_apis/graph/{path}'

    def _listing(self, kind: str) -> List[Dict[str, Any]]:
        with self._lock:
            if kind not in self._listings:
                self._listings[kind] = self.transport.list_target(
                    self.url(kind), api_version=self.api_version()
                )
            return self._listings[kind]

    def resolve(self, name: str, kind: str) -> str:
        """Descriptor of a group (``kind='groups'``) or user (``kind='users'``).

        Raises:
            NotFoundError: No subject with that principal name exists
        """
        if is_descriptor(name):
            return name
        wanted = name.lower()
        for subject in self._listing(kind):
            candidates = (
                subject.get('principalName'),
                subject.get('mailAddress'),
                subject.get('displayName'),
            )
            if any(str(c or '').lower() == wanted for c in candidates):
                return subject['descriptor']
        raise NotFoundError(
            f'No {kind[:-1]} named {name!r} on the target',
            side=TARGET,
            endpoint=self.url(kind),
            status_code=404,
        )

    def invalidate(self) -> None:
        with self._lock:
            self._listings.clear()


class GroupMembershipHandler(EntityHandler[MembershipSpec]):
    """Add members to groups; a membership has no mutable fields."""

    entity_type = 'group-membership'
    supports_update = False

    def __init__(self, transport: Transport, directory: Optional[GraphDirectory] = None):
        super().__init__(transport)
        self.directory = directory or GraphDirectory(transport)

    def key(self, desired: MembershipSpec) -> str:
        return f'{desired.group}<-{desired.member}'.lower()

    def _path(self, desired: MembershipSpec) -> str:
        container = self.directory.resolve(desired.group, 'groups')
        subject = self.directory.resolve(desired.member, 'users')
        return self.directory.url(f'memberships/{subject}/{container}')

    def get(self, desired: MembershipSpec) -> Optional[Dict[str, Any]]:
        path = self._path(desired)
        response = self.transport.get(
            TARGET, path, api_version=self.directory.api_version()
        )
        return dict(response.data or {}, _path=path)

    def create(self, desired: MembershipSpec) -> Dict[str, Any]:
        response = self.transport.put(
            TARGET, self._path(desired), api_version=self.directory.api_version()
        )
        return response.data or {}

    def delete(self, observed: Dict[str, Any]) -> None:
        self.transport.delete(
            TARGET, observed['_path'], api_version=self.directory.api_version()
        )
