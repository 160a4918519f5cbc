"""Azure DevOps team project reconciliation."""

import threading
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field, validator

from ..api.client import Transport
from ..api.exceptions import TARGET
from ..api.operations import OperationWaiter
from .base import EntityHandler

# Well-known process template ids shipped with every organization
PROCESS_TEMPLATES = {
    'agile': 'adcc42ab-9882-485e-a3ed-7678f01f66bc',
    'scrum': '6b724908-ef14-45cf-84f8-768b5384da45',
    'cmmi': '27450541-8e31-4150-9947-dc59f998fc01',
    'basic': 'b8a3a935-7e91-48b8-a94c-606d37c3e9f2',
}


class ProjectSpec(BaseModel):
    """Desired state of a target team project."""

    name: str = Field(..., description='Project name')
    description: Optional[str] = Field(default=None, description='Project description')
    visibility: Optional[str] = Field(default=None, description='private or public')
    process: str = Field(default='agile', description='Process template name or id')

    @validator('visibility')
    def validate_visibility(cls, v):
        """Validate visibility is one Azure DevOps accepts."""
        if v is None:
            return v
        v = v.lower()
        if v not in ('private', 'public'):
            raise ValueError('visibility must be private or public')
        return v

    @property
    def process_template_id(self) -> str:
        return PROCESS_TEMPLATES.get(self.process.lower(), self.process)


def project_path(name: str) -> str:
    return f'_apis/projects/{quote(name, safe="")}'


class ProjectDirectory:
    """Read-mostly cache of the target project listing.

    Used for lookups only. Every mutation path re-reads the entity it is
    about to change, so a stale listing costs at most one redundant call.
    """

    def __init__(self, transport: Transport):
        self.transport = transport
        self._projects: Optional[List[Dict[str, Any]]] = None
        self._lock = threading.Lock()

    def list(self) -> List[Dict[str, Any]]:
        """All target projects, fetched once until :meth:`invalidate`."""
        with self._lock:
            if self._projects is None:
                self._projects = self.transport.list_target('_apis/projects')
            return list(self._projects)

    def find(self, name: str) -> Optional[Dict[str, Any]]:
        """Project with the given name (case-insensitive), if listed."""
        wanted = name.lower()
        for project in self.list():
            if str(project.get('name', '')).lower() == wanted:
                return project
        return None

    def invalidate(self) -> None:
        with self._lock:
            self._projects = None


class ProjectHandler(EntityHandler[ProjectSpec]):
    """Create, update and delete team projects.

    All three mutations are asynchronous on the target and are awaited
    through :class:`OperationWaiter`.
    """

    entity_type = 'project'
    server_fields = EntityHandler.server_fields + (
        'state',
        'defaultTeam',
        'defaultTeamImageUrl',
        'capabilities',
    )

    def __init__(
        self,
        transport: Transport,
        waiter: OperationWaiter,
        directory: Optional[ProjectDirectory] = None,
    ):
        """Initialize project handler.

        Args:
            transport: Shared transport
            waiter: Awaits long-running project operations
            directory: Project listing cache invalidated after every mutation
        """
        super().__init__(transport)
        self.waiter = waiter
        self.directory = directory or ProjectDirectory(transport)

    def key(self, desired: ProjectSpec) -> str:
        return desired.name.lower()

    def get(self, desired: ProjectSpec) -> Optional[Dict[str, Any]]:
        response = self.transport.get(TARGET, project_path(desired.name))
        return response.data or None

    def desired_fields(self, desired: ProjectSpec) -> Dict[str, Any]:
        return {
            'description': desired.description,
            'visibility': desired.visibility,
        }

    def observed_fields(self, observed: Dict[str, Any]) -> Dict[str, Any]:
        fields = super().observed_fields(observed)
        if fields.get('visibility'):
            fields['visibility'] = str(fields['visibility']).lower()
        return fields

    def create(self, desired: ProjectSpec) -> Dict[str, Any]:
        body = {
            'name': desired.name,
            'description': desired.description or '',
            'visibility': desired.visibility or 'private',
            'capabilities': {
                'versioncontrol': {'sourceControlType': 'Git'},
                'processTemplate': {'templateTypeId': desired.process_template_id},
            },
        }
        response = self.transport.post(TARGET, '_apis/projects', data=body)
        self.waiter.wait(response.data, f'creation of project {desired.name}')
        self.directory.invalidate()
        return self.get(desired) or {}

    def update(
        self, desired: ProjectSpec, observed: Dict[str, Any]
    ) -> Dict[str, Any]:
        body = {
            name: value
            for name, value in self.desired_fields(desired).items()
            if value is not None
        }
        response = self.transport.patch(
            TARGET, f'_apis/projects/{observed["id"]}', data=body
        )
        self.waiter.wait(response.data, f'update of project {desired.name}')
        self.directory.invalidate()
        return self.get(desired) or {}

    def delete(self, observed: Dict[str, Any]) -> None:
        response = self.transport.delete(TARGET, f'_apis/projects/{observed["id"]}')
        self.waiter.wait(response.data, f'deletion of project {observed.get("name")}')
        self.directory.invalidate()
