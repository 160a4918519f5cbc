"""Project wiki reconciliation."""

from typing import Any, Dict, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field

from ..api.client import Transport
from ..api.exceptions import TARGET
from .base import EntityHandler
from .project import ProjectDirectory

PROJECT_WIKI = 'projectWiki'


class WikiSpec(BaseModel):
    """Desired state of a project wiki."""

    project: str = Field(..., description='Target project name')
    name: Optional[str] = Field(
        default=None, description='Wiki name (defaults to "<project>.wiki")'
    )

    @property
    def wiki_name(self) -> str:
        return self.name or f'{self.project}.wiki'


def wikis_path(project: str) -> str:
    return f'{quote(project, safe="")}/_apis/wiki/wikis'


class WikiHandler(EntityHandler[WikiSpec]):
    """Ensure the project wiki exists.

    A wiki's type cannot change after creation, so there is no in-place
    update; a differing wiki can only be replaced.
    """

    entity_type = 'wiki'
    supports_update = False
    server_fields = EntityHandler.server_fields + (
        'projectId',
        'repositoryId',
        'mappedPath',
        'remoteUrl',
        'versions',
    )

    def __init__(
        self, transport: Transport, directory: Optional[ProjectDirectory] = None
    ):
        super().__init__(transport)
        self.directory = directory or ProjectDirectory(transport)

    def key(self, desired: WikiSpec) -> str:
        return f'{desired.project}/{desired.wiki_name}'.lower()

    def get(self, desired: WikiSpec) -> Optional[Dict[str, Any]]:
        path = f'{wikis_path(desired.project)}/{quote(desired.wiki_name, safe="")}'
        response = self.transport.get(TARGET, path)
        if not response.data:
            return None
        return dict(response.data, _project=desired.project)

    def desired_fields(self, desired: WikiSpec) -> Dict[str, Any]:
        return {'type': PROJECT_WIKI}

    def create(self, desired: WikiSpec) -> Dict[str, Any]:
        project = self.directory.find(desired.project)
        if project is None:
            self.directory.invalidate()
            project = self.directory.find(desired.project)
        body: Dict[str, Any] = {'name': desired.wiki_name, 'type': PROJECT_WIKI}
        if project and project.get('id'):
            body['projectId'] = project['id']

        response = self.transport.post(TARGET, wikis_path(desired.project), data=body)
        return response.data or {}

    def delete(self, observed: Dict[str, Any]) -> None:
        self.transport.delete(
            TARGET, f'{wikis_path(observed["_project"])}/{observed["id"]}'
        )
