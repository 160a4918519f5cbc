"""Azure DevOps Git repository reconciliation."""

from typing import Any, Dict, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field

from ..api.client import Transport
from ..api.exceptions import TARGET, NotFoundError
from .base import EntityHandler
from .project import ProjectDirectory


def qualify_branch(branch: Optional[str]) -> Optional[str]:
    """``main`` -> ``refs/heads/main``; already qualified names pass through."""
    if not branch:
        return None
    return branch if branch.startswith('refs/') else f'refs/heads/{branch}'


class RepositorySpec(BaseModel):
    """Desired state of a target Git repository."""

    project: str = Field(..., description='Target project name')
    name: str = Field(..., description='Repository name')
    default_branch: Optional[str] = Field(
        default=None, description='Default branch (short or refs/heads/ form)'
    )
    empty: Optional[bool] = Field(
        default=None,
        description='Require a repository without branches; None leaves content unmanaged',
    )


def repositories_path(project: str) -> str:
    return f'{quote(project, safe="")}/_apis/git/repositories'


class RepositoryHandler(EntityHandler[RepositorySpec]):
    """Create and delete Git repositories and update their default branch."""

    entity_type = 'repository'
    server_fields = EntityHandler.server_fields + (
        'project',
        'size',
        'remoteUrl',
        'sshUrl',
        'webUrl',
        'isDisabled',
        'isInMaintenance',
    )

    def __init__(
        self, transport: Transport, directory: Optional[ProjectDirectory] = None
    ):
        super().__init__(transport)
        self.directory = directory or ProjectDirectory(transport)

    def key(self, desired: RepositorySpec) -> str:
        return f'{desired.project}/{desired.name}'.lower()

    def get(self, desired: RepositorySpec) -> Optional[Dict[str, Any]]:
        path = f'{repositories_path(desired.project)}/{quote(desired.name, safe="")}'
        response = self.transport.get(TARGET, path)
        return response.data or None

    def desired_fields(self, desired: RepositorySpec) -> Dict[str, Any]:
        return {'defaultBranch': qualify_branch(desired.default_branch)}

    def diff(self, desired: RepositorySpec, observed: Dict[str, Any]) -> Dict[str, Any]:
        differences = super().diff(desired, observed)
        # An empty repository has no default branch until the first push
        if not observed.get('defaultBranch'):
            differences.pop('defaultBranch', None)
        if desired.empty and self._holds_branches(desired.project, observed['id']):
            differences['content'] = {'desired': 'empty', 'observed': 'has commits'}
        return differences

    def create(self, desired: RepositorySpec) -> Dict[str, Any]:
        body: Dict[str, Any] = {'name': desired.name}
        project = self.directory.find(desired.project)
        if project is None:
            self.directory.invalidate()
            project = self.directory.find(desired.project)
        if project and project.get('id'):
            body['project'] = {'id': project['id']}

        response = self.transport.post(
            TARGET, repositories_path(desired.project), data=body
        )
        return response.data or {}

    def update(
        self, desired: RepositorySpec, observed: Dict[str, Any]
    ) -> Dict[str, Any]:
        body = {'defaultBranch': qualify_branch(desired.default_branch)}
        response = self.transport.patch(
            TARGET,
            f'{repositories_path(desired.project)}/{observed["id"]}',
            data=body,
        )
        return response.data or {}

    def delete(self, observed: Dict[str, Any]) -> None:
        project = (observed.get('project') or {}).get('name') or ''
        self.transport.delete(TARGET, f'{repositories_path(project)}/{observed["id"]}')

    def has_commits(self, desired: RepositorySpec) -> bool:
        """Whether the target repository exists and holds at least one branch.

        Args:
            desired: Repository to inspect

        Returns:
            False when the repository is absent or empty
        """
        try:
            repository = self.get(desired)
        except NotFoundError:
            return False
        if not repository:
            return False
        return self._holds_branches(desired.project, repository['id'])

    def _holds_branches(self, project: str, repository_id: str) -> bool:
        response = self.transport.get(
            TARGET,
            f'{repositories_path(project)}/{repository_id}/refs',
            params={'filter': 'heads/', '$top': 1},
        )
        data = response.data or {}
        return bool(data.get('value')) if isinstance(data, dict) else False

    def branch_exists(self, project: str, repository_id: str, branch: str) -> bool:
        """Whether ``branch`` exists in the target repository."""
        ref = qualify_branch(branch)
        response = self.transport.get(
            TARGET,
            f'{repositories_path(project)}/{repository_id}/refs',
            params={'filter': ref[len('refs/'):]},
        )
        data = response.data or {}
        refs = data.get('value', []) if isinstance(data, dict) else []
        # The filter is a prefix match; require the exact ref
        return any(r.get('name') == ref for r in refs)
