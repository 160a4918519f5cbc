"""Branch policy reconciliation, one policy configuration per type and branch."""

from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field, validator

from ..api.client import Transport
from ..api.exceptions import TARGET
from .base import EntityHandler
from .repository import RepositoryHandler, qualify_branch

POLICY_TYPES = {
    'minimum-reviewers': 'fa4e907d-c16b-4a4c-9dfa-4906e5d171dd',
    'required-reviewers': 'fd2167ab-b0be-447a-8ec8-39368250530e',
    'build': '0609b952-1397-4640-95ec-e00a01b2c241',
    'comment-requirements': 'c6a1889d-b943-4856-b76f-9e46bb6b0df2',
    'work-item-linking': '40e92b44-2fe1-4dd6-b3d8-74a9c21d0c6e',
    'merge-strategy': 'fa4e907d-c16b-4a4c-9dfa-4916e5d171ab',
}


class BranchPolicySpec(BaseModel):
    """Desired state of one branch policy configuration."""

    project: str = Field(..., description='Target project name')
    repository_id: str = Field(..., description='Target repository id')
    branch: str = Field(..., description='Branch the policy applies to')
    policy_type: str = Field(..., description='Policy type name or id')
    is_enabled: bool = Field(default=True)
    is_blocking: bool = Field(default=True)
    settings: Dict[str, Any] = Field(
        default_factory=dict, description='Type-specific settings (without scope)'
    )

    @validator('policy_type')
    def validate_policy_type(cls, v):
        """Accept a known policy name or a raw type id."""
        return v.lower() if v.lower() in POLICY_TYPES else v

    @property
    def type_id(self) -> str:
        return POLICY_TYPES.get(self.policy_type, self.policy_type)

    @property
    def ref_name(self) -> str:
        return qualify_branch(self.branch)

    @property
    def scope(self) -> List[Dict[str, Any]]:
        return [
            {
                'repositoryId': self.repository_id,
                'refName': self.ref_name,
                'matchKind': 'exact',
            }
        ]


def configurations_path(project: str) -> str:
    return f'{quote(project, safe="")}/_apis/policy/configurations'


def _in_scope(configuration: Dict[str, Any], desired: BranchPolicySpec) -> bool:
    for scope in (configuration.get('settings') or {}).get('scope') or []:
        if (
            str(scope.get('repositoryId', '')).lower() == desired.repository_id.lower()
            and scope.get('refName') == desired.ref_name
        ):
            return True
    return False


class BranchPolicyHandler(EntityHandler[BranchPolicySpec]):
    """Ensure a single policy type on a single branch.

    A policy for a branch that does not exist yet on the target is skipped;
    it is expected before the first push.
    """

    entity_type = 'branch-policy'
    server_fields = EntityHandler.server_fields + (
        'createdBy',
        'createdDate',
        'isDeleted',
        'type',
        '_project',
    )

    def __init__(self, transport: Transport, repositories: RepositoryHandler):
        super().__init__(transport)
        self.repositories = repositories

    def key(self, desired: BranchPolicySpec) -> str:
        return (
            f'{desired.project}/{desired.repository_id}/{desired.ref_name}'
            f'#{desired.policy_type}'
        ).lower()

    def skip_reason(self, desired: BranchPolicySpec) -> Optional[str]:
        if not self.repositories.branch_exists(
            desired.project, desired.repository_id, desired.branch
        ):
            return f'branch {desired.ref_name} does not exist on the target yet'
        return None

    def get(self, desired: BranchPolicySpec) -> Optional[Dict[str, Any]]:
        configurations = self.transport.list_target(configurations_path(desired.project))
        for configuration in configurations:
            if configuration.get('isDeleted'):
                continue
            type_id = str((configuration.get('type') or {}).get('id', '')).lower()
            if type_id == desired.type_id.lower() and _in_scope(configuration, desired):
                return dict(configuration, _project=desired.project)
        return None

    def desired_fields(self, desired: BranchPolicySpec) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            'isEnabled': desired.is_enabled,
            'isBlocking': desired.is_blocking,
        }
        for name, value in desired.settings.items():
            fields[f'settings.{name}'] = value
        return fields

    def observed_fields(self, observed: Dict[str, Any]) -> Dict[str, Any]:
        fields = super().observed_fields(observed)
        for name, value in (observed.get('settings') or {}).items():
            if name != 'scope':
                fields[f'settings.{name}'] = value
        return fields

    def _body(self, desired: BranchPolicySpec) -> Dict[str, Any]:
        settings = dict(desired.settings)
        settings['scope'] = desired.scope
        return {
            'isEnabled': desired.is_enabled,
            'isBlocking': desired.is_blocking,
            'type': {'id': desired.type_id},
            'settings': settings,
        }

    def create(self, desired: BranchPolicySpec) -> Dict[str, Any]:
        response = self.transport.post(
            TARGET, configurations_path(desired.project), data=self._body(desired)
        )
        return response.data or {}

    def update(
        self, desired: BranchPolicySpec, observed: Dict[str, Any]
    ) -> Dict[str, Any]:
        response = self.transport.put(
            TARGET,
            f'{configurations_path(desired.project)}/{observed["id"]}',
            data=self._body(desired),
        )
        return response.data or {}

    def delete(self, observed: Dict[str, Any]) -> None:
        path = f'{configurations_path(observed["_project"])}/{observed["id"]}'
        self.transport.delete(TARGET, path)


def policies_from_protected_branches(
    project: str,
    repository_id: str,
    protected_branches: Iterable[Dict[str, Any]],
    minimum_reviewers: int = 1,
) -> List[BranchPolicySpec]:
    """Translate GitLab protected branches into target branch policies.

    A protected branch that only allows merging through merge requests
    becomes a minimum-reviewers policy; wildcard branch names have no
    exact-match counterpart and are left out.

    Args:
        project: Target project name
        repository_id: Target repository id
        protected_branches: Items of ``GET /projects/:id/protected_branches``
        minimum_reviewers: Reviewer count for the generated policies

    Returns:
        Desired policies, one per eligible branch
    """
    specs = []
    for branch in protected_branches:
        name = branch.get('name') or ''
        if not name or '*' in name:
            continue
        push_levels = [
            level.get('access_level')
            for level in branch.get('push_access_levels') or []
        ]
        # access level 0 means "no one" may push directly
        if push_levels and all(level == 0 for level in push_levels):
            specs.append(
                BranchPolicySpec(
                    project=project,
                    repository_id=repository_id,
                    branch=name,
                    policy_type='minimum-reviewers',
                    settings={
                        'minimumApproverCount': minimum_reviewers,
                        'creatorVoteCounts': False,
                        'allowDownvotes': False,
                        'resetOnSourcePush': False,
                    },
                )
            )
    return specs
