"""Per-entity migration state machine.

Preparing -> Reconciling -> Transferring -> ConfiguringDependents -> Recorded,
with Failed reachable from every state. Preparing only reads from the
source; everything after it writes to the target.
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from loguru import logger
from pydantic import BaseModel, Field

from ..api.client import Operation, Transport
from ..api.exceptions import (
    SOURCE,
    TARGET,
    ConflictError,
    GitCommandError,
    MigrationError,
    PlatformAPIError,
)
from ..config.config import Config as AppConfig
from ..git.operations import GitOperations
from ..models.history import MigrationStatus, MigrationType
from ..models.results import EntityResult, EntityStage
from ..models.source import PreflightSnapshot, SourceProject
from ..reconcile.base import (
    EnsureOptions,
    EnsureOutcome,
    EnsureResult,
    EntityHandler,
    Reconciler,
)
from ..reconcile.membership import GroupMembershipHandler, MembershipSpec
from ..reconcile.policy import BranchPolicyHandler, policies_from_protected_branches
from ..reconcile.project import ProjectHandler, ProjectSpec
from ..reconcile.repository import RepositoryHandler, RepositorySpec
from ..reconcile.wiki import WikiHandler, WikiSpec
from ..state.store import MigrationStateStore


class EntityRequest(BaseModel):
    """One source repository to migrate and where it goes."""

    entity_id: str = Field(..., description='Source project path, e.g. acme/app')
    target_project: Optional[str] = Field(
        default=None, description='Target project (defaults to the top-level group)'
    )
    target_repository: Optional[str] = Field(
        default=None, description='Target repository (defaults to the rest of the path)'
    )
    memberships: List[MembershipSpec] = Field(
        default_factory=list, description='Group memberships to ensure on the target'
    )
    policies: bool = Field(
        default=True, description='Translate protected branches into branch policies'
    )

    @property
    def project_name(self) -> str:
        return self.target_project or self.entity_id.split('/', 1)[0]

    @property
    def repository_name(self) -> str:
        if self.target_repository:
            return self.target_repository
        parts = self.entity_id.split('/', 1)
        return (parts[1] if len(parts) > 1 else parts[0]).replace('/', '-')


class PreparedEntity(BaseModel):
    """Output of Preparing: the source snapshot and where its mirror lives."""

    request: EntityRequest
    project: SourceProject
    snapshot: PreflightSnapshot
    entity_dir: str
    mirrored: bool = False


class MigrationContext(BaseModel):
    """Collaborators shared by every entity of a run."""

    config: AppConfig = Field(..., description='Endpoint configuration')
    transport: Transport = Field(..., description='Shared transport')
    reconciler: Reconciler = Field(..., description='Shared reconciler')
    store: MigrationStateStore = Field(..., description='History and preflight store')
    git: GitOperations = Field(..., description='Mirror and push operations')
    projects: ProjectHandler
    repositories: RepositoryHandler
    policies: BranchPolicyHandler
    wikis: WikiHandler
    memberships: GroupMembershipHandler

    options: EnsureOptions = Field(
        default_factory=EnsureOptions, description='Override flags'
    )
    allow_sync: bool = Field(default=False, description='Allow force-converge pushes')
    run_id: Optional[str] = Field(default=None, description='Bulk run id')

    class Config:
        """Pydantic configuration."""

        arbitrary_types_allowed = True


def describe_failure(error: BaseException, transport: Transport) -> Dict[str, Any]:
    """Serializable, redacted description of a failure naming its side."""
    if isinstance(error, PlatformAPIError):
        return error.to_dict()
    side = getattr(error, 'side', None)
    remediation = 'git' if isinstance(error, GitCommandError) else 'local'
    return {
        'type': error.__class__.__name__,
        'side': side,
        'endpoint': '',
        'status': 0,
        'message': transport.redact(str(error)),
        'remediation': remediation,
    }


class EntityMigrationStrategy:
    """Drives one entity through the state machine."""

    def __init__(self, context: MigrationContext):
        """Initialize strategy.

        Args:
            context: Collaborators and flags for the run
        """
        self.context = context
        self.logger = logger.bind(component=self.__class__.__name__)

    @property
    def dry_run(self) -> bool:
        return self.context.options.dry_run

    async def _ensure(
        self,
        handler: EntityHandler,
        desired: BaseModel,
        options: Optional[EnsureOptions] = None,
    ) -> EnsureResult:
        return await asyncio.to_thread(
            self.context.reconciler.ensure,
            handler,
            desired,
            options or self.context.options,
        )

    def _fail(self, result: EntityResult, error: BaseException) -> EntityResult:
        result.failed_stage = result.stage
        result.stage = EntityStage.FAILED
        result.status = MigrationStatus.FAILED
        result.error = describe_failure(error, self.context.transport)
        result.completed_at = datetime.now(timezone.utc)
        if isinstance(error, PlatformAPIError):
            message = error.describe()
        else:
            message = result.error['message']
        self.logger.error(
            f'{result.entity_id} failed while {result.failed_stage.value}: {message}'
        )
        return result

    # -- Preparing ----------------------------------------------------------

    async def _source_get(self, path: str, params: Optional[Dict[str, Any]] = None):
        return await self.context.transport.issue_async(
            Operation(method='GET', path=path, side=SOURCE, params=params or {})
        )

    async def prepare(
        self, request: EntityRequest, result: EntityResult
    ) -> Optional[PreparedEntity]:
        """Read the source, persist the preflight snapshot and refresh the mirror.

        Returns:
            Prepared entity, or None when preparation failed (``result`` is
            then marked FAILED)
        """
        result.stage = EntityStage.PREPARING
        store = self.context.store
        try:
            encoded = quote(request.entity_id, safe='')
            response = await self._source_get(
                f'/projects/{encoded}', params={'statistics': 'true'}
            )
            project = SourceProject(**response.data)

            protected: List[Dict[str, Any]] = []
            if request.policies:
                branches = await self._source_get(
                    f'/projects/{project.id}/protected_branches',
                    params={'per_page': 100},
                )
                protected = branches.data or []

            snapshot = PreflightSnapshot(
                entity_id=request.entity_id,
                source_id=project.id,
                name=project.name,
                default_branch=project.default_branch,
                size_bytes=project.repository_size,
                # Without statistics the LFS size is unknown; assume objects exist
                lfs_enabled=bool(project.lfs_enabled) and project.lfs_size != 0,
                lfs_size_bytes=project.lfs_size,
                empty=bool(project.empty_repo),
                archived=bool(project.archived),
                wiki_enabled=bool(project.wiki_enabled),
                protected_branches=protected,
            )
            if snapshot.archived:
                snapshot.warnings.append('source project is archived')
            if snapshot.empty:
                snapshot.warnings.append('source repository has no commits')

            entity_dir = store.entity_dir(request.entity_id)
            await asyncio.to_thread(store.write_preflight, snapshot)
            result.warnings.extend(snapshot.warnings)

            prepared = PreparedEntity(
                request=request,
                project=project,
                snapshot=snapshot,
                entity_dir=str(entity_dir),
            )
            if not self.dry_run and not snapshot.empty:
                if not project.http_url_to_repo:
                    raise GitCommandError(
                        f'{request.entity_id} has no HTTP clone URL', side=SOURCE
                    )
                await self.context.git.prepare_mirror(
                    entity_dir, project.http_url_to_repo, snapshot.lfs_enabled
                )
                prepared.mirrored = True
        except (PlatformAPIError, MigrationError) as e:
            self._fail(result, e)
            return None

        self.logger.info(
            f'Prepared {request.entity_id}: default branch '
            f'{snapshot.default_branch or "-"}, {snapshot.size_bytes or 0} bytes, '
            f'LFS {"on" if snapshot.lfs_enabled else "off"}'
        )
        return prepared

    # -- Reconciling .. Recorded --------------------------------------------

    async def _reconcile(
        self, prepared: PreparedEntity, result: EntityResult
    ) -> EnsureResult:
        request = prepared.request
        result.stage = EntityStage.RECONCILING

        project_result = await self._ensure(
            self.context.projects, ProjectSpec(name=request.project_name)
        )
        result.reconciled.append(project_result)

        repository_result = await self._ensure(
            self.context.repositories,
            RepositorySpec(
                project=request.project_name,
                name=request.repository_name,
                # replace recreates a repository that already holds commits
                empty=True if self.context.options.replace else None,
            ),
        )
        result.reconciled.append(repository_result)
        return repository_result

    def _migration_type(
        self, prepared: PreparedEntity, replaced: bool = False
    ) -> MigrationType:
        """INITIAL or SYNC for this attempt; SYNC requires ``allow_sync``.

        A repository recreated by ``replace`` is empty again and gets an
        INITIAL transfer whatever the history says.

        Raises:
            ConflictError: If the target already holds content and sync is not allowed
        """
        request = prepared.request
        if replaced:
            return MigrationType.INITIAL
        migration_type = self.context.store.next_migration_type(request.entity_id)
        has_commits = self.context.repositories.has_commits(
            RepositorySpec(project=request.project_name, name=request.repository_name)
        )
        if not has_commits and migration_type == MigrationType.INITIAL:
            return migration_type

        if not self.context.allow_sync:
            reason = (
                'already holds commits'
                if has_commits
                else 'was migrated before'
            )
            raise ConflictError(
                f'Target repository {request.project_name}/{request.repository_name} '
                f'{reason}; refusing to overwrite it without allow_sync',
                side=TARGET,
                endpoint=f'repository {request.project_name}/{request.repository_name}',
                status_code=409,
            )
        return MigrationType.SYNC

    def _dependents(
        self,
        prepared: PreparedEntity,
        repository: Dict[str, Any],
        repository_created: bool,
    ) -> List[Tuple[EntityHandler, BaseModel, EnsureOptions]]:
        request, snapshot = prepared.request, prepared.snapshot
        options = self.context.options
        dependents: List[Tuple[EntityHandler, BaseModel, EnsureOptions]] = []

        if snapshot.default_branch and not snapshot.empty:
            # A repository this run created is ours to configure; never replace
            # a repository just to change its default branch
            branch_options = EnsureOptions(force=options.force or repository_created)
            dependents.append(
                (
                    self.context.repositories,
                    RepositorySpec(
                        project=request.project_name,
                        name=request.repository_name,
                        default_branch=snapshot.default_branch,
                    ),
                    branch_options,
                )
            )

        if request.policies and repository.get('id'):
            for spec in policies_from_protected_branches(
                request.project_name, repository['id'], snapshot.protected_branches
            ):
                dependents.append((self.context.policies, spec, options))

        if snapshot.wiki_enabled:
            dependents.append(
                (self.context.wikis, WikiSpec(project=request.project_name), options)
            )

        for membership in request.memberships:
            dependents.append((self.context.memberships, membership, options))
        return dependents

    async def _configure_dependents(
        self,
        prepared: PreparedEntity,
        result: EntityResult,
        repository: Dict[str, Any],
        repository_created: bool,
    ) -> None:
        result.stage = EntityStage.CONFIGURING_DEPENDENTS
        for handler, desired, options in self._dependents(
            prepared, repository, repository_created
        ):
            try:
                result.reconciled.append(await self._ensure(handler, desired, options))
            except (PlatformAPIError, MigrationError) as e:
                failure = describe_failure(e, self.context.transport)
                failure['entity_type'] = handler.entity_type
                failure['key'] = handler.key(desired)
                result.dependent_failures.append(failure)
                self.logger.warning(
                    f'{result.entity_id}: {handler.entity_type} '
                    f'{failure["key"]} not configured: {failure["message"]}'
                )

    async def apply(self, prepared: PreparedEntity, result: EntityResult) -> EntityResult:
        """Run every target-side stage for a prepared entity.

        The caller serializes calls per target project.
        """
        request = prepared.request
        store = self.context.store

        try:
            repository_result = await self._reconcile(prepared, result)
            if self.dry_run:
                result.completed_at = datetime.now(timezone.utc)
                return result
            migration_type = await asyncio.to_thread(
                self._migration_type, prepared, repository_result.replaced
            )
        except (PlatformAPIError, MigrationError) as e:
            return self._fail(result, e)
        result.migration_type = migration_type
        repository = repository_result.entity or {}
        created = repository_result.outcome == EnsureOutcome.CREATED

        # From here on every attempt ends up in the history
        result.stage = EntityStage.TRANSFERRING
        try:
            if prepared.mirrored:
                push_url = repository.get('remoteUrl')
                if not push_url:
                    raise GitCommandError(
                        f'Target repository {request.repository_name} has no remote URL',
                        side=TARGET,
                    )
                await self.context.git.transfer(
                    Path(prepared.entity_dir),
                    push_url,
                    migration_type,
                    prepared.snapshot.lfs_enabled,
                )
                result.transferred = True
        except (PlatformAPIError, MigrationError) as e:
            self._fail(result, e)
            await self._record(result, MigrationStatus.FAILED, {'error': result.error})
            return result

        await self._configure_dependents(prepared, result, repository, created)

        status = (
            MigrationStatus.PARTIAL
            if result.dependent_failures
            else MigrationStatus.SUCCESS
        )
        details = (
            {'dependent_failures': result.dependent_failures}
            if result.dependent_failures
            else {}
        )
        if await self._record(result, status, details):
            result.status = status
            result.stage = EntityStage.RECORDED
            result.completed_at = datetime.now(timezone.utc)
            self.logger.info(
                f'{request.entity_id}: {status.value} ({migration_type.value})'
            )
        return result

    async def _record(
        self, result: EntityResult, status: MigrationStatus, details: Dict[str, Any]
    ) -> bool:
        try:
            await asyncio.to_thread(
                self.context.store.record_attempt,
                result.entity_id,
                status,
                result.migration_type,
                self.context.run_id,
                details,
            )
        except MigrationError as e:
            if result.status != MigrationStatus.FAILED:
                self._fail(result, e)
            return False
        return True
