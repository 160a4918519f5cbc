"""Migration engine - wires configuration to the migration components."""

from pathlib import Path
from typing import Iterable, List, Optional, Union
from urllib.parse import quote

import yaml
from loguru import logger

from ..api.client import Transport
from ..api.exceptions import SOURCE, TARGET
from ..api.operations import OperationWaiter
from ..config.config import Config
from ..git.operations import GitOperations
from ..models.results import BulkRun
from ..reconcile.base import EnsureOptions, Reconciler
from ..reconcile.membership import GraphDirectory, GroupMembershipHandler
from ..reconcile.policy import BranchPolicyHandler
from ..reconcile.project import ProjectDirectory, ProjectHandler
from ..reconcile.repository import RepositoryHandler
from ..reconcile.wiki import WikiHandler
from ..state.manifest import new_run_id, write_manifest
from ..state.store import MigrationStateStore
from .orchestrator import MigrationOrchestrator
from .strategy import EntityRequest, MigrationContext


def load_entity_requests(path: str) -> List[Union[str, EntityRequest]]:
    """Read entities from a file.

    A YAML list may mix plain ``group/project`` strings and mappings with
    ``entity_id``, ``target_project``, ``target_repository`` and
    ``memberships``. Anything else is read as one entity per line, with
    ``#`` starting a comment.
    """
    text = Path(path).read_text(encoding='utf-8')
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError:
        data = None

    if isinstance(data, list):
        return [
            EntityRequest(**item) if isinstance(item, dict) else str(item)
            for item in data
        ]

    entities = []
    for line in text.splitlines():
        line = line.split('#', 1)[0].strip()
        if line:
            entities.append(line)
    return entities


class ConnectivityError(ConnectionError):
    """One of the platforms is unreachable or rejects the credentials."""


class MigrationEngine:
    """Main migration engine that coordinates a bulk migration run."""

    def __init__(
        self,
        config: Config,
        transport: Optional[Transport] = None,
        git: Optional[GitOperations] = None,
    ):
        """Initialize migration engine.

        Args:
            config: Endpoint configuration
            transport: Shared transport (built from config when omitted)
            git: Git operations (built from config when omitted)
        """
        self.config = config
        self.logger = logger.bind(component='MigrationEngine')

        self.transport = transport or Transport(config)
        self.waiter = OperationWaiter(self.transport, config.polling)
        self.projects = ProjectDirectory(self.transport)
        self.reconciler = Reconciler()
        self.store = MigrationStateStore(config.migration.work_dir)
        self.git = git or GitOperations(config)

        self.project_handler = ProjectHandler(self.transport, self.waiter, self.projects)
        self.repository_handler = RepositoryHandler(self.transport, self.projects)
        self.policy_handler = BranchPolicyHandler(
            self.transport, self.repository_handler
        )
        self.wiki_handler = WikiHandler(self.transport, self.projects)
        self.membership_handler = GroupMembershipHandler(
            self.transport, GraphDirectory(self.transport)
        )

    def build_context(
        self,
        force: Optional[bool] = None,
        replace: Optional[bool] = None,
        allow_sync: Optional[bool] = None,
        dry_run: Optional[bool] = None,
        run_id: Optional[str] = None,
    ) -> MigrationContext:
        """Context for one run; flags left as None fall back to the configuration."""
        settings = self.config.migration
        options = EnsureOptions(
            force=settings.force if force is None else force,
            replace=settings.replace if replace is None else replace,
            dry_run=settings.dry_run_preflight_only if dry_run is None else dry_run,
        )
        return MigrationContext(
            config=self.config,
            transport=self.transport,
            reconciler=self.reconciler,
            store=self.store,
            git=self.git,
            projects=self.project_handler,
            repositories=self.repository_handler,
            policies=self.policy_handler,
            wikis=self.wiki_handler,
            memberships=self.membership_handler,
            options=options,
            allow_sync=settings.allow_sync if allow_sync is None else allow_sync,
            run_id=run_id or new_run_id(),
        )

    def resolve_entities(
        self, entities: Iterable[Union[str, EntityRequest]]
    ) -> List[EntityRequest]:
        """Expand ``group/*`` patterns and drop duplicates, keeping order.

        Args:
            entities: Source project paths, ``group/*`` patterns or requests

        Returns:
            One request per source project
        """
        requests: List[EntityRequest] = []
        seen = set()

        def add(request: EntityRequest) -> None:
            key = request.entity_id.lower()
            if key not in seen:
                seen.add(key)
                requests.append(request)

        for entity in entities:
            if isinstance(entity, EntityRequest):
                add(entity)
                continue

            entity = entity.strip().strip('/')
            if not entity.endswith('/*'):
                add(EntityRequest(entity_id=entity))
                continue

            group = entity[:-2]
            projects = self.transport.get_paginated(
                f'/groups/{quote(group, safe="")}/projects',
                params={'include_subgroups': 'true', 'archived': 'false'},
            )
            self.logger.info(f'{entity} matched {len(projects)} projects')
            for project in sorted(projects, key=lambda p: p['path_with_namespace']):
                add(EntityRequest(entity_id=project['path_with_namespace']))
        return requests

    def test_connectivity(self) -> None:
        """Check both platforms and negotiate the target api-version.

        Raises:
            ConnectivityError: If either side is unreachable
        """
        self.logger.info('Testing connectivity to source and target')
        if not self.transport.test_connection(SOURCE):
            raise ConnectivityError('Cannot connect to the source GitLab instance')
        if not self.transport.test_connection(TARGET):
            raise ConnectivityError('Cannot connect to the target Azure DevOps organization')
        version = self.transport.negotiate_api_version()
        self.logger.info(f'Connectivity tests passed (target api-version {version})')

    async def migrate(
        self,
        entities: Iterable[Union[str, EntityRequest]],
        force: Optional[bool] = None,
        replace: Optional[bool] = None,
        allow_sync: Optional[bool] = None,
        dry_run: Optional[bool] = None,
        orchestrator_hook=None,
    ) -> BulkRun:
        """Migrate the given entities and write the run manifest.

        Args:
            entities: Source project paths, ``group/*`` patterns or requests
            force: Update differing target entities in place
            replace: Delete and recreate differing target entities
            allow_sync: Allow force-converge pushes into populated targets
            dry_run: Preflight and report only
            orchestrator_hook: Called with the orchestrator before the run
                starts, e.g. to wire a signal handler to ``request_stop``

        Returns:
            The finished bulk run
        """
        context = self.build_context(force, replace, allow_sync, dry_run)
        self.logger.info(f'Starting GitLab to Azure DevOps migration (run {context.run_id})')

        try:
            self.test_connectivity()
            if not context.options.dry_run and not await self.git.check_git_availability():
                raise ConnectivityError('git is not installed or not on PATH')

            requests = self.resolve_entities(entities)
            orchestrator = MigrationOrchestrator(context)
            if orchestrator_hook is not None:
                orchestrator_hook(orchestrator)
            run = await orchestrator.run(requests)

            write_manifest(self.config.migration.work_dir, run)
            return run
        finally:
            self.transport.close()
