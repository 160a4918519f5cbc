"""Bulk migration orchestrator with per-entity failure isolation."""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

from loguru import logger

from ..models.history import MigrationStatus
from ..models.results import BulkRun, EntityResult, EntityStage
from ..state.manifest import new_run_id
from .strategy import (
    EntityMigrationStrategy,
    EntityRequest,
    MigrationContext,
    describe_failure,
)


class MigrationOrchestrator:
    """Runs many entities through :class:`EntityMigrationStrategy`.

    Source preparation runs on up to ``max_workers`` entities at once. Target
    writes are serialized per target project, so two entities sharing a
    project never race to create it.
    """

    def __init__(self, context: MigrationContext, max_workers: Optional[int] = None):
        """Initialize migration orchestrator.

        Args:
            context: Collaborators and flags for the run
            max_workers: Parallel entities (defaults to the configured value)
        """
        self.context = context
        self.max_workers = max(
            1, max_workers or context.config.migration.max_workers
        )
        self.strategy = EntityMigrationStrategy(context)
        self._project_locks: Dict[str, asyncio.Lock] = {}
        self._stop_requested = False
        self.logger = logger.bind(component='MigrationOrchestrator')

    def request_stop(self) -> None:
        """Let running entities finish but start no new ones."""
        if not self._stop_requested:
            self.logger.warning('Stop requested; no new entities will be started')
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _project_lock(self, project: str) -> asyncio.Lock:
        return self._project_locks.setdefault(project.lower(), asyncio.Lock())

    def _new_result(self, request: EntityRequest) -> EntityResult:
        return EntityResult(
            entity_id=request.entity_id,
            target_project=request.project_name,
            target_repository=request.repository_name,
            dry_run=self.context.options.dry_run,
        )

    async def _migrate_one(
        self, request: EntityRequest, semaphore: asyncio.Semaphore
    ) -> EntityResult:
        result = self._new_result(request)
        try:
            return await self._run_stages(request, result, semaphore)
        except Exception as e:
            return self._unexpected_failure(result, e)

    async def _run_stages(
        self,
        request: EntityRequest,
        result: EntityResult,
        semaphore: asyncio.Semaphore,
    ) -> EntityResult:
        async with semaphore:
            if self._stop_requested:
                result.warnings.append('not started: stop requested')
                self.logger.info(f'{request.entity_id} not started (stop requested)')
                return result

            self.logger.info(f'Migrating {request.entity_id}')
            prepared = await self.strategy.prepare(request, result)
            if prepared is None:
                return result

            async with self._project_lock(request.project_name):
                return await self.strategy.apply(prepared, result)

    def _unexpected_failure(
        self, result: EntityResult, error: BaseException
    ) -> EntityResult:
        """Mark ``result`` failed at the stage it had reached."""
        result.failed_stage = result.stage
        result.stage = EntityStage.FAILED
        result.status = MigrationStatus.FAILED
        result.error = describe_failure(error, self.context.transport)
        result.completed_at = datetime.now(timezone.utc)
        self.logger.error(
            f'{result.entity_id} failed unexpectedly while {result.failed_stage.value}: '
            f'{result.error["message"]}'
        )
        return result

    async def run(self, requests: List[EntityRequest]) -> BulkRun:
        """Migrate every requested entity; one failure never stops the others.

        Args:
            requests: Entities to migrate, in reporting order

        Returns:
            Bulk run with one result per request
        """
        run = BulkRun(run_id=self.context.run_id or new_run_id())
        if self.context.run_id is None:
            self.context.run_id = run.run_id

        self.logger.info(
            f'Starting run {run.run_id}: {len(requests)} entities, '
            f'{self.max_workers} workers'
            + (' (dry run)' if self.context.options.dry_run else '')
        )

        semaphore = asyncio.Semaphore(self.max_workers)
        outcomes = await asyncio.gather(
            *(self._migrate_one(request, semaphore) for request in requests),
            return_exceptions=True,
        )

        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                outcome = self._unexpected_failure(self._new_result(request), outcome)
            run.entries.append(outcome)

        run.end_time = datetime.now(timezone.utc)
        summary = run.summary()
        self.logger.info(
            f'Run {run.run_id} finished: {summary["succeeded"]}/{summary["total"]} '
            f'succeeded ({summary["partial"]} partial), {summary["failed"]} failed '
            f'in {summary["elapsed"]}s'
        )
        return run
