"""Per-entity results and the bulk run summary handed to reporting layers."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..reconcile.base import EnsureResult
from .history import MigrationStatus, MigrationType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityStage(str, Enum):
    """States of the per-entity state machine."""

    PENDING = 'pending'
    PREPARING = 'preparing'
    RECONCILING = 'reconciling'
    TRANSFERRING = 'transferring'
    CONFIGURING_DEPENDENTS = 'configuring_dependents'
    RECORDED = 'recorded'
    FAILED = 'failed'


class EntityResult(BaseModel):
    """Everything that happened to one entity in one run."""

    entity_id: str = Field(..., description='Source entity identifier, e.g. acme/app')
    target_project: Optional[str] = Field(default=None, description='Target project')
    target_repository: Optional[str] = Field(
        default=None, description='Target repository'
    )
    stage: EntityStage = Field(default=EntityStage.PENDING, description='Last stage reached')
    failed_stage: Optional[EntityStage] = Field(
        default=None, description='Stage that failed'
    )
    status: Optional[MigrationStatus] = Field(default=None, description='Final status')
    migration_type: Optional[MigrationType] = Field(
        default=None, description='INITIAL or SYNC'
    )
    reconciled: List[EnsureResult] = Field(
        default_factory=list, description='Top-level and dependent ensure results'
    )
    transferred: bool = Field(default=False, description='Payload was pushed')
    error: Optional[Dict[str, Any]] = Field(
        default=None, description='Normalized error that failed the entity'
    )
    dependent_failures: List[Dict[str, Any]] = Field(
        default_factory=list, description='Dependent configuration failures'
    )
    warnings: List[str] = Field(default_factory=list, description='Non-fatal warnings')
    dry_run: bool = Field(default=False, description='Reported without mutating')
    started_at: datetime = Field(default_factory=utcnow, description='Start time')
    completed_at: Optional[datetime] = Field(default=None, description='End time')

    class Config:
        """Pydantic configuration."""

        json_encoders = {datetime: lambda v: v.isoformat() if v else None}

    @property
    def succeeded(self) -> bool:
        if self.dry_run:
            return self.error is None
        return self.status in (MigrationStatus.SUCCESS, MigrationStatus.PARTIAL)

    @property
    def duration(self) -> float:
        end = self.completed_at or utcnow()
        return (end - self.started_at).total_seconds()


class BulkRun(BaseModel):
    """A batch of entities processed with failure isolation."""

    run_id: str = Field(..., description='Unique run identifier')
    entries: List[EntityResult] = Field(default_factory=list, description='Per-entity results')
    start_time: datetime = Field(default_factory=utcnow, description='Run start')
    end_time: Optional[datetime] = Field(default=None, description='Run end')

    class Config:
        """Pydantic configuration."""

        json_encoders = {datetime: lambda v: v.isoformat() if v else None}

    @property
    def elapsed(self) -> float:
        end = self.end_time or utcnow()
        return (end - self.start_time).total_seconds()

    def summary(self) -> Dict[str, Any]:
        """Aggregate counts; PARTIAL entities count as succeeded."""
        succeeded = sum(1 for entry in self.entries if entry.succeeded)
        return {
            'total': len(self.entries),
            'succeeded': succeeded,
            'failed': len(self.entries) - succeeded,
            'partial': sum(
                1 for entry in self.entries if entry.status == MigrationStatus.PARTIAL
            ),
            'elapsed': round(self.elapsed, 3),
        }
