"""Migration history models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, validator


def as_utc(value: datetime) -> datetime:
    """Timezone-aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MigrationStatus(str, Enum):
    """Outcome of one completed migration attempt."""

    SUCCESS = 'SUCCESS'
    FAILED = 'FAILED'
    PARTIAL = 'PARTIAL'


class MigrationType(str, Enum):
    """INITIAL for a first transfer, SYNC for every converge afterwards."""

    INITIAL = 'INITIAL'
    SYNC = 'SYNC'


class HistoryEntry(BaseModel):
    """One completed attempt."""

    timestamp: datetime = Field(..., description='When the attempt was recorded (UTC)')
    status: MigrationStatus = Field(..., description='Attempt outcome')
    type: MigrationType = Field(..., description='INITIAL or SYNC')
    run_id: Optional[str] = Field(default=None, description='Bulk run id')
    details: Dict[str, Any] = Field(
        default_factory=dict, description='Redacted error or dependent failures'
    )

    @validator('timestamp')
    def validate_timestamp(cls, v):
        """Store every timestamp in UTC so entries stay comparable."""
        return as_utc(v)

    class Config:
        """Pydantic configuration."""

        json_encoders = {datetime: lambda v: v.isoformat() if v else None}


class MigrationRecord(BaseModel):
    """Append-only history of one entity."""

    entity_id: str = Field(..., description='Source entity identifier')
    history: List[HistoryEntry] = Field(
        default_factory=list, description='Attempts, oldest first'
    )

    @property
    def migration_count(self) -> int:
        return len(self.history)

    @property
    def last_entry(self) -> Optional[HistoryEntry]:
        return self.history[-1] if self.history else None

    def has_transferred(self) -> bool:
        """Whether any earlier attempt moved the payload to the target."""
        return any(
            entry.status in (MigrationStatus.SUCCESS, MigrationStatus.PARTIAL)
            for entry in self.history
        )
