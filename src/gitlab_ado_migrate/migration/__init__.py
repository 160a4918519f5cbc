"""Migration engine and strategies."""

from .strategy import (
    EntityMigrationStrategy,
    EntityRequest,
    MigrationContext,
)
from .orchestrator import MigrationOrchestrator
from .engine import MigrationEngine

__all__ = [
    'EntityMigrationStrategy',
    'EntityRequest',
    'MigrationContext',
    'MigrationOrchestrator',
    'MigrationEngine',
]
