"""Data models for source projects, history and run results."""

from .history import HistoryEntry, MigrationRecord, MigrationStatus, MigrationType
from .source import PreflightSnapshot, SourceProject

__all__ = [
    'HistoryEntry',
    'MigrationRecord',
    'MigrationStatus',
    'MigrationType',
    'PreflightSnapshot',
    'SourceProject',
]
