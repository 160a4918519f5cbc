"""Per-entity migration history and preflight artifacts on local disk.

Every entity owns one directory under the work dir; its history and its
preflight snapshot live there and nowhere else, so damage to one entity's
files never affects another.
"""

import hashlib
import json
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from ..api.exceptions import MigrationError, PersistenceError
from ..models.history import (
    HistoryEntry,
    MigrationRecord,
    MigrationStatus,
    MigrationType,
    as_utc,
)
from ..models.source import PreflightSnapshot

HISTORY_FILE = 'migration_history.json'
PREFLIGHT_FILE = 'preflight.json'


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f'{type(value).__name__} is not JSON serializable')


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to ``path`` so readers see either the old or the new file.

    Raises:
        PersistenceError: If the file could not be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=str(path.parent), prefix=f'.{path.name}.', suffix='.tmp'
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, default=_json_default)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise PersistenceError(f'Could not write {path}: {e}') from e


def safe_entity_name(entity_id: str) -> str:
    """Directory name for an entity: readable slug plus a short stable hash."""
    slug = re.sub(r'[^A-Za-z0-9._-]+', '_', entity_id.replace('/', '__')).strip('._')
    digest = hashlib.sha1(entity_id.encode('utf-8')).hexdigest()[:8]
    return f'{slug or "entity"}-{digest}'


class MigrationStateStore:
    """Append-only per-entity history with tolerant reads."""

    def __init__(
        self,
        work_dir: str,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize state store.

        Args:
            work_dir: Root directory holding one subdirectory per entity
            clock: Source of UTC timestamps
        """
        self.work_dir = Path(work_dir)
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self.logger = logger.bind(component='MigrationStateStore')

    def _lock_for(self, entity_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(entity_id, threading.Lock())

    def entity_dir(self, entity_id: str) -> Path:
        """Working directory of one entity (created on demand)."""
        path = self.work_dir / 'entities' / safe_entity_name(entity_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def history_path(self, entity_id: str) -> Path:
        return self.entity_dir(entity_id) / HISTORY_FILE

    def preflight_path(self, entity_id: str) -> Path:
        return self.entity_dir(entity_id) / PREFLIGHT_FILE

    def _read_json(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            error = PersistenceError(f'Could not read {path}: {e}')
            self.logger.warning(f'{error}; treating as no prior state')
            return None

    # -- history ------------------------------------------------------------

    def _read_history_document(self, path: Path) -> Optional[Dict[str, Any]]:
        """Raw history document, or None when it is absent or not a history."""
        data = self._read_json(path)
        if data is None:
            return None
        if not isinstance(data, dict) or not isinstance(data.get('history', []), list):
            self.logger.warning(f'{path} does not hold a history list; treating as no prior state')
            return None
        return data

    def load_record(self, entity_id: str) -> MigrationRecord:
        """History of an entity; missing or unreadable files yield an empty record.

        Entries that do not validate are left out of the record but stay in
        the file.
        """
        data = self._read_history_document(self.history_path(entity_id))
        if data is None:
            return MigrationRecord(entity_id=entity_id)

        return MigrationRecord(
            entity_id=entity_id,
            history=self._valid_entries(entity_id, data.get('history', [])),
        )

    def _valid_entries(self, entity_id: str, raw_entries: List[Any]) -> List[HistoryEntry]:
        entries: List[HistoryEntry] = []
        for raw in raw_entries:
            try:
                entries.append(HistoryEntry(**raw))
            except (TypeError, ValueError) as e:
                self.logger.warning(
                    f'Ignoring unreadable history entry for {entity_id}: {e}'
                )
        return entries

    def load_history(self, entity_id: str) -> List[HistoryEntry]:
        """Ordered history entries, oldest first."""
        return self.load_record(entity_id).history

    def migration_count(self, entity_id: str) -> int:
        """Number of recorded attempts, including entries this version cannot read."""
        data = self._read_history_document(self.history_path(entity_id))
        return len(data.get('history', [])) if data else 0

    def next_migration_type(self, entity_id: str) -> MigrationType:
        """SYNC once any attempt has transferred the payload, INITIAL before that."""
        if self.load_record(entity_id).has_transferred():
            return MigrationType.SYNC
        return MigrationType.INITIAL

    def record_attempt(
        self,
        entity_id: str,
        status: MigrationStatus,
        migration_type: MigrationType,
        run_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> HistoryEntry:
        """Append one completed attempt to the entity's history.

        The stored entries are written back exactly as read, including ones
        that fail validation, so the history only ever grows. Timestamps
        never go backwards within one history even if the clock does. A
        file that is not a history document is kept aside rather than
        overwritten.

        Args:
            entity_id: Source entity identifier
            status: SUCCESS, FAILED or PARTIAL
            migration_type: INITIAL or SYNC
            run_id: Bulk run the attempt belongs to
            details: Redacted error information

        Returns:
            The appended entry

        Raises:
            PersistenceError: If the history could not be read or written
        """
        try:
            with self._lock_for(entity_id):
                entry, count = self._append(
                    entity_id, status, migration_type, run_id, details
                )
        except MigrationError:
            raise
        except Exception as e:
            raise PersistenceError(
                f'Could not record attempt for {entity_id}: {e}'
            ) from e

        self.logger.info(
            f'Recorded {status.value} {migration_type.value} attempt for {entity_id} '
            f'(#{count})'
        )
        return entry

    def _append(
        self,
        entity_id: str,
        status: MigrationStatus,
        migration_type: MigrationType,
        run_id: Optional[str],
        details: Optional[Dict[str, Any]],
    ) -> Tuple[HistoryEntry, int]:
        path = self.history_path(entity_id)
        document = self._read_history_document(path)
        if document is None and path.exists():
            self._preserve_unreadable(path)
        document = dict(document or {})
        raw_history = list(document.get('history', []))

        timestamp = as_utc(self._clock())
        for previous in self._valid_entries(entity_id, raw_history):
            if timestamp < previous.timestamp:
                timestamp = previous.timestamp

        entry = HistoryEntry(
            timestamp=timestamp,
            status=status,
            type=migration_type,
            run_id=run_id,
            details=details or {},
        )
        raw_history.append(json.loads(json.dumps(entry.dict(), default=_json_default)))
        document['entity_id'] = entity_id
        document['history'] = raw_history
        atomic_write_json(path, document)
        return entry, len(raw_history)

    def _preserve_unreadable(self, path: Path) -> None:
        stamp = self._clock().strftime('%Y%m%dT%H%M%S')
        aside = path.with_name(f'{path.name}.unreadable-{stamp}')
        try:
            os.replace(path, aside)
        except OSError as e:
            raise PersistenceError(f'Could not move aside {path}: {e}') from e
        self.logger.warning(f'Moved unreadable history to {aside}')

    # -- preflight ----------------------------------------------------------

    def write_preflight(self, snapshot: PreflightSnapshot) -> Path:
        """Persist the preflight snapshot, replacing any earlier one."""
        path = self.preflight_path(snapshot.entity_id)
        atomic_write_json(path, snapshot.dict())
        self.logger.debug(f'Wrote preflight for {snapshot.entity_id} to {path}')
        return path

    def load_preflight(self, entity_id: str) -> Optional[PreflightSnapshot]:
        data = self._read_json(self.preflight_path(entity_id))
        if not isinstance(data, dict):
            return None
        try:
            return PreflightSnapshot(**data)
        except (TypeError, ValueError) as e:
            self.logger.warning(f'Ignoring unreadable preflight for {entity_id}: {e}')
            return None
