"""Run manifests: one JSON document per bulk run."""

import platform
import socket
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from .. import __version__
from ..models.results import BulkRun
from .store import atomic_write_json


def new_run_id(now: Optional[datetime] = None) -> str:
    """Sortable, unique run identifier."""
    now = now or datetime.now(timezone.utc)
    return f'{now.strftime("%Y%m%dT%H%M%SZ")}-{uuid.uuid4().hex[:8]}'


def environment_info() -> Dict[str, Any]:
    return {
        'tool_version': __version__,
        'python_version': sys.version.split()[0],
        'platform': platform.platform(),
        'host': socket.gethostname(),
    }


def write_manifest(work_dir: str, run: BulkRun) -> Path:
    """Write ``runs/<run-id>.json`` under the work dir.

    Args:
        work_dir: Migration work directory
        run: Finished (or aborted) bulk run

    Returns:
        Path of the manifest
    """
    path = Path(work_dir) / 'runs' / f'{run.run_id}.json'
    manifest = {
        'run_id': run.run_id,
        'start_time': run.start_time,
        'end_time': run.end_time,
        'summary': run.summary(),
        'environment': environment_info(),
        'entities': [
            {
                'entity_id': entry.entity_id,
                'status': entry.status.value if entry.status else None,
                'type': entry.migration_type.value if entry.migration_type else None,
                'stage': entry.stage.value,
                'failed_stage': entry.failed_stage.value if entry.failed_stage else None,
                'error': entry.error,
                'dependent_failures': entry.dependent_failures,
            }
            for entry in run.entries
        ],
    }
    atomic_write_json(path, manifest)
    logger.info(f'Run manifest written to {path}')
    return path
