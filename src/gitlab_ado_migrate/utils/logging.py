"""Logging utilities for the GitLab to Azure DevOps migration tool."""

import sys
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

from ..api.redaction import Redactor

CONSOLE_FORMAT = (
    '<green>{time:HH:mm:ss}</green> '
    '<level>{level: <7}</level> '
    '<magenta>[{extra[component]}]</magenta> '
    '<level>{message}</level>'
)

FILE_FORMAT = (
    '{time:YYYY-MM-DDTHH:mm:ss.SSSZZ} {level: <7} [{extra[component]}] '
    '{module}.{function}:{line} {message}'
)


def redaction_patcher(redactor: Redactor):
    """loguru patcher that scrubs secrets from every record message."""

    def patch(record):
        record['message'] = redactor(record['message'])
        if record['exception'] is not None:
            exc_type, exc_value, traceback = record['exception']
            if exc_value is not None and redactor(str(exc_value)) != str(exc_value):
                # Drop the traceback rather than render secrets from frame locals
                record['exception'] = None
                record['message'] += f' ({exc_type.__name__}: {redactor(str(exc_value))})'

    return patch


def setup_logging(
    level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    secrets: Iterable[str] = (),
) -> Redactor:
    """Route loguru output to stderr and, optionally, a rotating file.

    Every sink sees records after the redaction patcher ran, and ``diagnose``
    stays off so traceback variable dumps cannot leak a token.

    Returns:
        The installed redactor; callers may register more secrets on it.
    """
    redactor = Redactor(list(secrets))

    logger.remove()
    logger.configure(extra={'component': '-'}, patcher=redaction_patcher(redactor))

    logger.add(
        sys.stderr,
        level=level,
        format=log_format or CONSOLE_FORMAT,
        colorize=True,
        diagnose=False,
    )

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            format=FILE_FORMAT,
            rotation='10 MB',
            retention='30 days',
            compression='gz',
            encoding='utf-8',
            diagnose=False,
        )

    logger.debug('Logging ready (level={}, file={})', level, log_file or 'none')
    return redactor
