"""Bounded polling shared by every "wait for a remote job" call site."""

import time
from dataclasses import dataclass
from typing import Any, Callable, Tuple

from loguru import logger


@dataclass
class PollResult:
    """Outcome of a bounded poll: either a value or a timeout, never both."""

    completed: bool
    value: Any = None
    attempts: int = 0

    @property
    def timed_out(self) -> bool:
        return not self.completed


def poll_until(
    check: Callable[[], Tuple[bool, Any]],
    interval: float,
    max_attempts: int,
    sleep: Callable[[float], None] = time.sleep,
    description: str = 'remote operation',
) -> PollResult:
    """Call ``check`` until it reports completion or the attempt bound is hit.

    Args:
        check: Returns ``(done, value)``; exceptions propagate to the caller
        interval: Fixed seconds between checks
        max_attempts: Maximum number of checks
        sleep: Blocking sleep function
        description: Label used in log messages

    Returns:
        PollResult with ``completed=False`` when the bound was exceeded
    """
    value = None
    for attempt in range(1, max_attempts + 1):
        done, value = check()
        if done:
            return PollResult(completed=True, value=value, attempts=attempt)
        if attempt < max_attempts:
            logger.debug(
                f'Waiting for {description} (check {attempt}/{max_attempts})'
            )
            sleep(interval)

    logger.warning(f'Gave up waiting for {description} after {max_attempts} checks')
    return PollResult(completed=False, value=value, attempts=max_attempts)
