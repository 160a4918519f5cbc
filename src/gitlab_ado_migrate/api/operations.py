"""Awaiting Azure DevOps long-running operations (project create/update/delete)."""

import time
from typing import Any, Callable, Dict, Optional, Tuple

from loguru import logger

from ..config.config import PollingConfig
from ..utils.polling import poll_until
from .client import Transport
from .exceptions import (
    TARGET,
    NotFoundError,
    OperationTimeoutError,
    RemoteOperationError,
)

SUCCEEDED = 'succeeded'
FAILED_STATES = ('failed', 'cancelled')


def is_operation_reference(body: Any) -> bool:
    """Whether a response body is an operation reference rather than an entity."""
    if not isinstance(body, dict) or not body.get('id'):
        return False
    if '_apis/operations/' in str(body.get('url', '')):
        return True
    return 'status' in body and 'name' not in body


class OperationWaiter:
    """Polls ``_apis/operations/{id}`` with a fixed interval and bound."""

    def __init__(
        self,
        transport: Transport,
        polling: PollingConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize operation waiter.

        Args:
            transport: Shared transport
            polling: Interval and maximum number of checks
            sleep: Blocking sleep between checks
        """
        self.transport = transport
        self.polling = polling
        self._sleep = sleep
        self.logger = logger.bind(component='OperationWaiter')

    def wait(
        self, reference: Optional[Dict[str, Any]], description: str
    ) -> Dict[str, Any]:
        """Wait for an operation reference returned by a mutating call.

        A 404 while polling is treated as success: the operation may have
        completed and been garbage-collected before the first check. This
        can hide an operation that actually failed and was rolled back, so
        it is logged as a warning every time it happens.

        Args:
            reference: Body of the 202 response (``{id, status, url}``)
            description: Label for log and error messages

        Returns:
            Final operation body

        Raises:
            OperationTimeoutError: If the operation did not finish in time
            RemoteOperationError: If the operation finished as failed/cancelled
        """
        if not is_operation_reference(reference):
            # Synchronous endpoints return the entity itself
            return reference or {}

        op_id = reference['id']
        path = reference.get('url') or f'_apis/operations/{op_id}'

        def check() -> Tuple[bool, Dict[str, Any]]:
            try:
                response = self.transport.get(TARGET, path)
            except NotFoundError:
                self.logger.warning(
                    f'Operation {op_id} ({description}) returned 404 while polling; '
                    'assuming it completed'
                )
                return True, {'id': op_id, 'status': SUCCEEDED, 'assumed': True}

            body = response.data or {}
            status = str(body.get('status', '')).lower()
            if status == SUCCEEDED:
                return True, body
            if status in FAILED_STATES:
                raise RemoteOperationError(
                    body.get('resultMessage') or f'{description} {status}',
                    side=TARGET,
                    endpoint=self.transport.redact(path),
                )
            return False, body

        result = poll_until(
            check,
            interval=self.polling.interval,
            max_attempts=self.polling.max_attempts,
            sleep=self._sleep,
            description=description,
        )
        if result.timed_out:
            raise OperationTimeoutError(
                f'{description} did not finish after {result.attempts} checks '
                f'({self.polling.interval}s apart)',
                side=TARGET,
                endpoint=self.transport.redact(path),
            )

        self.logger.info(f'{description} completed (operation {op_id})')
        return result.value
