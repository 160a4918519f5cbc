"""Tests for bounded polling and the long-running operation waiter."""

from unittest.mock import Mock

import pytest

from gitlab_ado_migrate.api.client import APIResponse
from gitlab_ado_migrate.api.exceptions import (
    TARGET,
    NotFoundError,
    OperationTimeoutError,
    RemoteOperationError,
)
from gitlab_ado_migrate.api.operations import OperationWaiter, is_operation_reference
from gitlab_ado_migrate.config.config import PollingConfig
from gitlab_ado_migrate.utils.polling import poll_until

REFERENCE = {
    'id': 'op-1',
    'status': 'queued',
    'url': 'https://dev.azure.com/acme-org/_apis/operations/op-1',
}


def ok(body):
    return APIResponse(status_code=200, data=body, headers={}, success=True)


class TestPollUntil:
    def test_completes_after_some_checks(self):
        sleep = Mock()
        check = Mock(side_effect=[(False, 1), (False, 2), (True, 3)])

        result = poll_until(check, interval=0.5, max_attempts=5, sleep=sleep)

        assert result.completed
        assert result.value == 3
        assert result.attempts == 3
        assert sleep.call_count == 2

    def test_bound_is_exact(self):
        sleep = Mock()
        check = Mock(return_value=(False, 'pending'))

        result = poll_until(check, interval=0.5, max_attempts=4, sleep=sleep)

        assert result.timed_out
        assert check.call_count == 4
        # No sleep after the final check
        assert sleep.call_count == 3

    def test_exceptions_propagate(self):
        check = Mock(side_effect=RuntimeError('boom'))

        with pytest.raises(RuntimeError):
            poll_until(check, interval=0, max_attempts=3, sleep=Mock())


class TestOperationWaiter:
    def setup_method(self):
        self.transport = Mock()
        self.transport.redact = lambda text: text
        self.sleep = Mock()
        self.waiter = OperationWaiter(
            self.transport, PollingConfig(interval=0.1, max_attempts=3), sleep=self.sleep
        )

    def test_recognizes_operation_references(self):
        assert is_operation_reference(REFERENCE)
        assert is_operation_reference({'id': 'x', 'status': 'inProgress'})
        assert not is_operation_reference({'id': 'x', 'name': 'repo'})
        assert not is_operation_reference(None)

    def test_entity_body_returns_immediately(self):
        body = {'id': 'repo-1', 'name': 'tools'}

        assert self.waiter.wait(body, 'create repository') == body
        self.transport.get.assert_not_called()

    def test_succeeds_after_polling(self):
        self.transport.get.side_effect = [
            ok({'id': 'op-1', 'status': 'inProgress'}),
            ok({'id': 'op-1', 'status': 'succeeded'}),
        ]

        result = self.waiter.wait(REFERENCE, 'create project')

        assert result['status'] == 'succeeded'
        self.transport.get.assert_called_with(TARGET, REFERENCE['url'])
        assert self.sleep.call_count == 1

    def test_not_found_is_assumed_success(self):
        self.transport.get.side_effect = NotFoundError('gone', side=TARGET, status_code=404)

        result = self.waiter.wait(REFERENCE, 'create project')

        assert result['status'] == 'succeeded'
        assert result['assumed'] is True

    def test_failed_operation_raises(self):
        self.transport.get.return_value = ok(
            {'id': 'op-1', 'status': 'failed', 'resultMessage': 'Project name already in use'}
        )

        with pytest.raises(RemoteOperationError) as exc_info:
            self.waiter.wait(REFERENCE, 'create project')

        assert exc_info.value.message == 'Project name already in use'

    def test_timeout(self):
        self.transport.get.return_value = ok({'id': 'op-1', 'status': 'inProgress'})

        with pytest.raises(OperationTimeoutError):
            self.waiter.wait(REFERENCE, 'create project')

        assert self.transport.get.call_count == 3
