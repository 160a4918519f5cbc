"""Tests for the generic reconciliation engine."""

import threading
from typing import Optional

import pytest
from pydantic import BaseModel

from gitlab_ado_migrate.api.exceptions import TARGET, ConflictError, NotFoundError
from gitlab_ado_migrate.reconcile.base import (
    EnsureOptions,
    EnsureOutcome,
    EntityHandler,
    Reconciler,
    normalize_value,
)


class Widget(BaseModel):
    name: str
    color: Optional[str] = None
    size: Optional[int] = None


class MemoryHandler(EntityHandler):
    """Entity type backed by a dict, recording every mutation."""

    entity_type = 'widget'

    def __init__(self, supports_update=True, supports_delete=True):
        super().__init__(transport=None)
        self.supports_update = supports_update
        self.supports_delete = supports_delete
        self.store = {}
        self.mutations = []
        self.skip = None

    def key(self, desired):
        return desired.name.lower()

    def skip_reason(self, desired):
        return self.skip

    def get(self, desired):
        if desired.name not in self.store:
            raise NotFoundError('missing', side=TARGET, status_code=404)
        return dict(self.store[desired.name])

    def desired_fields(self, desired):
        return {'color': desired.color, 'size': desired.size}

    def create(self, desired):
        self.mutations.append(('create', desired.name))
        self.store[desired.name] = {
            'id': len(self.mutations),
            'name': desired.name,
            'color': desired.color,
            'size': desired.size,
        }
        return dict(self.store[desired.name])

    def update(self, desired, observed):
        self.mutations.append(('update', desired.name))
        entity = self.store[desired.name]
        for name, value in self.desired_fields(desired).items():
            if value is not None:
                entity[name] = value
        return dict(entity)

    def delete(self, observed):
        self.mutations.append(('delete', observed['name']))
        del self.store[observed['name']]


@pytest.fixture
def handler():
    return MemoryHandler()


@pytest.fixture
def reconciler():
    return Reconciler()


class TestEnsure:
    def test_create_then_unchanged(self, handler, reconciler):
        desired = Widget(name='gear', color='red')

        first = reconciler.ensure(handler, desired)
        second = reconciler.ensure(handler, desired)

        assert first.outcome == EnsureOutcome.CREATED
        assert first.mutations == 1
        assert second.outcome == EnsureOutcome.UNCHANGED
        assert second.mutations == 0
        assert handler.mutations == [('create', 'gear')]

    def test_conflict_without_override_mutates_nothing(self, handler, reconciler):
        handler.store['gear'] = {'id': 1, 'name': 'gear', 'color': 'blue'}

        with pytest.raises(ConflictError) as exc_info:
            reconciler.ensure(handler, Widget(name='gear', color='red'))

        assert handler.mutations == []
        assert exc_info.value.status_code == 409
        assert exc_info.value.side == TARGET
        assert 'color' in exc_info.value.message

    def test_force_updates_in_place(self, handler, reconciler):
        handler.store['gear'] = {'id': 1, 'name': 'gear', 'color': 'blue'}

        result = reconciler.ensure(
            handler, Widget(name='gear', color='red'), EnsureOptions(force=True)
        )

        assert result.outcome == EnsureOutcome.UPDATED
        assert result.differences == {'color': {'desired': 'red', 'observed': 'blue'}}
        assert handler.mutations == [('update', 'gear')]
        assert handler.store['gear']['id'] == 1

    def test_replace_wins_over_force(self, handler, reconciler):
        handler.store['gear'] = {'id': 99, 'name': 'gear', 'color': 'blue'}

        result = reconciler.ensure(
            handler,
            Widget(name='gear', color='red'),
            EnsureOptions(force=True, replace=True),
        )

        assert result.outcome == EnsureOutcome.CREATED
        assert result.replaced is True
        assert result.mutations == 2
        assert handler.mutations == [('delete', 'gear'), ('create', 'gear')]

    def test_unsupported_force_is_a_conflict(self, reconciler):
        handler = MemoryHandler(supports_update=False)
        handler.store['gear'] = {'id': 1, 'name': 'gear', 'color': 'blue'}

        with pytest.raises(ConflictError) as exc_info:
            reconciler.ensure(
                handler, Widget(name='gear', color='red'), EnsureOptions(force=True)
            )

        assert 'cannot be updated in place' in exc_info.value.message
        assert handler.mutations == []

    def test_unsupported_replace_is_a_conflict(self, reconciler):
        handler = MemoryHandler(supports_delete=False)
        handler.store['gear'] = {'id': 1, 'name': 'gear', 'color': 'blue'}

        with pytest.raises(ConflictError):
            reconciler.ensure(
                handler, Widget(name='gear', color='red'), EnsureOptions(replace=True)
            )

        assert handler.mutations == []

    def test_unmanaged_fields_never_differ(self, handler, reconciler):
        handler.store['gear'] = {
            'id': 1,
            'name': 'gear',
            'color': 'red',
            'size': 12,
            'url': 'https://example.invalid/gear',
        }

        result = reconciler.ensure(handler, Widget(name='gear', color='red'))

        assert result.outcome == EnsureOutcome.UNCHANGED

    def test_skip(self, handler, reconciler):
        handler.skip = 'branch does not exist yet'

        result = reconciler.ensure(handler, Widget(name='gear'))

        assert result.outcome == EnsureOutcome.SKIPPED
        assert result.reason == 'branch does not exist yet'
        assert handler.mutations == []

    @pytest.mark.parametrize(
        'options,outcome',
        [
            (EnsureOptions(dry_run=True, force=True), EnsureOutcome.UPDATED),
            (EnsureOptions(dry_run=True, replace=True), EnsureOutcome.CREATED),
        ],
    )
    def test_dry_run_reports_without_mutating(self, handler, reconciler, options, outcome):
        handler.store['gear'] = {'id': 1, 'name': 'gear', 'color': 'blue'}

        result = reconciler.ensure(handler, Widget(name='gear', color='red'), options)

        assert result.outcome == outcome
        assert result.dry_run is True
        assert handler.mutations == []

    def test_dry_run_of_missing_entity(self, handler, reconciler):
        result = reconciler.ensure(
            handler, Widget(name='gear'), EnsureOptions(dry_run=True)
        )

        assert result.outcome == EnsureOutcome.CREATED
        assert result.dry_run is True
        assert handler.store == {}

    def test_ensure_all_stops_at_first_failure(self, handler, reconciler):
        handler.store['b'] = {'id': 1, 'name': 'b', 'color': 'blue'}

        with pytest.raises(ConflictError):
            reconciler.ensure_all(
                handler,
                [Widget(name='a'), Widget(name='b', color='red'), Widget(name='c')],
            )

        assert handler.mutations == [('create', 'a')]

    def test_concurrent_ensures_create_once(self, handler, reconciler):
        desired = Widget(name='gear', color='red')
        results = []

        def run():
            results.append(reconciler.ensure(handler, desired))

        threads = [threading.Thread(target=run) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes.count('created') == 1
        assert outcomes.count('unchanged') == 7
        assert handler.mutations == [('create', 'gear')]


class TestNormalizeValue:
    def test_empty_string_is_none(self):
        assert normalize_value('') is None

    def test_strings_are_stripped(self):
        assert normalize_value(' main ') == 'main'

    def test_nested(self):
        assert normalize_value({'a': ['x ', '']}) == {'a': ['x', None]}
