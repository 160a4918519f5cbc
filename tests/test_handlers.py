"""Tests for the target entity handlers."""

from unittest.mock import Mock

import pytest

from gitlab_ado_migrate.api.exceptions import NotFoundError
from gitlab_ado_migrate.api.operations import OperationWaiter
from gitlab_ado_migrate.reconcile.base import EnsureOutcome, Reconciler
from gitlab_ado_migrate.reconcile.membership import (
    GraphDirectory,
    GroupMembershipHandler,
    MembershipSpec,
    is_descriptor,
)
from gitlab_ado_migrate.reconcile.policy import (
    POLICY_TYPES,
    BranchPolicyHandler,
    BranchPolicySpec,
    policies_from_protected_branches,
)
from gitlab_ado_migrate.reconcile.project import ProjectDirectory, ProjectHandler, ProjectSpec
from gitlab_ado_migrate.reconcile.repository import (
    RepositoryHandler,
    RepositorySpec,
    qualify_branch,
)
from gitlab_ado_migrate.reconcile.wiki import WikiHandler, WikiSpec


def protected(name, *push_levels):
    return {
        'name': name,
        'push_access_levels': [{'access_level': level} for level in push_levels],
    }


class TestPolicies:
    def test_merge_request_only_branches_become_policies(self):
        specs = policies_from_protected_branches(
            'acme',
            'repo-1',
            [
                protected('main', 0),
                protected('develop', 30),
                protected('release/*', 0),
                protected('hotfix', 0, 0),
            ],
        )

        assert [spec.branch for spec in specs] == ['main', 'hotfix']
        assert specs[0].policy_type == 'minimum-reviewers'
        assert specs[0].settings['minimumApproverCount'] == 1

    def test_scope_is_exact_ref(self):
        spec = BranchPolicySpec(
            project='acme', repository_id='repo-1', branch='main',
            policy_type='Minimum-Reviewers',
        )

        assert spec.type_id == POLICY_TYPES['minimum-reviewers']
        assert spec.scope == [
            {'repositoryId': 'repo-1', 'refName': 'refs/heads/main', 'matchKind': 'exact'}
        ]

    def test_policy_for_missing_branch_is_skipped(self, transport, platforms):
        repository = platforms.add_repository('acme', 'tools', branches=[])
        handler = BranchPolicyHandler(transport, RepositoryHandler(transport))
        spec = policies_from_protected_branches(
            'acme', repository['id'], [protected('main', 0)]
        )[0]

        result = Reconciler().ensure(handler, spec)

        assert result.outcome == EnsureOutcome.SKIPPED
        assert platforms.policies == []


class TestRepositories:
    def test_qualify_branch(self):
        assert qualify_branch('main') == 'refs/heads/main'
        assert qualify_branch('refs/heads/dev') == 'refs/heads/dev'
        assert qualify_branch(None) is None

    def test_empty_repository_has_no_default_branch_difference(self, transport):
        handler = RepositoryHandler(transport)
        desired = RepositorySpec(project='acme', name='tools', default_branch='main')

        assert handler.diff(desired, {'id': 'r', 'defaultBranch': None}) == {}
        assert handler.diff(desired, {'id': 'r', 'defaultBranch': 'refs/heads/dev'}) == {
            'defaultBranch': {'desired': 'refs/heads/main', 'observed': 'refs/heads/dev'}
        }

    def test_has_commits(self, transport, platforms):
        platforms.add_repository('acme', 'empty')
        platforms.add_repository('acme', 'full', branches=['main'])
        handler = RepositoryHandler(transport)

        assert handler.has_commits(RepositorySpec(project='acme', name='empty')) is False
        assert handler.has_commits(RepositorySpec(project='acme', name='full')) is True
        assert handler.has_commits(RepositorySpec(project='acme', name='absent')) is False

    def test_required_empty_repository_with_commits_differs(self, transport, platforms):
        empty = platforms.add_repository('acme', 'empty')
        full = platforms.add_repository('acme', 'full', branches=['main'])
        handler = RepositoryHandler(transport)

        assert handler.diff(RepositorySpec(project='acme', name='empty', empty=True), empty) == {}
        assert handler.diff(RepositorySpec(project='acme', name='full', empty=True), full) == {
            'content': {'desired': 'empty', 'observed': 'has commits'}
        }
        assert handler.diff(RepositorySpec(project='acme', name='full'), full) == {}

    def test_branch_exists_requires_exact_ref(self, transport, platforms):
        repository = platforms.add_repository('acme', 'tools', branches=['main-old'])
        handler = RepositoryHandler(transport)

        assert handler.branch_exists('acme', repository['id'], 'main') is False
        assert handler.branch_exists('acme', repository['id'], 'main-old') is True

    def test_create_inside_existing_project(self, transport, platforms):
        platforms.add_project('acme')

        result = Reconciler().ensure(
            RepositoryHandler(transport), RepositorySpec(project='acme', name='tools')
        )

        assert result.outcome == EnsureOutcome.CREATED
        assert ('acme', 'tools') in platforms.repositories


class TestProjects:
    def test_create_awaits_the_operation(self, config, transport, platforms):
        waiter = OperationWaiter(transport, config.polling, sleep=Mock())
        handler = ProjectHandler(transport, waiter)

        result = Reconciler().ensure(handler, ProjectSpec(name='Acme'))

        assert result.outcome == EnsureOutcome.CREATED
        assert result.entity['name'] == 'Acme'
        assert any('_apis/operations/' in path for _, path in platforms.calls)

    def test_existing_project_matches_case_insensitively(self, transport, platforms):
        platforms.add_project('Acme')
        directory = ProjectDirectory(transport)

        assert directory.find('ACME')['name'] == 'Acme'
        assert directory.find('other') is None

    def test_visibility_is_validated(self):
        with pytest.raises(ValueError):
            ProjectSpec(name='acme', visibility='internal')

    def test_visibility_compares_case_insensitively(self, config, transport, platforms):
        platforms.add_project('acme', visibility='Public')
        handler = ProjectHandler(transport, OperationWaiter(transport, config.polling))

        same = Reconciler().ensure(handler, ProjectSpec(name='acme', visibility='public'))

        assert same.outcome == EnsureOutcome.UNCHANGED


class TestWikis:
    def test_wiki_is_created_once(self, transport, platforms):
        platforms.add_project('acme')
        handler = WikiHandler(transport)
        reconciler = Reconciler()

        first = reconciler.ensure(handler, WikiSpec(project='acme'))
        second = reconciler.ensure(handler, WikiSpec(project='acme'))

        assert first.outcome == EnsureOutcome.CREATED
        assert second.outcome == EnsureOutcome.UNCHANGED
        assert ('acme', 'acme.wiki') in platforms.wikis

    def test_wiki_cannot_be_forced(self):
        assert WikiHandler.supports_update is False


class TestMemberships:
    def setup_method(self):
        self.transport = Mock()
        self.transport.config.target.graph_url = 'https://vssps.dev.azure.com/acme-org'
        self.transport.negotiate_api_version.return_value = '7.1'
        self.transport.list_target.side_effect = lambda url, api_version=None: {
            'groups': [
                {'principalName': '[acme]\\Contributors', 'descriptor': 'vssgp.Contrib'}
            ],
            'users': [
                {
                    'principalName': 'dev@acme.example',
                    'mailAddress': 'dev@acme.example',
                    'descriptor': 'aad.Dev',
                }
            ],
        }[url.rsplit('/', 1)[-1]]
        self.directory = GraphDirectory(self.transport)

    def test_descriptors_pass_through(self):
        assert is_descriptor('vssgp.Abc')
        assert self.directory.resolve('aad.Xyz', 'users') == 'aad.Xyz'
        self.transport.list_target.assert_not_called()

    def test_names_resolve_case_insensitively(self):
        assert self.directory.resolve('[ACME]\\contributors', 'groups') == 'vssgp.Contrib'
        assert self.directory.resolve('Dev@Acme.Example', 'users') == 'aad.Dev'
        assert self.directory.api_version() == '7.1-preview.1'

    def test_listings_are_cached(self):
        self.directory.resolve('dev@acme.example', 'users')
        self.directory.resolve('dev@acme.example', 'users')

        assert self.transport.list_target.call_count == 1

    def test_unknown_member(self):
        with pytest.raises(NotFoundError):
            self.directory.resolve('nobody@acme.example', 'users')

    def test_membership_path(self):
        handler = GroupMembershipHandler(self.transport, self.directory)
        spec = MembershipSpec(group='[acme]\\Contributors', member='dev@acme.example')

        handler.create(spec)

        path = self.transport.put.call_args.args[1]
        assert path == (
            'https://vssps.dev.azure.com/acme-org/_apis/graph/memberships/aad.Dev/vssgp.Contrib'
        )
        assert handler.supports_update is False
