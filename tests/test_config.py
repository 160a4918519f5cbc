"""Tests for configuration management."""

import os
from unittest.mock import patch

import pytest
import yaml

from gitlab_ado_migrate.config.config import (
    AzureDevOpsTargetConfig,
    Config,
    GitLabSourceConfig,
    RetryPolicy,
)


class TestGitLabSourceConfig:
    """Test source GitLab configuration."""

    def test_valid_config(self):
        """Test valid configuration creation."""
        config = GitLabSourceConfig(
            url='https://gitlab.example.com/',
            token='test-token',
            timeout=30,
            rate_limit_per_second=5,
        )

        assert config.url == 'https://gitlab.example.com'
        assert config.api_version == 'v4'
        assert config.rate_limit_per_second == 5

    def test_url_validation(self):
        """Test URL validation."""
        with pytest.raises(ValueError):
            GitLabSourceConfig(url='gitlab.example.com', token='test')

    def test_blank_token(self):
        """Test that a blank token raises validation error."""
        with pytest.raises(ValueError):
            GitLabSourceConfig(url='https://gitlab.com', token='   ')

    def test_is_immutable(self):
        """Test configuration cannot be changed after construction."""
        config = GitLabSourceConfig(url='https://gitlab.com', token='test')

        with pytest.raises((TypeError, ValueError)):
            config.token = 'other'


class TestAzureDevOpsTargetConfig:
    """Test target Azure DevOps configuration."""

    def test_graph_url_for_services(self):
        """Test the Graph host is derived for dev.azure.com organizations."""
        config = AzureDevOpsTargetConfig(url='https://dev.azure.com/acme-org', token='pat')

        assert config.graph_url == 'https://vssps.dev.azure.com/acme-org'
        assert config.api_version is None
        assert config.api_versions == ['7.1', '7.0', '6.0', '5.1']

    def test_graph_url_for_server(self):
        """Test Azure DevOps Server serves Graph from the collection URL."""
        config = AzureDevOpsTargetConfig(
            url='https://ado.internal/tfs/DefaultCollection', token='pat'
        )

        assert config.graph_url == 'https://ado.internal/tfs/DefaultCollection'

    def test_empty_api_versions(self):
        """Test an empty candidate list is rejected."""
        with pytest.raises(ValueError):
            AzureDevOpsTargetConfig(url='https://dev.azure.com/acme', token='pat', api_versions=[])


class TestRetryPolicy:
    """Test retry policy."""

    def test_exponential_backoff(self):
        """Test delays double after every failed attempt."""
        policy = RetryPolicy(base_delay=0.5)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_invalid_attempts(self):
        """Test max_attempts must be positive."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_retryable_codes_must_be_transient(self):
        """Test only 429 and the 5xx gateway codes may be retried."""
        assert RetryPolicy(retryable_status_codes=[503]).retryable_status_codes == [503]

        with pytest.raises(ValueError):
            RetryPolicy(retryable_status_codes=[429, 404])


class TestConfig:
    """Test main configuration class."""

    def test_config_from_dict(self):
        """Test configuration creation from dictionary."""
        config = Config(
            source={'url': 'https://gitlab.example.com', 'token': 'glpat-source'},
            target={'url': 'https://dev.azure.com/acme', 'token': 'ado-pat'},
            migration={'max_workers': 8, 'allow_sync': True},
        )

        assert config.migration.max_workers == 8
        assert config.migration.allow_sync is True
        assert config.migration.force is False
        assert config.retry.max_attempts == 3
        assert config.secrets == ['glpat-source', 'ado-pat']

    def test_unknown_keys_are_rejected(self):
        """Test misspelled settings fail loudly."""
        with pytest.raises(ValueError):
            Config(
                source={'url': 'https://gitlab.example.com', 'token': 't'},
                target={'url': 'https://dev.azure.com/acme', 'token': 'p'},
                migration={'max_worker': 8},
            )

    def test_config_from_file(self, tmp_path):
        """Test configuration loading from YAML file."""
        config_path = tmp_path / 'config.yaml'
        config_path.write_text(
            yaml.safe_dump(
                {
                    'source': {'url': 'https://gitlab.example.com', 'token': 't'},
                    'target': {
                        'url': 'https://dev.azure.com/acme',
                        'token': 'p',
                        'api_version': '7.0',
                    },
                    'polling': {'interval': 1, 'max_attempts': 5},
                }
            ),
            encoding='utf-8',
        )

        config = Config.from_file(str(config_path))

        assert config.target.api_version == '7.0'
        assert config.polling.max_attempts == 5

    def test_config_file_not_found(self):
        """Test FileNotFoundError for non-existent config file."""
        with pytest.raises(FileNotFoundError):
            Config.from_file('/non/existent/config.yaml')

    @patch.dict(
        os.environ,
        {
            'GITLAB_URL': 'https://gitlab.example.com',
            'GITLAB_TOKEN': 'glpat-env',
            'ADO_URL': 'https://dev.azure.com/acme',
            'ADO_PAT': 'ado-env',
            'MIGRATION_MAX_WORKERS': '6',
            'GIT_LFS_ENABLED': 'false',
        },
        clear=True,
    )
    def test_config_from_env(self):
        """Test configuration loading from environment variables."""
        with patch('gitlab_ado_migrate.config.config.load_dotenv'):
            config = Config.from_env()

        assert config.source.token == 'glpat-env'
        assert config.target.token == 'ado-env'
        assert config.target.api_version is None
        assert config.migration.max_workers == 6
        assert config.migration.work_dir == './migration-work'
        assert config.git.lfs_enabled is False

    @patch.dict(os.environ, {}, clear=True)
    def test_config_from_env_without_credentials(self):
        """Test missing environment variables fail validation."""
        with patch('gitlab_ado_migrate.config.config.load_dotenv'):
            with pytest.raises(ValueError):
                Config.from_env()

    def test_create_template(self, tmp_path):
        """Test the generated template is a loadable configuration."""
        output = tmp_path / 'nested' / 'config.yaml'

        Config.create_template(str(output))
        config = Config.from_file(str(output))

        assert config.source.url == 'https://gitlab.example.com'
        assert config.target.graph_url == 'https://vssps.dev.azure.com/your-organization'
        assert config.migration.allow_sync is False
