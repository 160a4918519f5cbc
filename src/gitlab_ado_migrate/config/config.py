"""Configuration management for the GitLab to Azure DevOps migration tool."""

from typing import Optional, Dict, Any, List
from pathlib import Path
import os

from pydantic import BaseModel, Field, validator
import yaml
from dotenv import load_dotenv


DEFAULT_RETRYABLE_STATUS_CODES = [429, 500, 502, 503, 504]
DEFAULT_ADO_API_VERSIONS = ['7.1', '7.0', '6.0', '5.1']


class RetryPolicy(BaseModel):
    """Retry policy shared by both sides of the transport."""

    max_attempts: int = Field(default=3, description='Maximum attempts per call')
    base_delay: float = Field(
        default=1.0, description='Delay in seconds before the first retry'
    )
    retryable_status_codes: List[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRYABLE_STATUS_CODES),
        description='HTTP status codes that trigger a retry',
    )

    class Config:
        """Pydantic configuration."""

        frozen = True
        extra = 'forbid'

    @validator('max_attempts')
    def validate_max_attempts(cls, v):
        """Validate max attempts is positive."""
        if v < 1:
            raise ValueError('max_attempts must be at least 1')
        return v

    @validator('base_delay')
    def validate_base_delay(cls, v):
        """Validate base delay is not negative."""
        if v < 0:
            raise ValueError('base_delay must not be negative')
        return v

    @validator('retryable_status_codes')
    def validate_retryable_status_codes(cls, v):
        """Validate only transient status codes are retried."""
        unsupported = sorted(set(v) - set(DEFAULT_RETRYABLE_STATUS_CODES))
        if unsupported:
            raise ValueError(
                f'retryable_status_codes may only contain '
                f'{DEFAULT_RETRYABLE_STATUS_CODES}, got {unsupported}'
            )
        return v

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt.

        Args:
            attempt: Attempt number that just failed

        Returns:
            Seconds to wait before the next attempt
        """
        return self.base_delay * (2 ** (max(attempt, 1) - 1))


class GitLabSourceConfig(BaseModel):
    """Configuration for the source GitLab instance."""

    url: str = Field(..., description='GitLab instance URL')
    token: str = Field(..., description='Personal access token')
    api_version: str = Field(default='v4', description='GitLab API version')
    timeout: int = Field(default=30, description='Request timeout in seconds')
    verify_ssl: bool = Field(default=True, description='Verify TLS certificates')
    rate_limit_per_second: float = Field(
        default=10.0, description='API requests per second limit'
    )

    class Config:
        """Pydantic configuration."""

        frozen = True
        extra = 'forbid'

    @validator('url')
    def validate_url(cls, v):
        """Validate GitLab URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    @validator('token')
    def validate_token(cls, v):
        """Validate the token is not blank."""
        if not v or not v.strip():
            raise ValueError('token must be provided')
        return v

    @validator('rate_limit_per_second')
    def validate_rate_limit(cls, v):
        """Validate rate limit is positive."""
        if v <= 0:
            raise ValueError('Rate limit must be positive')
        return v


class AzureDevOpsTargetConfig(BaseModel):
    """Configuration for the target Azure DevOps organization or collection."""

    url: str = Field(..., description='Organization or collection URL')
    token: str = Field(..., description='Personal access token (PAT)')
    api_version: Optional[str] = Field(
        default=None, description='Pinned api-version; negotiated when unset'
    )
    api_versions: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ADO_API_VERSIONS),
        description='Candidate api-versions, highest first',
    )
    graph_url: Optional[str] = Field(
        default=None, description='Graph (identity) API base URL'
    )
    timeout: int = Field(default=30, description='Request timeout in seconds')
    verify_ssl: bool = Field(default=True, description='Verify TLS certificates')
    rate_limit_per_second: float = Field(
        default=10.0, description='API requests per second limit'
    )

    class Config:
        """Pydantic configuration."""

        frozen = True
        extra = 'forbid'

    @validator('url')
    def validate_url(cls, v):
        """Validate Azure DevOps URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v.rstrip('/')

    @validator('token')
    def validate_token(cls, v):
        """Validate the PAT is not blank."""
        if not v or not v.strip():
            raise ValueError('token must be provided')
        return v

    @validator('api_versions')
    def validate_api_versions(cls, v):
        """Validate at least one candidate api-version is listed."""
        if not v:
            raise ValueError('api_versions must not be empty')
        return v

    @validator('graph_url', always=True)
    def derive_graph_url(cls, v, values):
        """Derive the Graph API host for Azure DevOps Services."""
        if v:
            return v.rstrip('/')
        url = values.get('url')
        if url and '://dev.azure.com/' in url:
            return url.replace('://dev.azure.com/', '://vssps.dev.azure.com/', 1)
        # Azure DevOps Server serves Graph from the collection itself
        return url

    @validator('rate_limit_per_second')
    def validate_rate_limit(cls, v):
        """Validate rate limit is positive."""
        if v <= 0:
            raise ValueError('Rate limit must be positive')
        return v


class PollingConfig(BaseModel):
    """Bounded polling for long-running remote operations."""

    interval: float = Field(default=2.0, description='Seconds between polls')
    max_attempts: int = Field(default=30, description='Polls before timing out')

    class Config:
        """Pydantic configuration."""

        frozen = True
        extra = 'forbid'

    @validator('interval')
    def validate_interval(cls, v):
        """Validate interval is not negative."""
        if v < 0:
            raise ValueError('interval must not be negative')
        return v

    @validator('max_attempts')
    def validate_max_attempts(cls, v):
        """Validate max attempts is positive."""
        if v < 1:
            raise ValueError('max_attempts must be at least 1')
        return v


class MigrationConfig(BaseModel):
    """Migration-specific configuration."""

    work_dir: str = Field(
        default='./migration-work',
        description='Root of the per-entity working directories',
    )
    max_workers: int = Field(
        default=4, description='Parallel workers for source-side preparation'
    )
    allow_sync: bool = Field(
        default=False, description='Allow converging already-populated targets'
    )
    force: bool = Field(
        default=False, description='Update differing target entities in place'
    )
    replace: bool = Field(
        default=False, description='Delete and recreate differing target entities'
    )
    log_calls: bool = Field(
        default=True, description='Emit one structured record per API call'
    )
    dry_run_preflight_only: bool = Field(
        default=False,
        description='Stop after preflight and report what reconciliation would do',
    )

    class Config:
        """Pydantic configuration."""

        frozen = True
        extra = 'forbid'

    @validator('max_workers')
    def validate_max_workers(cls, v):
        """Validate max workers is positive."""
        if v <= 0:
            raise ValueError('Max workers must be positive')
        return v


class GitConfig(BaseModel):
    """Git operations configuration."""

    timeout: int = Field(
        default=3600, description='Git operation timeout in seconds (default: 1 hour)'
    )
    lfs_enabled: bool = Field(
        default=True, description='Transfer Git LFS objects when the source uses LFS'
    )
    verify_ssl: bool = Field(
        default=True, description='Verify TLS certificates for git over HTTPS'
    )

    class Config:
        """Pydantic configuration."""

        frozen = True
        extra = 'forbid'

    @validator('timeout')
    def validate_timeout(cls, v):
        """Validate timeout is positive."""
        if v <= 0:
            raise ValueError('Git timeout must be positive')
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default='INFO', description='Log level')
    file: Optional[str] = Field(default=None, description='Log file path')
    format: Optional[str] = Field(default=None, description='Log format')

    class Config:
        """Pydantic configuration."""

        frozen = True
        extra = 'forbid'

    @validator('level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level must be one of: {valid_levels}')
        return v.upper()


class Config(BaseModel):
    """Endpoint configuration, built once at startup and never mutated."""

    source: GitLabSourceConfig = Field(..., description='Source GitLab instance')
    target: AzureDevOpsTargetConfig = Field(
        ..., description='Target Azure DevOps organization'
    )
    retry: RetryPolicy = Field(default_factory=RetryPolicy, description='Retry policy')
    polling: PollingConfig = Field(
        default_factory=PollingConfig, description='Long-running operation polling'
    )
    migration: MigrationConfig = Field(
        default_factory=MigrationConfig, description='Migration settings'
    )
    git: GitConfig = Field(
        default_factory=GitConfig, description='Git operations settings'
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description='Logging settings'
    )

    class Config:
        """Pydantic configuration."""

        frozen = True
        extra = 'forbid'

    @property
    def secrets(self) -> List[str]:
        """Credentials that must never appear in logs or error messages."""
        return [s for s in (self.source.token, self.target.token) if s]

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file."""
        config_file = Path(config_path)

        if not config_file.exists():
            raise FileNotFoundError(f'Configuration file not found: {config_path}')

        with open(config_file, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config_data = {
            'source': {
                'url': os.getenv('GITLAB_URL'),
                'token': os.getenv('GITLAB_TOKEN'),
            },
            'target': {
                'url': os.getenv('ADO_URL'),
                'token': os.getenv('ADO_PAT'),
                'api_version': os.getenv('ADO_API_VERSION'),
            },
            'retry': {
                'max_attempts': int(os.getenv('RETRY_MAX_ATTEMPTS', 3)),
                'base_delay': float(os.getenv('RETRY_BASE_DELAY', 1.0)),
            },
            'polling': {
                'interval': float(os.getenv('POLL_INTERVAL', 2.0)),
                'max_attempts': int(os.getenv('POLL_MAX_ATTEMPTS', 30)),
            },
            'migration': {
                'work_dir': os.getenv('MIGRATION_WORK_DIR'),
                'max_workers': int(os.getenv('MIGRATION_MAX_WORKERS', 4)),
                'log_calls': os.getenv('MIGRATION_LOG_CALLS', 'true').lower()
                == 'true',
            },
            'git': {
                'timeout': int(os.getenv('GIT_TIMEOUT', 3600)),
                'lfs_enabled': os.getenv('GIT_LFS_ENABLED', 'true').lower() == 'true',
                'verify_ssl': os.getenv('GIT_VERIFY_SSL', 'true').lower() == 'true',
            },
            'logging': {
                'level': os.getenv('LOG_LEVEL', 'INFO'),
                'file': os.getenv('LOG_FILE'),
            },
        }

        config_data = cls._remove_none_values(config_data)

        return cls(**config_data)

    @staticmethod
    def _remove_none_values(data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively remove None values from dictionary."""
        if isinstance(data, dict):
            return {
                k: Config._remove_none_values(v)
                for k, v in data.items()
                if v is not None
            }
        return data

    @staticmethod
    def create_template(output_path: str) -> None:
        """Create a configuration template file."""
        template_config = {
            'source': {
                'url': 'https://gitlab.example.com',
                'token': 'your-gitlab-personal-access-token',
                'timeout': 30,
                'verify_ssl': True,
            },
            'target': {
                'url': 'https://dev.azure.com/your-organization',
                'token': 'your-azure-devops-pat',
                'api_versions': list(DEFAULT_ADO_API_VERSIONS),
                'timeout': 30,
                'verify_ssl': True,
            },
            'retry': {
                'max_attempts': 3,
                'base_delay': 1.0,
                'retryable_status_codes': list(DEFAULT_RETRYABLE_STATUS_CODES),
            },
            'polling': {
                'interval': 2.0,
                'max_attempts': 30,
            },
            'migration': {
                'work_dir': './migration-work',
                'max_workers': 4,
                'allow_sync': False,
                'force': False,
                'replace': False,
                'log_calls': True,
                'dry_run_preflight_only': False,
            },
            'git': {
                'timeout': 3600,
                'lfs_enabled': True,
                'verify_ssl': True,
            },
            'logging': {
                'level': 'INFO',
                'file': 'migration.log',
            },
        }

        config_file = Path(output_path)
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.dump(
                template_config, f, default_flow_style=False, indent=2, sort_keys=False
            )
