"""Error taxonomy shared by the source and target platforms."""

from typing import Optional


SOURCE = 'source'
TARGET = 'target'

SIDE_NAMES = {SOURCE: 'GitLab (source)', TARGET: 'Azure DevOps (target)'}


class PlatformAPIError(Exception):
    """Normalized failure of a remote call on either platform.

    Every platform failure is surfaced as one of the subclasses below so
    callers can branch on the class instead of on platform-specific status
    codes or error envelopes.
    """

    remediation = 'unknown'
    retryable = False

    def __init__(
        self,
        message: str,
        side: str = TARGET,
        endpoint: str = '',
        status_code: int = 0,
        raw_body: Optional[str] = None,
    ):
        """Initialize platform API error.

        Args:
            message: Error message extracted from the platform response
            side: Which platform produced the failure (source or target)
            endpoint: Redacted endpoint the call was issued against
            status_code: HTTP status code, 0 when undeterminable
            raw_body: Raw (redacted) response body, if any
        """
        super().__init__(message)
        self.message = message
        self.side = side
        self.endpoint = endpoint
        self.status_code = status_code
        self.raw_body = raw_body

    def describe(self) -> str:
        """User-facing description naming the side and remediation class."""
        side_name = SIDE_NAMES.get(self.side, self.side)
        status = f' HTTP {self.status_code}' if self.status_code else ''
        return (
            f'[{side_name}] {self.remediation} error{status} on '
            f'{self.endpoint or "<unknown endpoint>"}: {self.message}'
        )

    def to_dict(self) -> dict:
        """Serializable form used in results and reports."""
        return {
            'type': self.__class__.__name__,
            'side': self.side,
            'endpoint': self.endpoint,
            'status': self.status_code,
            'message': self.message,
            'remediation': self.remediation,
        }

    def __str__(self) -> str:
        return self.describe()


class NetworkError(PlatformAPIError):
    """Connection reset, DNS failure or similar transport-level failure."""

    remediation = 'network'
    retryable = True


class TLSError(NetworkError):
    """TLS handshake or certificate verification failure."""

    remediation = 'network'
    retryable = False


class RateLimitError(PlatformAPIError):
    """HTTP 429 from either platform."""

    remediation = 'rate-limit'
    retryable = True

    def __init__(self, message: str, retry_after: Optional[int] = None, **kwargs):
        """Initialize rate limit error.

        Args:
            message: Error message
            retry_after: Seconds the platform asked us to wait, if provided
            **kwargs: Additional arguments for base class
        """
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(PlatformAPIError):
    """HTTP 5xx from either platform."""

    remediation = 'server'
    retryable = True


class ClientError(PlatformAPIError):
    """HTTP 4xx that retrying cannot fix."""

    remediation = 'client'


class AuthenticationError(ClientError):
    """Credentials rejected (HTTP 401)."""

    remediation = 'auth'


class PermissionDeniedError(ClientError):
    """Credentials valid but lacking permission (HTTP 403)."""

    remediation = 'auth'


class NotFoundError(ClientError):
    """HTTP 404; reconciliation treats it as the entity being absent."""

    remediation = 'not-found'


class ConflictError(PlatformAPIError):
    """Observed state differs from desired state and no override was given."""

    remediation = 'conflict'


class OperationTimeoutError(PlatformAPIError):
    """A bounded wait on a remote long-running operation was exceeded."""

    remediation = 'timeout'


class RemoteOperationError(PlatformAPIError):
    """A remote long-running operation finished as failed or cancelled."""

    remediation = 'server'


class MigrationError(Exception):
    """Base exception for local migration failures."""


class PersistenceError(MigrationError):
    """Migration state could not be read or written."""


class GitCommandError(MigrationError):
    """A git subprocess failed; the message is already redacted."""

    def __init__(self, message: str, side: str = TARGET, returncode: int = 1):
        super().__init__(message)
        self.side = side
        self.returncode = returncode
