"""Alternate execution path through an external ``curl`` process.

Used once per operation when the Python TLS stack rejects a certificate
that the system's curl (with its own trust store) may accept, which is
common with on-premises Azure DevOps Server and GitLab installations.
"""

import json
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from loguru import logger

_STATUS_MARKER = '\n__HTTP_STATUS__:'


@dataclass
class RawResponse:
    """Transport-neutral HTTP response (curl fallback and aiohttp path)."""

    status_code: int
    text: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def content(self) -> bytes:
        return self.text.encode('utf-8')

    def json(self) -> Any:
        return json.loads(self.text)


class CurlUnavailableError(RuntimeError):
    """curl is not installed or could not complete the request."""


def _quote(value: str) -> str:
    escaped = (
        value.replace('\\', '\\\\').replace('"', '\\"').replace('\n', '\\n')
    )
    return f'"{escaped}"'


class CurlFallback:
    """Executes a single HTTP request by spawning ``curl``."""

    def __init__(self, executable: str = 'curl', timeout: int = 60):
        """Initialize curl fallback.

        Args:
            executable: curl binary name or path
            timeout: Maximum seconds for the whole request
        """
        self.executable = executable
        self.timeout = timeout
        self.logger = logger.bind(component='CurlFallback')

    def available(self) -> bool:
        """Check whether curl can be found on PATH."""
        return shutil.which(self.executable) is not None

    def build_config(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str] = None,
    ) -> str:
        """Render a curl config file.

        Headers (including credentials) travel through stdin rather than the
        command line so they never show up in the process table.
        """
        lines = [
            f'url = {_quote(url)}',
            f'request = {_quote(method.upper())}',
            'silent',
            'show-error',
            f'max-time = {self.timeout}',
            f'write-out = {_quote(_STATUS_MARKER + "%{http_code}")}',
        ]
        for name, value in headers.items():
            lines.append(f'header = {_quote(f"{name}: {value}")}')
        if body is not None:
            lines.append(f'data-binary = {_quote(body)}')
        return '\n'.join(lines) + '\n'

    def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
    ) -> RawResponse:
        """Perform the request through curl.

        Args:
            method: HTTP method
            url: Absolute URL
            headers: Request headers
            params: Query parameters
            json_body: JSON-serializable request body

        Returns:
            Response with status code and body

        Raises:
            CurlUnavailableError: If curl is missing or exits with an error
        """
        if not self.available():
            raise CurlUnavailableError('curl executable not found')

        if params:
            separator = '&' if '?' in url else '?'
            url = f'{url}{separator}{urlencode(params, doseq=True)}'

        body = json.dumps(json_body) if json_body is not None else None
        config = self.build_config(method, url, headers, body)

        try:
            completed = subprocess.run(  # noqa: S603
                [self.executable, '--config', '-'],
                input=config,
                capture_output=True,
                text=True,
                timeout=self.timeout + 5,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CurlUnavailableError(f'curl failed to run: {e}') from e

        if completed.returncode != 0:
            raise CurlUnavailableError(
                f'curl exited with {completed.returncode}: {completed.stderr.strip()}'
            )

        return self.parse_output(completed.stdout)

    @staticmethod
    def parse_output(output: str) -> RawResponse:
        """Split curl's stdout into body and the trailing status marker."""
        body, marker, status = output.rpartition(_STATUS_MARKER)
        if not marker:
            raise CurlUnavailableError('curl output did not contain a status code')
        try:
            status_code = int(status.strip())
        except ValueError as e:
            raise CurlUnavailableError(f'Unparsable curl status: {status!r}') from e
        return RawResponse(status_code=status_code, text=body)
