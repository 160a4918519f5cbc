"""Git subprocess execution with per-side credentials and redacted output."""

import asyncio
import base64
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from loguru import logger

from ..api.exceptions import SOURCE, TARGET, GitCommandError
from ..api.redaction import Redactor
from ..config.config import Config


@dataclass
class GitCommandResult:
    """Result of a finished git command."""

    returncode: int
    stdout: str = ''
    stderr: str = ''


class GitRunner:
    """Runs git commands authenticated for one side at a time.

    Credentials travel as an ``http.extraHeader`` passed through the
    ``GIT_CONFIG_*`` environment, so they never appear on the command line,
    in remote URLs or in the mirror's on-disk config.
    """

    def __init__(self, config: Config, executable: str = 'git'):
        """Initialize git runner.

        Args:
            config: Endpoint configuration
            executable: git binary
        """
        self.config = config
        self.executable = executable
        self.timeout = config.git.timeout
        self.auth_headers = {
            SOURCE: 'Authorization: Basic '
            + self._encode(f'oauth2:{config.source.token}'),
            TARGET: 'Authorization: Basic ' + self._encode(f':{config.target.token}'),
        }
        self.redact = Redactor(config.secrets)
        for header in self.auth_headers.values():
            self.redact.add_secret(header.split(' ', 2)[-1])
        self.logger = logger.bind(component='GitRunner')

    @staticmethod
    def _encode(credentials: str) -> str:
        return base64.b64encode(credentials.encode('utf-8')).decode('ascii')

    def environment(self, side: Optional[str]) -> Dict[str, str]:
        """Process environment for a git command against ``side``."""
        env = dict(os.environ)
        env['GIT_TERMINAL_PROMPT'] = '0'
        settings: List[tuple] = []
        if side is not None:
            settings.append(('http.extraHeader', self.auth_headers[side]))
        if not self.config.git.verify_ssl:
            settings.append(('http.sslVerify', 'false'))

        env['GIT_CONFIG_COUNT'] = str(len(settings))
        for index, (key, value) in enumerate(settings):
            env[f'GIT_CONFIG_KEY_{index}'] = key
            env[f'GIT_CONFIG_VALUE_{index}'] = value
        return env

    async def run(
        self,
        args: List[str],
        cwd: Optional[str] = None,
        side: Optional[str] = None,
        check: bool = True,
    ) -> GitCommandResult:
        """Run ``git <args>``.

        Args:
            args: Arguments after the git executable
            cwd: Working directory
            side: Side whose credentials the command needs, if any
            check: Raise on a non-zero exit code

        Returns:
            Command result with redacted output

        Raises:
            GitCommandError: Non-zero exit (when ``check``), timeout or missing git
        """
        cmd = [self.executable] + list(args)
        printable = self.redact(' '.join(cmd))
        self.logger.debug(f'Running git command: {printable} in {cwd or os.getcwd()}')

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self.environment(side),
            )
        except OSError as e:
            raise GitCommandError(
                f'Could not start {printable}: {e}', side=side or SOURCE
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitCommandError(
                f'{printable} timed out after {self.timeout} seconds',
                side=side or SOURCE,
            )

        result = GitCommandResult(
            returncode=process.returncode,
            stdout=self.redact(stdout.decode(errors='replace') if stdout else ''),
            stderr=self.redact(stderr.decode(errors='replace') if stderr else ''),
        )
        self.logger.debug(f'Git command return code: {result.returncode}')

        if check and result.returncode != 0:
            raise GitCommandError(
                f'{printable} failed with exit code {result.returncode}: '
                f'{result.stderr.strip() or "no error output"}',
                side=side or SOURCE,
                returncode=result.returncode,
            )
        return result

    async def output(self, args: List[str], cwd: Optional[str] = None) -> str:
        """Stdout of a local (credential-free) git command."""
        return (await self.run(args, cwd=cwd)).stdout.strip()

    async def available(self) -> bool:
        try:
            return (await self.run(['--version'], check=False)).returncode == 0
        except GitCommandError:
            return False
