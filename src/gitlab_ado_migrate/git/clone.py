"""Mirror clone and refresh of the source repository."""

import os
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from ..api.exceptions import SOURCE
from .runner import GitRunner


@dataclass
class CloneResult:
    """Local mirror state after a clone or fetch."""

    repository_path: str
    refreshed: bool = False
    repository_size: int = 0
    branches_count: int = 0
    tags_count: int = 0
    commits_count: int = 0


class GitCloner:
    """Keeps a bare mirror of the source repository in the entity work dir.

    A mirror that already exists is refreshed with ``remote update --prune``
    instead of being cloned again, so re-runs only fetch what changed.
    """

    def __init__(self, runner: GitRunner):
        self.runner = runner
        self.logger = logger.bind(component='GitCloner')

    @staticmethod
    def is_mirror(path: str) -> bool:
        return os.path.isfile(os.path.join(path, 'HEAD')) and os.path.isdir(
            os.path.join(path, 'refs')
        )

    async def mirror(self, clone_url: str, mirror_path: str) -> CloneResult:
        """Clone ``clone_url`` as a mirror into ``mirror_path`` or refresh it.

        Args:
            clone_url: Source HTTP clone URL (without credentials)
            mirror_path: Bare repository directory

        Returns:
            Mirror statistics

        Raises:
            GitCommandError: If git fails
        """
        if self.is_mirror(mirror_path):
            self.logger.info(f'Refreshing existing mirror {mirror_path}')
            await self.runner.run(
                ['remote', 'set-url', 'origin', clone_url], cwd=mirror_path
            )
            await self.runner.run(
                ['remote', 'update', '--prune'], cwd=mirror_path, side=SOURCE
            )
            refreshed = True
        else:
            Path(mirror_path).parent.mkdir(parents=True, exist_ok=True)
            self.logger.info(f'Cloning mirror of {clone_url} into {mirror_path}')
            await self.runner.run(
                ['clone', '--mirror', clone_url, mirror_path], side=SOURCE
            )
            refreshed = False

        result = await self._get_repository_stats(mirror_path)
        result.refreshed = refreshed
        self.logger.info(
            f'Mirror ready: {result.branches_count} branches, '
            f'{result.tags_count} tags, {result.commits_count} commits'
        )
        return result

    async def _count_refs(self, mirror_path: str, namespace: str) -> int:
        listing = await self.runner.output(
            ['for-each-ref', '--format=%(refname)', namespace], cwd=mirror_path
        )
        return len([line for line in listing.split('\n') if line.strip()])

    async def _get_repository_stats(self, mirror_path: str) -> CloneResult:
        result = CloneResult(repository_path=mirror_path)
        result.repository_size = self._get_directory_size(mirror_path)
        result.branches_count = await self._count_refs(mirror_path, 'refs/heads')
        result.tags_count = await self._count_refs(mirror_path, 'refs/tags')
        if result.branches_count:
            commits = await self.runner.output(
                ['rev-list', '--all', '--count'], cwd=mirror_path
            )
            result.commits_count = int(commits) if commits.isdigit() else 0
        return result

    @staticmethod
    def _get_directory_size(path: str) -> int:
        return sum(
            entry.stat().st_size for entry in Path(path).rglob('*') if entry.is_file()
        )
