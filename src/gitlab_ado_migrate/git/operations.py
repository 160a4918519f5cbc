"""Git side of a migration: keep a source mirror, push it to the target."""

from pathlib import Path
from typing import Optional

from loguru import logger

from ..api.exceptions import SOURCE, GitCommandError
from ..config.config import Config
from ..models.history import MigrationType
from .clone import CloneResult, GitCloner
from .lfs import LFSHandler
from .push import GitPusher, PushResult
from .runner import GitRunner

MIRROR_DIR = 'mirror.git'


class GitOperations:
    """Facade over mirror clone, LFS transfer and push."""

    def __init__(self, config: Config, runner: Optional[GitRunner] = None):
        """Initialize Git operations.

        Args:
            config: Endpoint configuration
            runner: git command runner
        """
        self.config = config
        self.runner = runner or GitRunner(config)
        self.cloner = GitCloner(self.runner)
        self.pusher = GitPusher(self.runner)
        self.lfs_handler = LFSHandler(self.runner)
        self.logger = logger.bind(component='GitOperations')

    @staticmethod
    def mirror_path(entity_dir: Path) -> str:
        return str(Path(entity_dir) / MIRROR_DIR)

    def _uses_lfs(self, lfs_enabled: bool) -> bool:
        return bool(lfs_enabled and self.config.git.lfs_enabled)

    async def prepare_mirror(
        self, entity_dir: Path, clone_url: str, lfs_enabled: bool = False
    ) -> CloneResult:
        """Clone or refresh the source mirror in the entity's work dir.

        Only reads from the source; safe to re-run.

        Raises:
            GitCommandError: If git or git-lfs fails
        """
        path = self.mirror_path(entity_dir)
        result = await self.cloner.mirror(clone_url, path)

        if self._uses_lfs(lfs_enabled):
            if not await self.lfs_handler.available():
                raise GitCommandError(
                    'Source repository uses Git LFS but git-lfs is not installed',
                    side=SOURCE,
                )
            await self.lfs_handler.fetch_all(path)
        return result

    async def transfer(
        self,
        entity_dir: Path,
        push_url: str,
        migration_type: MigrationType,
        lfs_enabled: bool = False,
    ) -> PushResult:
        """Push LFS objects (when used) and then every branch and tag.

        Raises:
            GitCommandError: If a push fails
        """
        path = self.mirror_path(entity_dir)
        if self._uses_lfs(lfs_enabled):
            lfs_result = await self.lfs_handler.push_all(path, push_url)
            self.logger.info(
                f'LFS objects pushed: {lfs_result.objects} '
                f'({lfs_result.total_size} bytes)'
            )
        return await self.pusher.push(path, push_url, migration_type)

    async def check_git_availability(self) -> bool:
        return await self.runner.available()
