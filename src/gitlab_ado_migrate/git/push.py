"""Pushing the local mirror to the target repository."""

from dataclasses import dataclass

from loguru import logger

from ..api.exceptions import TARGET
from ..models.history import MigrationType
from .runner import GitRunner

# Only branches and tags are migrated; GitLab-internal namespaces such as
# refs/merge-requests/* and refs/pipelines/* stay behind
INITIAL_REFSPECS = ['refs/heads/*:refs/heads/*', 'refs/tags/*:refs/tags/*']
SYNC_REFSPECS = ['+refs/heads/*:refs/heads/*', '+refs/tags/*:refs/tags/*']


@dataclass
class PushResult:
    """Result of a push to the target."""

    migration_type: MigrationType
    forced: bool = False
    output: str = ''


def push_arguments(push_url: str, migration_type: MigrationType) -> list:
    """git arguments for an INITIAL (plain) or SYNC (force-converge) push."""
    if migration_type == MigrationType.SYNC:
        return ['push', '--force', '--prune', push_url] + SYNC_REFSPECS
    return ['push', push_url] + INITIAL_REFSPECS


class GitPusher:
    """Pushes every branch and tag of a mirror to the target.

    An INITIAL push never rewrites anything on the target. A SYNC push treats
    the source as authoritative: rewritten history is force-pushed and refs
    deleted upstream are pruned.
    """

    def __init__(self, runner: GitRunner):
        self.runner = runner
        self.logger = logger.bind(component='GitPusher')

    async def push(
        self, mirror_path: str, push_url: str, migration_type: MigrationType
    ) -> PushResult:
        """Push the mirror.

        Args:
            mirror_path: Bare mirror directory
            push_url: Target repository remote URL
            migration_type: INITIAL or SYNC

        Returns:
            Push result

        Raises:
            GitCommandError: If the push fails
        """
        args = push_arguments(push_url, migration_type)
        self.logger.info(
            f'Pushing {mirror_path} to target ({migration_type.value.lower()} push)'
        )
        result = await self.runner.run(args, cwd=mirror_path, side=TARGET)
        return PushResult(
            migration_type=migration_type,
            forced=migration_type == MigrationType.SYNC,
            output=result.stderr.strip(),
        )
