"""Git LFS object transfer."""

import json
from dataclasses import dataclass

from loguru import logger

from ..api.exceptions import SOURCE, TARGET
from .runner import GitRunner


@dataclass
class LFSResult:
    """Result of an LFS transfer."""

    objects: int = 0
    total_size: int = 0


class LFSHandler:
    """Fetches every LFS object from the source and pushes it to the target."""

    def __init__(self, runner: GitRunner):
        self.runner = runner
        self.logger = logger.bind(component='LFSHandler')

    async def available(self) -> bool:
        result = await self.runner.run(['lfs', 'version'], check=False)
        return result.returncode == 0

    async def fetch_all(self, mirror_path: str) -> None:
        """Download all LFS objects referenced by any ref of the mirror."""
        self.logger.info(f'Fetching LFS objects for {mirror_path}')
        await self.runner.run(['lfs', 'fetch', '--all'], cwd=mirror_path, side=SOURCE)

    async def push_all(self, mirror_path: str, push_url: str) -> LFSResult:
        """Upload all LFS objects to the target; run before pushing refs."""
        self.logger.info('Pushing LFS objects to target')
        await self.runner.run(
            ['lfs', 'push', '--all', push_url], cwd=mirror_path, side=TARGET
        )
        return await self.inventory(mirror_path)

    async def inventory(self, mirror_path: str) -> LFSResult:
        """Count and size the LFS objects reachable from every ref."""
        result = await self.runner.run(
            ['lfs', 'ls-files', '--all', '--json'], cwd=mirror_path, check=False
        )
        if result.returncode != 0 or not result.stdout.strip():
            return LFSResult()
        try:
            files = json.loads(result.stdout).get('files') or []
        except ValueError:
            self.logger.warning('Could not parse git lfs ls-files output')
            return LFSResult()
        return LFSResult(
            objects=len(files), total_size=sum(int(f.get('size', 0)) for f in files)
        )
