"""Git operations for repository transfer."""

from .operations import GitOperations
from .lfs import LFSHandler
from .clone import GitCloner
from .push import GitPusher
from .runner import GitRunner

__all__ = ['GitOperations', 'LFSHandler', 'GitCloner', 'GitPusher', 'GitRunner']
