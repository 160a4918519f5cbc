"""GitLab to Azure DevOps Migration Tool

Moves GitLab repositories into Azure DevOps projects with their full
history, LFS objects, default branch and branch protection, and can
re-run against an already migrated target to converge it.
"""

__version__ = '0.1.0'
__author__ = 'GitLab ADO Migration Team'
__email__ = 'team@example.com'

from .cli import main

__all__ = ['main']
