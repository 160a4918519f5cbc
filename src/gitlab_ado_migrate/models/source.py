"""Source (GitLab) project models and the preflight snapshot."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SourceProject(BaseModel):
    """The parts of a GitLab project a migration needs."""

    id: int = Field(..., description='Project ID')
    name: str = Field(..., description='Project name')
    path: str = Field(..., description='Project path')
    path_with_namespace: str = Field(..., description='Full path, e.g. acme/app')
    description: Optional[str] = Field(default=None, description='Project description')
    visibility: str = Field(
        default='private', description='Project visibility (private, internal, public)'
    )
    default_branch: Optional[str] = Field(
        default=None, description='Default branch name'
    )
    http_url_to_repo: Optional[str] = Field(default=None, description='HTTP clone URL')
    web_url: Optional[str] = Field(default=None, description='Web URL')
    lfs_enabled: Optional[bool] = Field(default=None, description='LFS enabled')
    wiki_enabled: Optional[bool] = Field(default=None, description='Wiki enabled')
    empty_repo: Optional[bool] = Field(default=None, description='Repository is empty')
    archived: Optional[bool] = Field(default=None, description='Project is archived')
    statistics: Optional[Dict[str, Any]] = Field(
        default=None, description='Project statistics (requires statistics=true)'
    )

    class Config:
        """Pydantic configuration."""

        extra = 'ignore'

    @property
    def repository_size(self) -> Optional[int]:
        if not self.statistics:
            return None
        return self.statistics.get('repository_size')

    @property
    def lfs_size(self) -> Optional[int]:
        if not self.statistics:
            return None
        return self.statistics.get('lfs_objects_size')


class PreflightSnapshot(BaseModel):
    """Read-only source inspection persisted before anything is written."""

    entity_id: str = Field(..., description='Source entity identifier')
    source_id: int = Field(..., description='GitLab project ID')
    name: str = Field(..., description='Repository name')
    default_branch: Optional[str] = Field(default=None, description='Default branch')
    size_bytes: Optional[int] = Field(default=None, description='Repository size')
    lfs_enabled: bool = Field(default=False, description='Source uses Git LFS')
    lfs_size_bytes: Optional[int] = Field(default=None, description='LFS objects size')
    empty: bool = Field(default=False, description='Source repository has no commits')
    archived: bool = Field(default=False, description='Source project is archived')
    protected_branches: List[Dict[str, Any]] = Field(
        default_factory=list, description='GitLab protected branch settings'
    )
    wiki_enabled: bool = Field(default=False, description='Source project has a wiki')
    warnings: List[str] = Field(default_factory=list, description='Preflight warnings')
    taken_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description='Snapshot time (UTC)',
    )

    class Config:
        """Pydantic configuration."""

        json_encoders = {datetime: lambda v: v.isoformat() if v else None}
