"""
Repository connection and sync request/response models.

Wire names are camelCase; Python attributes are snake_case via aliases.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from reposync.models.sync_operation import SyncType


class SyncRequest(BaseModel):
    """Body of a manual sync trigger."""
    model_config = ConfigDict(populate_by_name=True)

    sync_type: SyncType = Field(
        SyncType.FULL,
        alias="syncType",
        description="'full' imports issues and refreshes the project config; 'issuesOnly' imports issues",
    )
    include_closed: bool = Field(
        False,
        alias="includeClosed",
        description="Also import closed issues (requires confirmation)",
    )
    confirmation: bool = Field(
        False,
        description="Confirms a sync that needs explicit consent (active webhook or closed issues)",
    )


class ConnectRepositoryRequest(BaseModel):
    """Body of a manual-token repository connection."""
    model_config = ConfigDict(populate_by_name=True)

    repository_url: str = Field(
        ...,
        alias="repositoryUrl",
        description="HTTPS or SSH URL of the repository",
        min_length=1,
        max_length=500,
    )
    repository_type: str = Field(
        ...,
        alias="repositoryType",
        description="GitHub, GitLab or Bitbucket",
    )
    access_token: str = Field(
        ...,
        alias="accessToken",
        description="Provider access token with repository and webhook scopes",
        min_length=1,
    )

    @field_validator("repository_url", "access_token")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Value cannot be empty or whitespace only")
        return v


class AuthorizationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    auth_url: str = Field(..., alias="authUrl")
    state: str


class RepositoryConnectionResponse(BaseModel):
    """Public view of a connection. Credentials are never included."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    project_id: str = Field(..., alias="projectId")
    repository_url: str = Field(..., alias="repositoryUrl")
    service_type: str = Field(..., alias="serviceType")
    webhook_id: Optional[str] = Field(None, alias="webhookId")
    webhook_configured: bool = Field(..., alias="webhookConfigured")
    is_active: bool = Field(..., alias="isActive")
    last_sync_at: Optional[str] = Field(None, alias="lastSyncAt")
    created_at: Optional[str] = Field(None, alias="createdAt")


class RepositoryConnectionList(BaseModel):
    repositories: List[RepositoryConnectionResponse]


class SyncOperationStatus(BaseModel):
    """Polling view of an asynchronous sync."""
    model_config = ConfigDict(populate_by_name=True)

    operation_id: str = Field(..., alias="operationId")
    status: str
    sync_type: str = Field(..., alias="syncType")
    include_closed: bool = Field(..., alias="includeClosed")
    progress: Optional[Dict[str, Any]] = None
    results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[str] = Field(None, alias="createdAt")
    started_at: Optional[str] = Field(None, alias="startedAt")
    completed_at: Optional[str] = Field(None, alias="completedAt")
