"""
Repository connection endpoints.

OAuth authorize/callback for linking a repository through the provider, plus
manual-token linking and listing of a project's connections.
"""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse

from reposync.core.security import CurrentUser
from reposync.dependencies.auth import get_current_user
from reposync.dependencies.services import get_connection_manager
from reposync.schemas.repository import (
    AuthorizationResponse,
    ConnectRepositoryRequest,
    RepositoryConnectionList,
    RepositoryConnectionResponse,
)
from reposync.services.connection_manager import ConnectionManager

from logconfig.logger import get_logger

logger = get_logger()
router = APIRouter(tags=["Repository Connections"])


def _request_origin(request: Request) -> str:
    return f"{request.url.scheme}://{request.url.netloc}"


@router.get("/repositories/oauth/authorize", response_model=AuthorizationResponse)
async def authorize_repository(
    repository_type: str = Query(..., alias="type", description="GitHub, GitLab or Bitbucket"),
    project_id: str = Query(..., alias="projectId", description="Project to link the repository to"),
    return_to: Optional[str] = Query(None, alias="returnTo", description="Same-origin URL to return to"),
    repository_url: Optional[str] = Query(None, alias="repositoryUrl", description="Repository to link"),
    current_user: CurrentUser = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, str]:
    """
    Get the provider authorization URL.

    The returned ``state`` is signed and expires; the browser is sent to
    ``authUrl`` and comes back through the callback endpoint.
    """
    return await manager.build_authorization(
        repository_type,
        project_id,
        current_user,
        return_to=return_to,
        repository_url=repository_url,
    )


@router.get("/repositories/oauth/callback", include_in_schema=False)
async def oauth_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> RedirectResponse:
    """Provider redirect target. Always answers with a redirect."""
    target = await manager.handle_callback(
        _request_origin(request),
        code=code,
        state=state,
        error=error,
        error_description=error_description,
    )
    return RedirectResponse(target, status_code=status.HTTP_302_FOUND)


@router.post(
    "/projects/{project_id}/repositories",
    response_model=RepositoryConnectionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def connect_repository(
    project_id: str,
    payload: ConnectRepositoryRequest,
    current_user: CurrentUser = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, Any]:
    """
    Link a repository using an access token supplied by the caller.
    """
    return await manager.connect_with_token(
        project_id,
        current_user,
        repository_url=payload.repository_url,
        repository_type=payload.repository_type,
        access_token=payload.access_token,
    )


@router.get("/projects/{project_id}/repositories", response_model=RepositoryConnectionList)
async def list_repositories(
    project_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, List[Dict[str, Any]]]:
    """List the project's repository connections. Credentials are never returned."""
    return {"repositories": await manager.get_connection_info(project_id)}
