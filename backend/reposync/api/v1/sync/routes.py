"""
Manual sync endpoints.

A trigger answers 200 when the sync ran inline and 202 with a polling location
when it was handed to a background task.
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from reposync.core.security import CurrentUser
from reposync.dependencies.auth import get_current_user
from reposync.dependencies.services import get_sync_orchestrator
from reposync.schemas.repository import SyncOperationStatus, SyncRequest
from reposync.services.sync.orchestrator import SyncOrchestrator

from logconfig.logger import get_logger

logger = get_logger()
router = APIRouter(prefix="/projects/{project_id}/repositories/{repository_id}/sync", tags=["Repository Sync"])


@router.post("")
async def trigger_sync(
    project_id: str,
    repository_id: str,
    payload: Optional[SyncRequest] = None,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> JSONResponse:
    """
    Trigger a manual issue sync.

    Returns 200 with results for small repositories and 202 with an operation
    id and location for large ones.
    """
    payload = payload or SyncRequest()
    outcome = await orchestrator.trigger_sync(
        project_id,
        repository_id,
        current_user,
        sync_type=payload.sync_type,
        include_closed=payload.include_closed,
        confirmation=payload.confirmation,
    )
    headers = {"Location": outcome.body["location"]} if outcome.status_code == 202 else None
    return JSONResponse(status_code=outcome.status_code, content=outcome.body, headers=headers)


@router.get("/{operation_id}", response_model=SyncOperationStatus)
async def get_sync_status(
    project_id: str,
    repository_id: str,
    operation_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> Dict[str, Any]:
    """Poll a background sync."""
    return await orchestrator.get_operation_status(project_id, repository_id, operation_id)


@router.delete("/{operation_id}")
async def cancel_sync(
    project_id: str,
    repository_id: str,
    operation_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> JSONResponse:
    """
    Cancel a sync.

    Pending operations are cancelled immediately (200). Running operations stop
    at the next page boundary (202); poll the status endpoint to see them end.
    """
    outcome = await orchestrator.cancel_operation(project_id, repository_id, operation_id, current_user)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
