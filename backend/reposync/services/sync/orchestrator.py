"""
Sync orchestrator.

Entry point for manual repository syncs. It validates the request, claims the
repository on the operation store, then either runs the import inline or hands
it to a detached asyncio task depending on the repository's estimated size.

Every sync, inline or background, holds an operation in the store while it
runs. The store's create-if-idle step is what guarantees at most one active
sync per repository.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from reposync.core.security import CurrentUser, can_sync_repositories
from reposync.core.settings import Settings, get_settings
from reposync.exceptions.repository_exceptions import (
    ConfirmationRequiredError,
    MissingCredentialsError,
    ProjectNotFoundError,
    RepositoryConnectionNotFoundError,
    RepositoryIntegrationError,
    SyncConflictError,
    SyncFailedError,
    SyncOperationNotFoundError,
    SyncOperationStateError,
    SyncPermissionError,
)
from reposync.models.sync_operation import SyncStatus, SyncType
from reposync.providers.base import ProviderAdapter, RepositoryRef
from reposync.providers.provider_factory import ProviderFactory
from reposync.services.config_sync import ConfigSyncService
from reposync.services.credential_vault import CredentialVault
from reposync.services.sync.cancellation import OperationCancelled
from reposync.services.sync.issue_importer import ImportTarget, IssueImporter, SyncProgress, SyncResults
from reposync.stores.connections import ConnectionStore
from reposync.stores.issues import IssueStore
from reposync.stores.operations import OperationStore, SyncOperation
from reposync.stores.projects import ProjectStore
from reposync.utils.timeutils import isoformat, utcnow
from logconfig.logger import get_logger, get_context_filter

logger = get_logger()
context_filter = get_context_filter()

WEBHOOK_ACTIVE_MESSAGE = "Repository webhook is active. Manual sync will proceed after confirmation."
INCLUDE_CLOSED_MESSAGE = "Confirmation is required when syncing closed/archived issues."


@dataclass
class SyncResponse:
    status_code: int
    body: Dict[str, Any]


@dataclass
class _SyncJob:
    """Everything the import needs, detached from any database session."""
    operation: SyncOperation
    target: ImportTarget
    adapter: ProviderAdapter
    ref: RepositoryRef
    access_token: str


class SyncOrchestrator:
    """
    Orchestrates manual issue syncs.

    Background tasks are owned by this object; ``stop()`` cancels whatever is
    still running and records those operations as failed.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        operation_store: OperationStore,
        provider_factory: ProviderFactory,
        vault: CredentialVault,
        config_sync: Optional[ConfigSyncService] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.operation_store = operation_store
        self.provider_factory = provider_factory
        self.vault = vault
        self.settings = settings or get_settings()
        self.config_sync = config_sync or ConfigSyncService(self.settings.CONFIG_FILE_PATH)

        self._tasks: Set[asyncio.Task] = set()
        self._cleanup_task: Optional[asyncio.Task] = None

    def operation_location(self, project_id: str, connection_id: str, operation_id: str) -> str:
        return f"{self.settings.API_V1_STR}/projects/{project_id}/repositories/{connection_id}/sync/{operation_id}"

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    async def trigger_sync(
        self,
        project_id: str,
        connection_id: str,
        user: CurrentUser,
        sync_type: SyncType = SyncType.FULL,
        include_closed: bool = False,
        confirmation: bool = False,
    ) -> SyncResponse:
        """
        Trigger a manual sync.

        Returns:
            SyncResponse with 200 (completed inline) or 202 (running in background)

        Raises:
            SyncPermissionError: Caller role cannot sync, or the connection belongs to another project
            ProjectNotFoundError / RepositoryConnectionNotFoundError: Unknown ids
            SyncConflictError: A sync is already pending or running for the repository
            ConfirmationRequiredError: Webhook active or includeClosed without confirmation
            SyncFailedError: The inline sync failed
        """
        if not can_sync_repositories(user.role):
            raise SyncPermissionError(
                "Permission denied: Only administrators and members can trigger sync",
                user_role=user.role,
            )

        async with self.session_factory() as session:
            if await ProjectStore(session).find_by_id(project_id) is None:
                raise ProjectNotFoundError(project_id)
            connection = await ConnectionStore(session).find_by_id(connection_id)
            if connection is None:
                raise RepositoryConnectionNotFoundError(connection_id)
            if connection.project_id != project_id:
                raise SyncPermissionError("Repository connection does not belong to this project")

            repository_url = connection.repository_url
            service_type = connection.service_type
            webhook_active = connection.is_active
            encrypted_token = connection.access_token

        active = await self.operation_store.find_active_by_repository(connection_id)
        if active:
            raise SyncConflictError(connection_id, active_operation_id=active[0].id)

        if webhook_active and not confirmation:
            raise ConfirmationRequiredError(WEBHOOK_ACTIVE_MESSAGE, reason="webhook_active")
        if include_closed and not confirmation:
            raise ConfirmationRequiredError(INCLUDE_CLOSED_MESSAGE, reason="include_closed")

        operation = await self.operation_store.create_if_idle(
            SyncOperation(
                repository_connection_id=connection_id,
                project_id=project_id,
                user_id=user.id,
                sync_type=sync_type,
                include_closed=include_closed,
            )
        )

        try:
            job = self._prepare_job(operation, repository_url, service_type, encrypted_token, user)
            run_in_background = await self._needs_async(job)
        except RepositoryIntegrationError as e:
            await self._release_claim(operation.id, e.message)
            raise SyncFailedError(e.message, original_exception=e)
        except Exception as e:
            await self._release_claim(operation.id, str(e) or e.__class__.__name__)
            logger.exception(f"Sync {operation.id} for {repository_url} could not be started")
            raise SyncFailedError("Sync could not be started", original_exception=e)
        except BaseException:
            await self._release_claim(operation.id, "Sync interrupted before it started")
            raise

        if run_in_background:
            self._spawn(job)
            location = self.operation_location(project_id, connection_id, operation.id)
            logger.info(f"Sync {operation.id} for {repository_url} queued for background execution")
            return SyncResponse(
                status_code=202,
                body={
                    "operationId": operation.id,
                    "status": SyncStatus.PENDING.value,
                    "location": location,
                    "message": "Sync started in the background. Poll the location URL for progress.",
                },
            )

        return await self._run_inline(job)

    async def _release_claim(self, operation_id: str, error: str) -> None:
        """Fail a claimed operation that never reached an import, freeing the repository."""
        await self.operation_store.transition(operation_id, SyncStatus.FAILED, error=error)

    def _prepare_job(
        self,
        operation: SyncOperation,
        repository_url: str,
        service_type: Any,
        encrypted_token: Optional[str],
        user: CurrentUser,
    ) -> _SyncJob:
        adapter = self.provider_factory.create_provider(service_type)
        ref = adapter.require_repository_ref(repository_url)
        access_token = self.vault.decrypt_or_none(encrypted_token, field="access token")
        if access_token is None:
            raise MissingCredentialsError(operation.repository_connection_id)

        return _SyncJob(
            operation=operation,
            target=ImportTarget(
                repository_connection_id=operation.repository_connection_id,
                project_id=operation.project_id,
                repository_url=repository_url,
                service_type=adapter.service_type.value,
                user_id=user.id,
            ),
            adapter=adapter,
            ref=ref,
            access_token=access_token,
        )

    async def _needs_async(self, job: _SyncJob) -> bool:
        """
        Estimate repository size from the first page.

        A full first page with another page behind it means background mode.
        Any provider error here falls back to inline mode; the inline run will
        surface the error properly.
        """
        threshold = self.settings.SYNC_ASYNC_THRESHOLD
        try:
            page = await job.adapter.fetch_issues_page(
                job.access_token,
                job.ref,
                state="all" if job.operation.include_closed else "open",
                page=1,
                per_page=threshold,
            )
        except RepositoryIntegrationError as e:
            logger.warning(f"Could not estimate size of {job.ref.full_name}, syncing inline: {e.message}")
            return False
        # Counted before pull requests are filtered out
        return page.page_size_returned >= threshold and page.has_next

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, job: _SyncJob, results: SyncResults) -> SyncResults:
        operation = job.operation

        async def on_progress(progress: SyncProgress) -> None:
            await self.operation_store.update(operation.id, progress=progress.to_dict())

        async with self.session_factory() as session:
            importer = IssueImporter(job.adapter, IssueStore(session))
            await importer.run(
                job.target,
                job.access_token,
                job.ref,
                include_closed=operation.include_closed,
                cancellation=operation.cancellation,
                on_progress=on_progress,
                results=results,
            )

        if operation.sync_type == SyncType.FULL:
            async with self.session_factory() as session:
                updated = await self.config_sync.sync_project_config(
                    job.adapter, job.access_token, job.ref, ProjectStore(session), operation.project_id
                )
                if updated:
                    await session.commit()

        async with self.session_factory() as session:
            await ConnectionStore(session).update(operation.repository_connection_id, last_sync_at=utcnow())
            await session.commit()

        return results

    async def _run_inline(self, job: _SyncJob) -> SyncResponse:
        operation = job.operation
        await self.operation_store.transition(operation.id, SyncStatus.RUNNING)

        results = SyncResults()
        started = time.monotonic()
        try:
            await self._execute(job, results)
        except OperationCancelled:
            await self.operation_store.transition(operation.id, SyncStatus.CANCELLED, results=results.to_dict())
            logger.info(f"Inline sync {operation.id} cancelled after {results.count} issues")
            return SyncResponse(
                status_code=200,
                body=self._completed_body(job, results, started, status=SyncStatus.CANCELLED.value),
            )
        except RepositoryIntegrationError as e:
            await self.operation_store.transition(
                operation.id, SyncStatus.FAILED, error=e.message, results=results.to_dict()
            )
            logger.error(f"Sync {operation.id} for {job.target.repository_url} failed: {e.message}")
            raise SyncFailedError(e.message, partial_results=results.to_dict(), original_exception=e)
        except asyncio.CancelledError:
            await self.operation_store.transition(
                operation.id, SyncStatus.FAILED, error="Sync request was cancelled", results=results.to_dict()
            )
            logger.warning(f"Inline sync {operation.id} cancelled with its request")
            raise
        except Exception as e:
            await self.operation_store.transition(
                operation.id, SyncStatus.FAILED, error=str(e), results=results.to_dict()
            )
            logger.exception(f"Sync {operation.id} for {job.target.repository_url} failed")
            raise SyncFailedError(str(e) or "Internal server error", partial_results=results.to_dict(), original_exception=e)

        await self.operation_store.transition(operation.id, SyncStatus.COMPLETED, results=results.to_dict())
        logger.info(f"Inline sync {operation.id} for {job.target.repository_url} completed ({results.count} issues)")
        return SyncResponse(status_code=200, body=self._completed_body(job, results, started))

    def _completed_body(self, job: _SyncJob, results: SyncResults, started: float, status: str = "completed") -> Dict[str, Any]:
        return {
            "status": status,
            "operationId": job.operation.id,
            "repositoryId": job.target.repository_connection_id,
            "repositoryUrl": job.target.repository_url,
            "results": results.to_dict(),
            "duration": round(time.monotonic() - started, 3),
            "syncedAt": isoformat(utcnow()),
        }

    def _spawn(self, job: _SyncJob) -> None:
        task = asyncio.create_task(self._run_background(job), name=f"sync-{job.operation.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_background(self, job: _SyncJob) -> None:
        """Background body. Every outcome ends up on the operation; nothing escapes."""
        operation = job.operation
        context_filter.bind(operation_id=operation.id, repository_id=operation.repository_connection_id)

        if not await self.operation_store.transition(operation.id, SyncStatus.RUNNING):
            logger.info(f"Sync {operation.id} was cancelled before it started")
            return

        results = SyncResults()
        try:
            await self._execute(job, results)
        except OperationCancelled as e:
            await self.operation_store.transition(
                operation.id, SyncStatus.CANCELLED, results=results.to_dict(), error=e.reason
            )
            logger.info(f"Sync {operation.id} cancelled; {results.count} issues were processed before stopping")
            return
        except asyncio.CancelledError:
            await self.operation_store.transition(
                operation.id, SyncStatus.FAILED, results=results.to_dict(), error="Sync interrupted by shutdown"
            )
            raise
        except RepositoryIntegrationError as e:
            await self.operation_store.transition(
                operation.id, SyncStatus.FAILED, results=results.to_dict(), error=e.message
            )
            logger.error(f"Sync {operation.id} for {job.target.repository_url} failed: {e.message}")
            return
        except Exception as e:
            await self.operation_store.transition(
                operation.id, SyncStatus.FAILED, results=results.to_dict(), error=str(e) or e.__class__.__name__
            )
            logger.exception(f"Sync {operation.id} for {job.target.repository_url} failed unexpectedly")
            return

        await self.operation_store.transition(operation.id, SyncStatus.COMPLETED, results=results.to_dict())
        logger.info(f"Sync {operation.id} for {job.target.repository_url} completed ({results.count} issues)")

    # ------------------------------------------------------------------
    # Status and cancellation
    # ------------------------------------------------------------------

    async def _get_scoped_operation(self, project_id: str, connection_id: str, operation_id: str) -> SyncOperation:
        operation = await self.operation_store.get(operation_id)
        if (
            operation is None
            or operation.project_id != project_id
            or operation.repository_connection_id != connection_id
        ):
            raise SyncOperationNotFoundError(operation_id)
        return operation

    async def get_operation_status(self, project_id: str, connection_id: str, operation_id: str) -> Dict[str, Any]:
        operation = await self._get_scoped_operation(project_id, connection_id, operation_id)
        return operation.to_status_dict()

    async def cancel_operation(
        self,
        project_id: str,
        connection_id: str,
        operation_id: str,
        user: CurrentUser,
    ) -> SyncResponse:
        """
        Request cancellation.

        A pending operation is cancelled at once (200). A running one is
        signalled and stops at its next page boundary (202).

        Raises:
            SyncOperationNotFoundError: Unknown operation or wrong repository
            SyncOperationStateError: The operation already finished
        """
        if not can_sync_repositories(user.role):
            raise SyncPermissionError("Permission denied: Only administrators and members can cancel sync", user_role=user.role)

        operation = await self._get_scoped_operation(project_id, connection_id, operation_id)
        if operation.status.is_terminal:
            raise SyncOperationStateError(operation_id, operation.status.value)

        operation.cancellation.cancel("Operation cancelled by user")

        if operation.status == SyncStatus.PENDING and await self.operation_store.transition(
            operation_id, SyncStatus.CANCELLED, error="Operation cancelled by user"
        ):
            logger.info(f"Cancelled pending sync {operation_id}")
            return SyncResponse(200, {"operationId": operation_id, "status": SyncStatus.CANCELLED.value})

        current = await self.operation_store.get(operation_id)
        if current is not None and current.status == SyncStatus.CANCELLED:
            return SyncResponse(200, {"operationId": operation_id, "status": SyncStatus.CANCELLED.value})
        if current is None or current.status.is_terminal:
            raise SyncOperationStateError(operation_id, current.status.value if current else "deleted")

        logger.info(f"Cancellation requested for running sync {operation_id}")
        return SyncResponse(
            202,
            {"operationId": operation_id, "status": current.status.value, "cancellationRequested": True},
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def cleanup_expired_operations(self) -> int:
        await self.operation_store.expire_stale(self.settings.SYNC_STALE_OPERATION_HOURS)
        removed = await self.operation_store.cleanup(self.settings.SYNC_OPERATION_RETENTION_HOURS)
        if removed:
            logger.info(f"Removed {removed} expired sync operations")
        return removed

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.settings.SYNC_CLEANUP_INTERVAL_SECONDS)
                await self.cleanup_expired_operations()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in sync operation cleanup: {e}")

    async def start(self) -> None:
        """Start the periodic cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="sync-operation-cleanup")
        logger.info("Sync orchestrator started")

    async def stop(self) -> None:
        """Stop the cleanup task and cancel background syncs still running."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} background syncs on shutdown")
        logger.info("Sync orchestrator stopped")

    async def wait_for_background_tasks(self) -> None:
        """Wait until every background sync has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
