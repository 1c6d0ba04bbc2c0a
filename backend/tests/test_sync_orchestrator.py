import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import REPOSITORY_URL, FakeGitHubAdapter, FakeProviderFactory, add_connection, make_issue, make_issues
from reposync.exceptions.repository_exceptions import (
    ConfirmationRequiredError,
    ProjectNotFoundError,
    RepositoryConnectionNotFoundError,
    SyncConflictError,
    SyncFailedError,
    SyncOperationNotFoundError,
    SyncOperationStateError,
    SyncPermissionError,
)
from reposync.models.sync_operation import SyncStatus, SyncType
from reposync.providers.github import GitHubAdapter
from reposync.services.sync.orchestrator import SyncOrchestrator
from reposync.stores.connections import ConnectionStore
from reposync.stores.operations import InMemoryOperationStore, SqlOperationStore, SyncOperation
from reposync.stores.projects import ProjectStore
from reposync.utils.timeutils import utcnow


@pytest.fixture
def orchestrator(session_factory, operation_store, provider_factory, vault, settings):
    return SyncOrchestrator(session_factory, operation_store, provider_factory, vault, settings=settings)


async def _wait_for(predicate, timeout: float = 5.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


async def _connection(session_factory, connection_id):
    async with session_factory() as session:
        return await ConnectionStore(session).find_by_id(connection_id)


# ----------------------------------------------------------------------
# Request checks
# ----------------------------------------------------------------------


async def test_viewer_cannot_sync(orchestrator, project, connection, viewer):
    with pytest.raises(SyncPermissionError) as exc_info:
        await orchestrator.trigger_sync(project.id, connection.id, viewer)
    assert exc_info.value.status_code == 403


async def test_unknown_project_and_connection(orchestrator, project, connection, admin):
    with pytest.raises(ProjectNotFoundError):
        await orchestrator.trigger_sync("missing-project", connection.id, admin)
    with pytest.raises(RepositoryConnectionNotFoundError):
        await orchestrator.trigger_sync(project.id, "missing-connection", admin)


async def test_connection_of_another_project_is_refused(orchestrator, project, other_project, session_factory, vault, admin):
    foreign = await add_connection(session_factory, vault, other_project.id, repository_url="https://github.com/acme/other")

    with pytest.raises(SyncPermissionError):
        await orchestrator.trigger_sync(project.id, foreign.id, admin)


async def test_active_operation_blocks_new_sync(orchestrator, operation_store, project, connection, admin):
    active = await operation_store.create_if_idle(
        SyncOperation(repository_connection_id=connection.id, project_id=project.id, user_id="someone")
    )

    with pytest.raises(SyncConflictError) as exc_info:
        await orchestrator.trigger_sync(project.id, connection.id, admin, confirmation=True)

    assert exc_info.value.active_operation_id == active.id
    assert exc_info.value.to_user_dict()["activeOperationId"] == active.id


async def test_active_webhook_requires_confirmation(orchestrator, project, session_factory, vault, adapter, admin):
    webhook_connection = await add_connection(session_factory, vault, project.id, is_active=True)
    adapter.issues = make_issues(2)

    with pytest.raises(ConfirmationRequiredError) as exc_info:
        await orchestrator.trigger_sync(project.id, webhook_connection.id, admin)
    assert exc_info.value.reason == "webhook_active"
    assert exc_info.value.to_user_dict()["requiresConfirmation"] is True
    assert adapter.page_requests == []

    response = await orchestrator.trigger_sync(project.id, webhook_connection.id, admin, confirmation=True)
    assert response.status_code == 200


async def test_include_closed_requires_confirmation(orchestrator, project, connection, adapter, admin):
    adapter.issues = make_issues(2) + [make_issue(3, state="closed")]

    with pytest.raises(ConfirmationRequiredError) as exc_info:
        await orchestrator.trigger_sync(project.id, connection.id, admin, include_closed=True)
    assert exc_info.value.reason == "include_closed"

    response = await orchestrator.trigger_sync(project.id, connection.id, admin, include_closed=True, confirmation=True)
    assert adapter.page_requests[-1]["state"] == "all"
    assert response.body["results"]["count"] == 3


# ----------------------------------------------------------------------
# Inline syncs
# ----------------------------------------------------------------------


async def test_small_repository_syncs_inline(orchestrator, operation_store, project, connection, adapter, admin, session_factory):
    adapter.issues = make_issues(12)

    response = await orchestrator.trigger_sync(project.id, connection.id, admin)

    assert response.status_code == 200
    body = response.body
    assert body["status"] == "completed"
    assert body["repositoryId"] == connection.id
    assert body["repositoryUrl"] == REPOSITORY_URL
    assert body["results"]["created"] == 12
    assert body["results"]["count"] == 12
    assert body["duration"] >= 0
    assert body["syncedAt"].endswith("Z")
    assert adapter.page_requests[0]["token"] == "gho_storedtoken"

    operation = await operation_store.get(body["operationId"])
    assert operation.status == SyncStatus.COMPLETED
    assert await operation_store.find_active_by_repository(connection.id) == []
    assert (await _connection(session_factory, connection.id)).last_sync_at is not None

    async with session_factory() as session:
        assert (await ProjectStore(session).find_by_id(project.id)).config["project_key"] == "DEMO"


@pytest.mark.parametrize("issue_count, expected_status", [(99, 200), (100, 200), (101, 202)])
async def test_mode_follows_first_page(orchestrator, project, connection, adapter, admin, issue_count, expected_status):
    adapter.issues = make_issues(issue_count)

    response = await orchestrator.trigger_sync(project.id, connection.id, admin)
    await orchestrator.wait_for_background_tasks()

    assert response.status_code == expected_status
    assert adapter.page_requests[0] == {"token": "gho_storedtoken", "state": "open", "page": 1, "per_page": 100}


async def test_issues_only_sync_leaves_config_alone(orchestrator, project, connection, adapter, admin, session_factory):
    adapter.issues = make_issues(1)

    await orchestrator.trigger_sync(project.id, connection.id, admin, sync_type=SyncType.ISSUES_ONLY)

    async with session_factory() as session:
        assert (await ProjectStore(session).find_by_id(project.id)).config is None


async def test_inline_failure_marks_operation_failed(orchestrator, operation_store, project, connection, adapter, admin):
    adapter.issues = make_issues(5)
    adapter.fail_on_page = 1

    with pytest.raises(SyncFailedError) as exc_info:
        await orchestrator.trigger_sync(project.id, connection.id, admin)

    assert exc_info.value.status_code == 500
    assert exc_info.value.partial_results["count"] == 0
    assert await operation_store.find_active_by_repository(connection.id) == []


async def test_unreadable_token_fails_without_calling_provider(orchestrator, operation_store, project, connection, adapter, admin, session_factory):
    async with session_factory() as session:
        await ConnectionStore(session).update(connection.id, access_token="corrupted")
        await session.commit()

    with pytest.raises(SyncFailedError):
        await orchestrator.trigger_sync(project.id, connection.id, admin)

    assert adapter.page_requests == []
    assert await operation_store.find_active_by_repository(connection.id) == []


@pytest.mark.parametrize("backend", ["memory", "database"])
async def test_concurrent_triggers_start_exactly_one_sync(backend, session_factory, provider_factory, vault, settings, project, connection, adapter, admin):
    store = InMemoryOperationStore() if backend == "memory" else SqlOperationStore(session_factory)
    orchestrator = SyncOrchestrator(session_factory, store, provider_factory, vault, settings=settings)
    adapter.issues = make_issues(3)
    adapter.gate = asyncio.Event()
    adapter.gate_page = 1

    tasks = [asyncio.create_task(orchestrator.trigger_sync(project.id, connection.id, admin)) for _ in range(2)]
    done, pending = await asyncio.wait(tasks, timeout=5, return_when=asyncio.FIRST_COMPLETED)

    assert len(done) == 1
    assert isinstance(done.pop().exception(), SyncConflictError)

    adapter.gate.set()
    response = await asyncio.wait_for(pending.pop(), 5)
    assert response.status_code == 200
    assert response.body["results"]["created"] == 3


# ----------------------------------------------------------------------
# Background syncs
# ----------------------------------------------------------------------


async def test_large_repository_syncs_in_background(orchestrator, operation_store, project, connection, adapter, admin, session_factory):
    adapter.issues = make_issues(150)

    response = await orchestrator.trigger_sync(project.id, connection.id, admin)

    assert response.status_code == 202
    operation_id = response.body["operationId"]
    assert response.body["status"] == "pending"
    assert response.body["location"] == f"/api/v1/projects/{project.id}/repositories/{connection.id}/sync/{operation_id}"

    await orchestrator.wait_for_background_tasks()

    status = await orchestrator.get_operation_status(project.id, connection.id, operation_id)
    assert status["status"] == "completed"
    assert status["results"]["created"] == 150
    assert status["progress"]["processed"] == 150
    assert status["startedAt"] is not None
    assert status["completedAt"] is not None
    assert (await _connection(session_factory, connection.id)).last_sync_at is not None


async def test_background_failure_is_recorded(orchestrator, project, connection, adapter, admin, session_factory):
    adapter.issues = make_issues(150)
    adapter.fail_on_page = 2

    response = await orchestrator.trigger_sync(project.id, connection.id, admin)
    await orchestrator.wait_for_background_tasks()

    status = await orchestrator.get_operation_status(project.id, connection.id, response.body["operationId"])
    assert status["status"] == "failed"
    assert status["error"] == "GitHub server error"
    assert status["results"]["created"] == 100
    assert (await _connection(session_factory, connection.id)).last_sync_at is None


async def test_status_is_scoped_to_repository(orchestrator, project, connection, adapter, admin):
    adapter.issues = make_issues(150)
    response = await orchestrator.trigger_sync(project.id, connection.id, admin)
    await orchestrator.wait_for_background_tasks()

    with pytest.raises(SyncOperationNotFoundError):
        await orchestrator.get_operation_status(project.id, "other-connection", response.body["operationId"])
    with pytest.raises(SyncOperationNotFoundError):
        await orchestrator.get_operation_status(project.id, connection.id, "missing-operation")


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------


async def test_cancel_pending_operation(orchestrator, project, connection, adapter, admin):
    adapter.issues = make_issues(150)
    response = await orchestrator.trigger_sync(project.id, connection.id, admin)
    operation_id = response.body["operationId"]

    cancelled = await orchestrator.cancel_operation(project.id, connection.id, operation_id, admin)
    await orchestrator.wait_for_background_tasks()

    assert cancelled.status_code == 200
    assert cancelled.body == {"operationId": operation_id, "status": "cancelled"}
    status = await orchestrator.get_operation_status(project.id, connection.id, operation_id)
    assert status["status"] == "cancelled"
    assert len(adapter.page_requests) == 1


async def test_cancel_running_operation_stops_at_page_boundary(orchestrator, project, connection, adapter, admin, session_factory):
    adapter.issues = make_issues(250)
    adapter.gate = asyncio.Event()
    response = await orchestrator.trigger_sync(project.id, connection.id, admin)
    operation_id = response.body["operationId"]

    # estimate request, first import page, second import page (blocked)
    await _wait_for(lambda: len(adapter.page_requests) == 3)

    requested = await orchestrator.cancel_operation(project.id, connection.id, operation_id, admin)
    assert requested.status_code == 202
    assert requested.body == {"operationId": operation_id, "status": "running", "cancellationRequested": True}

    adapter.gate.set()
    await orchestrator.wait_for_background_tasks()

    status = await orchestrator.get_operation_status(project.id, connection.id, operation_id)
    assert status["status"] == "cancelled"
    assert status["results"]["created"] == 200
    assert len(adapter.page_requests) == 3
    assert (await _connection(session_factory, connection.id)).last_sync_at is None


async def test_cancel_finished_operation_is_rejected(orchestrator, project, connection, adapter, admin, viewer):
    adapter.issues = make_issues(150)
    response = await orchestrator.trigger_sync(project.id, connection.id, admin)
    await orchestrator.wait_for_background_tasks()
    operation_id = response.body["operationId"]

    with pytest.raises(SyncOperationStateError) as exc_info:
        await orchestrator.cancel_operation(project.id, connection.id, operation_id, admin)
    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Cannot cancel operation with status: completed"

    with pytest.raises(SyncPermissionError):
        await orchestrator.cancel_operation(project.id, connection.id, operation_id, viewer)
    with pytest.raises(SyncOperationNotFoundError):
        await orchestrator.cancel_operation(project.id, connection.id, "missing-operation", admin)


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------


async def test_stop_fails_running_syncs(orchestrator, project, connection, adapter, admin):
    adapter.issues = make_issues(250)
    adapter.gate = asyncio.Event()
    await orchestrator.start()
    response = await orchestrator.trigger_sync(project.id, connection.id, admin)
    await _wait_for(lambda: len(adapter.page_requests) == 3)

    await orchestrator.stop()

    status = await orchestrator.get_operation_status(project.id, connection.id, response.body["operationId"])
    assert status["status"] == "failed"
    assert status["error"] == "Sync interrupted by shutdown"


async def test_cleanup_expired_operations(orchestrator, operation_store, project, connection):
    operation = await operation_store.create_if_idle(
        SyncOperation(repository_connection_id=connection.id, project_id=project.id, user_id="user-admin")
    )
    await operation_store.transition(operation.id, SyncStatus.CANCELLED)
    await operation_store.update(operation.id, completed_at=utcnow() - timedelta(days=2))

    assert await orchestrator.cleanup_expired_operations() == 1
    assert await operation_store.get(operation.id) is None


# ----------------------------------------------------------------------
# Claim release
# ----------------------------------------------------------------------


def _github_orchestrator(handler, session_factory, store, vault, settings) -> SyncOrchestrator:
    adapter = GitHubAdapter(timeout=1, page_timeout=1, transport=httpx.MockTransport(handler))
    return SyncOrchestrator(session_factory, store, FakeProviderFactory(adapter), vault, settings=settings)


@pytest.mark.parametrize("backend", ["memory", "database"])
async def test_non_json_issue_page_does_not_lock_repository(backend, session_factory, vault, settings, project, connection, admin):
    store = InMemoryOperationStore() if backend == "memory" else SqlOperationStore(session_factory)
    orchestrator = _github_orchestrator(
        lambda request: httpx.Response(200, text="<html>proxy error</html>"), session_factory, store, vault, settings
    )

    for _ in range(2):
        with pytest.raises(SyncFailedError) as exc_info:
            await orchestrator.trigger_sync(project.id, connection.id, admin)
        assert "malformed" in exc_info.value.message

    assert await store.find_active_by_repository(connection.id) == []


class _BrokenEstimateAdapter(FakeGitHubAdapter):
    def __init__(self, error: BaseException):
        super().__init__()
        self.error = error

    async def fetch_issues_page(self, access_token, ref, state="open", page=1, per_page=100):
        raise self.error


async def test_unexpected_estimate_error_releases_claim(session_factory, operation_store, vault, settings, project, connection, admin):
    orchestrator = SyncOrchestrator(
        session_factory, operation_store, FakeProviderFactory(_BrokenEstimateAdapter(RuntimeError("bad page"))), vault, settings=settings
    )

    with pytest.raises(SyncFailedError) as exc_info:
        await orchestrator.trigger_sync(project.id, connection.id, admin)

    assert exc_info.value.details["cause"]["type"] == "RuntimeError"
    assert await operation_store.find_active_by_repository(connection.id) == []


async def test_cancelled_estimate_releases_claim(session_factory, operation_store, vault, settings, project, connection, admin):
    orchestrator = SyncOrchestrator(
        session_factory, operation_store, FakeProviderFactory(_BrokenEstimateAdapter(asyncio.CancelledError())), vault, settings=settings
    )

    with pytest.raises(asyncio.CancelledError):
        await orchestrator.trigger_sync(project.id, connection.id, admin)

    assert await operation_store.find_active_by_repository(connection.id) == []


class _HangingImportAdapter(FakeGitHubAdapter):
    """Answers the size estimate, then blocks on the first import page."""

    async def fetch_issues_page(self, access_token, ref, state="open", page=1, per_page=100):
        if self.page_requests:
            self.page_requests.append({"page": page})
            await asyncio.Event().wait()
        return await super().fetch_issues_page(access_token, ref, state=state, page=page, per_page=per_page)


async def test_cancelled_inline_request_fails_operation(session_factory, operation_store, vault, settings, project, connection, admin):
    adapter = _HangingImportAdapter(make_issues(5))
    orchestrator = SyncOrchestrator(session_factory, operation_store, FakeProviderFactory(adapter), vault, settings=settings)

    task = asyncio.create_task(orchestrator.trigger_sync(project.id, connection.id, admin))
    await _wait_for(lambda: len(adapter.page_requests) == 2)
    running = await operation_store.find_active_by_repository(connection.id)
    assert running[0].status == SyncStatus.RUNNING

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    operation = await operation_store.get(running[0].id)
    assert operation.status == SyncStatus.FAILED
    assert await operation_store.find_active_by_repository(connection.id) == []


def _busy_repository(request: httpx.Request) -> httpx.Response:
    """Two full pages of 99 issues and 1 pull request each, then a short last page."""
    page = int(request.url.params.get("page", "1"))
    items = [
        {"id": page * 1000 + n, "number": page * 1000 + n, "title": f"Issue {n}", "state": "open"}
        for n in range(1, 100 if page < 3 else 11)
    ]
    headers = {}
    if page < 3:
        items.append({"id": page * 1000 + 999, "number": page * 1000 + 999, "pull_request": {"url": "..."}})
        headers["Link"] = f'<https://api.github.com/repos/acme/widgets/issues?page={page + 1}>; rel="next"'
    return httpx.Response(200, json=items, headers=headers)


async def test_full_page_with_pull_requests_runs_in_background(session_factory, operation_store, vault, settings, project, connection, admin):
    orchestrator = _github_orchestrator(_busy_repository, session_factory, operation_store, vault, settings)

    response = await orchestrator.trigger_sync(project.id, connection.id, admin, sync_type=SyncType.ISSUES_ONLY)
    await orchestrator.wait_for_background_tasks()

    assert response.status_code == 202
    status = await orchestrator.get_operation_status(project.id, connection.id, response.body["operationId"])
    assert status["status"] == "completed"
    assert status["results"]["created"] == 99 + 99 + 10
