import base64
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from conftest import REPOSITORY_URL, FakeGitHubAdapter, FakeProviderFactory, add_connection
from reposync.exceptions.repository_exceptions import (
    InvalidRepositoryUrlError,
    ProjectNotFoundError,
    ProviderNotConfiguredError,
    RepositoryAlreadyLinkedError,
    SyncPermissionError,
    UnsupportedRepositoryTypeError,
    WebhookRegistrationError,
)
from reposync.models.repository_connection import ServiceType
from reposync.providers.github import GitHubAdapter
from reposync.services.connection_manager import ConnectionManager, build_redirect_url
from reposync.services.oauth_state import OAuthState
from reposync.stores.connections import ConnectionStore
from reposync.stores.projects import ProjectStore

ORIGIN = "http://testserver"


@pytest.fixture
def manager(session_factory, provider_factory, vault, settings):
    return ConnectionManager(session_factory, provider_factory, vault, settings=settings)


def _query(url: str):
    parts = urlsplit(url)
    return parts.path, {key: values[0] for key, values in parse_qs(parts.query).items()}


def _state(manager, project_id, repository_url=REPOSITORY_URL, return_to=None, repository_type="GitHub"):
    return manager.state_codec.encode(
        OAuthState(
            project_id=project_id,
            repository_type=repository_type,
            user_id="user-admin",
            return_to=return_to,
            repository_url=repository_url,
        )
    )


async def _stored(session_factory, repository_url=REPOSITORY_URL):
    async with session_factory() as session:
        return await ConnectionStore(session).find_by_repository_url(repository_url)


# ----------------------------------------------------------------------
# Authorization
# ----------------------------------------------------------------------


async def test_authorization_returns_provider_url_and_state(manager, project, admin):
    result = await manager.build_authorization("GitHub", project.id, admin, return_to="/projects/p1", repository_url=REPOSITORY_URL)

    path, query = _query(result["authUrl"])
    assert result["authUrl"].startswith("https://github.com/login/oauth/authorize?")
    assert query["client_id"] == "gh-client-id"
    assert query["state"] == result["state"]

    state = manager.state_codec.decode(result["state"])
    assert state.project_id == project.id
    assert state.repository_type == "GitHub"
    assert state.return_to == "/projects/p1"
    assert state.repository_url == REPOSITORY_URL


async def test_authorization_checks(manager, project, other_project, admin, viewer, session_factory, vault):
    with pytest.raises(SyncPermissionError):
        await manager.build_authorization("GitHub", project.id, viewer)
    with pytest.raises(UnsupportedRepositoryTypeError):
        await manager.build_authorization("Subversion", project.id, admin)
    with pytest.raises(ProviderNotConfiguredError):
        await manager.build_authorization("GitLab", project.id, admin)
    with pytest.raises(ProjectNotFoundError):
        await manager.build_authorization("GitHub", "missing-project", admin)
    with pytest.raises(InvalidRepositoryUrlError):
        await manager.build_authorization("GitHub", project.id, admin, repository_url="https://example.com/acme/widgets")

    await add_connection(session_factory, vault, other_project.id)
    with pytest.raises(RepositoryAlreadyLinkedError) as exc_info:
        await manager.build_authorization("GitHub", project.id, admin, repository_url=REPOSITORY_URL)
    assert exc_info.value.conflict_project_id == other_project.id
    assert exc_info.value.to_user_dict()["conflictProjectId"] == other_project.id


# ----------------------------------------------------------------------
# Callback
# ----------------------------------------------------------------------


async def test_callback_links_repository(manager, project, adapter, session_factory, vault):
    adapter.files[".stride/config.yaml"] = "project_key: DEMO\n"
    state = _state(manager, project.id, return_to="/projects/demo?tab=repos#top")

    url = await manager.handle_callback(ORIGIN, code="oauth-code", state=state)

    assert url.startswith(f"{ORIGIN}/projects/demo?")
    assert url.endswith("#top")
    path, query = _query(url)
    assert query["tab"] == "repos"
    assert query["success"] == "true"

    connection = await _stored(session_factory)
    assert query["repositoryId"] == connection.id
    assert connection.project_id == project.id
    assert connection.service_type == ServiceType.GITHUB
    assert connection.is_active is True
    assert connection.webhook_id == "4242"
    assert connection.access_token != "gho_exchangedtoken"
    assert vault.decrypt(connection.access_token) == "gho_exchangedtoken"
    assert vault.decrypt(connection.webhook_secret) == "whsec-generated"

    assert adapter.exchanged_codes == ["oauth-code"]
    assert adapter.webhooks[0]["callback"] == "http://testserver/api/webhooks/github"

    async with session_factory() as session:
        assert (await ProjectStore(session).find_by_id(project.id)).config == {"project_key": "DEMO"}


async def test_callback_webhook_failure_persists_nothing(manager, project, adapter, session_factory):
    adapter.webhook_error = True

    url = await manager.handle_callback(ORIGIN, code="oauth-code", state=_state(manager, project.id))

    assert _query(url) == ("/onboarding/complete", {"error": "webhook_failed"})
    assert await _stored(session_factory) is None


async def test_callback_reports_provider_error(manager, project):
    url = await manager.handle_callback(
        ORIGIN,
        state=_state(manager, project.id, return_to="/projects/demo"),
        error="access_denied",
        error_description="The user denied access",
    )

    path, query = _query(url)
    assert path == "/projects/demo"
    assert query == {"error": "access_denied", "error_description": "The user denied access"}


async def test_callback_parameter_errors(manager, project):
    state = _state(manager, project.id)

    assert _query(await manager.handle_callback(ORIGIN, state=state))[1] == {"error": "missing_code"}
    assert _query(await manager.handle_callback(ORIGIN, code="c"))[1] == {"error": "missing_state"}
    assert _query(await manager.handle_callback(ORIGIN, code="c", state="forged")) == (
        "/onboarding/complete",
        {"error": "invalid_state"},
    )


async def test_callback_state_errors(manager, project):
    missing_project = _state(manager, "missing-project")
    missing_url = _state(manager, project.id, repository_url=None)
    unsupported = _state(manager, project.id, repository_type="Subversion")
    wrong_host = _state(manager, project.id, repository_url="https://example.com/acme/widgets")

    assert _query(await manager.handle_callback(ORIGIN, code="c", state=missing_project))[1] == {"error": "project_not_found"}
    assert _query(await manager.handle_callback(ORIGIN, code="c", state=missing_url))[1] == {"error": "missing_repository_info"}
    assert _query(await manager.handle_callback(ORIGIN, code="c", state=unsupported))[1] == {"error": "unsupported_type"}
    assert _query(await manager.handle_callback(ORIGIN, code="c", state=wrong_host))[1] == {"error": "invalid_repository_url"}


async def test_callback_conflict_names_other_project(manager, project, other_project, adapter, session_factory, vault):
    await add_connection(session_factory, vault, other_project.id)

    url = await manager.handle_callback(ORIGIN, code="oauth-code", state=_state(manager, project.id))

    assert _query(url)[1] == {"error": "repository_conflict", "conflictProjectId": other_project.id}
    assert adapter.exchanged_codes == []


async def test_callback_exchange_failure(manager, project, adapter, session_factory):
    adapter.exchange_error = True

    url = await manager.handle_callback(ORIGIN, code="stale-code", state=_state(manager, project.id))

    assert _query(url)[1] == {"error": "oauth_failed", "error_description": "bad_verification_code"}
    assert await _stored(session_factory) is None


async def test_callback_never_redirects_off_origin(manager, project):
    state = _state(manager, project.id, return_to="https://evil.example.net/phish")

    url = await manager.handle_callback(ORIGIN, code="c", state=state, error="access_denied")

    assert url.startswith(f"{ORIGIN}/onboarding/complete?")


async def test_relinking_to_same_project_updates_connection(manager, project, session_factory, vault):
    existing = await add_connection(session_factory, vault, project.id)

    url = await manager.handle_callback(ORIGIN, code="oauth-code", state=_state(manager, project.id))

    assert _query(url)[1]["repositoryId"] == existing.id
    connection = await _stored(session_factory)
    assert connection.is_active is True
    assert vault.decrypt(connection.access_token) == "gho_exchangedtoken"


# ----------------------------------------------------------------------
# Manual token flow and listing
# ----------------------------------------------------------------------


async def test_connect_with_token(manager, project, admin, adapter, session_factory, vault):
    result = await manager.connect_with_token(project.id, admin, REPOSITORY_URL, "github", "ghp_manualtoken")

    assert result["repositoryUrl"] == REPOSITORY_URL
    assert result["serviceType"] == "GitHub"
    assert result["webhookConfigured"] is True
    assert "accessToken" not in result
    assert adapter.webhooks[0]["token"] == "ghp_manualtoken"
    assert vault.decrypt((await _stored(session_factory)).access_token) == "ghp_manualtoken"


async def test_connect_with_token_failures(manager, project, other_project, admin, viewer, adapter, session_factory, vault):
    with pytest.raises(SyncPermissionError):
        await manager.connect_with_token(project.id, viewer, REPOSITORY_URL, "GitHub", "t")
    with pytest.raises(ProjectNotFoundError):
        await manager.connect_with_token("missing-project", admin, REPOSITORY_URL, "GitHub", "t")

    adapter.webhook_error = True
    with pytest.raises(WebhookRegistrationError):
        await manager.connect_with_token(project.id, admin, REPOSITORY_URL, "GitHub", "t")
    assert await _stored(session_factory) is None

    adapter.webhook_error = False
    await add_connection(session_factory, vault, other_project.id)
    with pytest.raises(RepositoryAlreadyLinkedError):
        await manager.connect_with_token(project.id, admin, REPOSITORY_URL, "GitHub", "t")
    assert adapter.webhooks == []


async def test_connection_info_hides_credentials(manager, project, session_factory, vault):
    healthy = await add_connection(session_factory, vault, project.id)
    corrupted = await add_connection(session_factory, vault, project.id, repository_url="https://github.com/acme/broken")
    async with session_factory() as session:
        await ConnectionStore(session).update(corrupted.id, webhook_secret="not-a-ciphertext")
        await session.commit()

    info = {item["id"]: item for item in await manager.get_connection_info(project.id)}

    assert info[healthy.id]["webhookConfigured"] is True
    assert info[corrupted.id]["webhookConfigured"] is False
    for item in info.values():
        assert "accessToken" not in item
        assert "webhookSecret" not in item

    with pytest.raises(ProjectNotFoundError):
        await manager.get_connection_info("missing-project")


def test_redirect_url_merges_query_and_keeps_fragment():
    url = build_redirect_url("https://app.example.com", "/projects/p1?tab=repos#list", success="true", skipped=None)

    assert url == "https://app.example.com/projects/p1?tab=repos&success=true#list"


# ----------------------------------------------------------------------
# Malformed provider responses during the callback
# ----------------------------------------------------------------------


def _github_routes(config_file: httpx.Response, webhook: httpx.Response):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, json={"access_token": "gho_exchangedtoken"})
        if request.url.path == "/repos/acme/widgets":
            return httpx.Response(200, json={"default_branch": "main"})
        if request.url.path.startswith("/repos/acme/widgets/contents/"):
            return config_file
        if request.url.path == "/repos/acme/widgets/hooks":
            return webhook
        raise AssertionError(f"Unexpected request {request.method} {request.url}")

    return handler


def _github_manager(handler, session_factory, vault, settings) -> ConnectionManager:
    adapter = GitHubAdapter(timeout=1, transport=httpx.MockTransport(handler))
    return ConnectionManager(session_factory, FakeProviderFactory(adapter), vault, settings=settings)


async def test_callback_non_json_webhook_response_redirects(project, session_factory, vault, settings):
    manager = _github_manager(
        _github_routes(httpx.Response(404, json={"message": "Not Found"}), httpx.Response(201, text="not json")),
        session_factory,
        vault,
        settings,
    )

    url = await manager.handle_callback(ORIGIN, code="oauth-code", state=_state(manager, project.id))

    assert _query(url) == ("/onboarding/complete", {"error": "webhook_failed"})
    assert await _stored(session_factory) is None


async def test_callback_non_utf8_config_is_not_fatal(project, session_factory, vault, settings):
    binary = {"type": "file", "encoding": "base64", "content": base64.b64encode(b"\xff\xfe\x00binary").decode()}
    manager = _github_manager(
        _github_routes(httpx.Response(200, json=binary), httpx.Response(201, json={"id": 7})),
        session_factory,
        vault,
        settings,
    )

    url = await manager.handle_callback(ORIGIN, code="oauth-code", state=_state(manager, project.id))

    path, query = _query(url)
    assert query["success"] == "true"
    assert (await _stored(session_factory)).webhook_id == "7"
    async with session_factory() as session:
        assert (await ProjectStore(session).find_by_id(project.id)).config_yaml is None


async def test_callback_unexpected_error_redirects_with_link_failed(project, session_factory, vault, settings):
    class _ExplodingAdapter(FakeGitHubAdapter):
        async def register_webhook(self, access_token, repository_url, callback_url):
            raise RuntimeError("hook store offline")

    manager = ConnectionManager(session_factory, FakeProviderFactory(_ExplodingAdapter()), vault, settings=settings)

    url = await manager.handle_callback(ORIGIN, code="oauth-code", state=_state(manager, project.id, return_to="/projects/demo"))

    assert _query(url) == ("/projects/demo", {"error": "link_failed"})
    assert await _stored(session_factory) is None
