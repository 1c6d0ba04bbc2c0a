"""Shared fixtures for the RepoSync backend tests.

The environment is pinned before any ``reposync`` module is imported so the
cached settings, the module-level engine and the logger all see test values.
Every test gets its own SQLite database file.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta
from typing import Dict, List, Optional

os.environ["APP_ENV"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="reposync-logs-")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENCRYPTION_SECRET"] = "test-encryption-secret"
os.environ["APP_URL"] = "http://testserver"
os.environ["FRONTEND_URL"] = "http://testserver"
os.environ["GITHUB_CLIENT_ID"] = "gh-client-id"
os.environ["GITHUB_CLIENT_SECRET"] = "gh-client-secret"
os.environ["OPERATION_STORE_BACKEND"] = "memory"

import pytest

from reposync.core.security import CurrentUser, create_access_token
from reposync.core.settings import OAuthAppConfig, get_settings
from reposync.db.session import build_engine, build_session_factory, create_tables, drop_tables
from reposync.exceptions.repository_exceptions import (
    OAuthExchangeError,
    ProviderAPIError,
    WebhookRegistrationError,
)
from reposync.models import Project, RepositoryConnection, ServiceType
from reposync.providers.base import IssuePage, ProviderIssue, RepositoryRef, WebhookRegistration
from reposync.providers.github import GitHubAdapter
from reposync.providers.provider_factory import ProviderFactory
from reposync.services.credential_vault import CredentialVault
from reposync.stores.operations import InMemoryOperationStore

REPOSITORY_URL = "https://github.com/acme/widgets"
BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def make_issue(number: int, state: str = "open", updated_at: Optional[datetime] = None, title: Optional[str] = None) -> ProviderIssue:
    return ProviderIssue(
        id=str(1000 + number),
        number=number,
        title=title or f"Issue {number}",
        body=f"Body of issue {number}",
        state=state,
        html_url=f"{REPOSITORY_URL}/issues/{number}",
        labels=[{"name": "bug", "color": "d73a4a"}],
        assignees=[{"login": "octocat", "name": None, "email": None}],
        created_at=BASE_TIME,
        updated_at=updated_at or BASE_TIME + timedelta(minutes=number),
    )


def make_issues(count: int, state: str = "open") -> List[ProviderIssue]:
    return [make_issue(n, state=state) for n in range(1, count + 1)]


class FakeGitHubAdapter(GitHubAdapter):
    """
    GitHub adapter with the network replaced by in-memory data.

    URL parsing and authorize URL building are the real GitHub implementations.
    """

    def __init__(self, issues: Optional[List[ProviderIssue]] = None):
        super().__init__(timeout=1, page_timeout=1)
        self.issues: List[ProviderIssue] = list(issues or [])
        self.files: Dict[str, str] = {}
        self.fail_on_page: Optional[int] = None
        self.webhook_error = False
        self.exchange_error = False
        self.gate: Optional[asyncio.Event] = None
        self.gate_page = 2
        self.page_requests: List[Dict] = []
        self.webhooks: List[Dict] = []
        self.exchanged_codes: List[str] = []

    async def exchange_code_for_token(self, code: str, config: OAuthAppConfig) -> str:
        self.exchanged_codes.append(code)
        if self.exchange_error:
            raise OAuthExchangeError("bad_verification_code", service_type="GitHub")
        return "gho_exchangedtoken"

    async def fetch_issues_page(self, access_token, ref, state="open", page=1, per_page=100) -> IssuePage:
        self.page_requests.append({"token": access_token, "state": state, "page": page, "per_page": per_page})
        if self.gate is not None and page >= self.gate_page:
            await self.gate.wait()
        if self.fail_on_page is not None and page == self.fail_on_page:
            raise ProviderAPIError("GitHub server error", operation="fetch issues", upstream_status=502)

        visible = self.issues if state == "all" else [i for i in self.issues if i.state == "open"]
        start = (page - 1) * per_page
        return IssuePage(issues=visible[start:start + per_page], has_next=start + per_page < len(visible))

    async def register_webhook(self, access_token, repository_url, callback_url) -> WebhookRegistration:
        if self.webhook_error:
            raise WebhookRegistrationError(
                "Failed to register GitHub webhook: Not Found",
                repository_url=repository_url,
                upstream_status=404,
                service_type="GitHub",
            )
        self.webhooks.append({"token": access_token, "url": repository_url, "callback": callback_url})
        return WebhookRegistration(webhook_id="4242", webhook_secret="whsec-generated")

    async def fetch_repository_file(self, access_token, ref: RepositoryRef, path: str) -> Optional[str]:
        return self.files.get(path)


class FakeProviderFactory(ProviderFactory):
    """Hands out the same fake adapter for every GitHub request."""

    def __init__(self, adapter: FakeGitHubAdapter):
        super().__init__()
        self.adapter = adapter

    def create_provider(self, service_type):
        self.resolve_service_type(service_type)
        return self.adapter


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(bind=engine)
    yield engine
    await drop_tables(bind=engine)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def vault():
    return CredentialVault("test-encryption-secret")


@pytest.fixture
def adapter():
    return FakeGitHubAdapter()


@pytest.fixture
def provider_factory(adapter):
    return FakeProviderFactory(adapter)


@pytest.fixture
def operation_store():
    return InMemoryOperationStore()


@pytest.fixture
def admin():
    return CurrentUser(id="user-admin", email="admin@example.com", role="admin")


@pytest.fixture
def viewer():
    return CurrentUser(id="user-viewer", email="viewer@example.com", role="viewer")


@pytest.fixture
async def project(session_factory):
    async with session_factory() as session:
        project = Project(key="DEMO", name="Demo Project", owner_id="user-admin")
        session.add(project)
        await session.commit()
        return project


@pytest.fixture
async def other_project(session_factory):
    async with session_factory() as session:
        project = Project(key="OTHER", name="Other Project", owner_id="user-admin")
        session.add(project)
        await session.commit()
        return project


async def add_connection(
    session_factory,
    vault: CredentialVault,
    project_id: str,
    repository_url: str = REPOSITORY_URL,
    is_active: bool = False,
    access_token: str = "gho_storedtoken",
) -> RepositoryConnection:
    async with session_factory() as session:
        connection = RepositoryConnection(
            project_id=project_id,
            repository_url=repository_url,
            service_type=ServiceType.GITHUB,
            access_token=vault.encrypt(access_token),
            webhook_secret=vault.encrypt("whsec-stored"),
            webhook_id="99",
            is_active=is_active,
        )
        session.add(connection)
        await session.commit()
        return connection


@pytest.fixture
async def connection(session_factory, vault, project):
    return await add_connection(session_factory, vault, project.id)


def auth_headers(user_id: str = "user-admin", role: str = "admin") -> Dict[str, str]:
    token = create_access_token(user_id, data={"role": role, "email": f"{user_id}@example.com"})
    return {"Authorization": f"Bearer {token}"}
