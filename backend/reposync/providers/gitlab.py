"""
GitLab provider adapter (gitlab.com or self-hosted).

Projects are addressed by their URL-encoded namespace path, which may contain
nested groups.
"""

import re
from typing import Any, Dict, Optional
from urllib.parse import urlencode, quote, urlsplit

import httpx

from reposync.core.settings import OAuthAppConfig, get_settings
from reposync.exceptions.repository_exceptions import (
    OAuthExchangeError,
    ProviderAPIError,
    WebhookRegistrationError,
)
from reposync.models.repository_connection import ServiceType
from reposync.providers.base import (
    IssuePage,
    ProviderAdapter,
    ProviderIssue,
    RepositoryRef,
    WebhookRegistration,
)
from reposync.utils.timeutils import parse_timestamp
from logconfig.logger import get_logger

logger = get_logger()

SSH_URL_PATTERN = re.compile(r"^git@([^:]+):(.+?)(?:\.git)?/?$")


class GitLabAdapter(ProviderAdapter):
    """GitLab REST API v4 adapter."""

    service_type = ServiceType.GITLAB
    scopes = ["api", "read_repository", "write_repository"]

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        page_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, page_timeout=page_timeout, transport=transport)
        self.base_url = (base_url or get_settings().GITLAB_BASE_URL).rstrip("/")

    @property
    def api_base_url(self) -> str:
        return f"{self.base_url}/api/v4"

    def parse_repository_url(self, url: str) -> Optional[RepositoryRef]:
        if not isinstance(url, str):
            return None
        url = url.strip()

        ssh_match = SSH_URL_PATTERN.match(url)
        if ssh_match:
            path = ssh_match.group(2)
        else:
            try:
                parts = urlsplit(url)
            except ValueError:
                return None
            if parts.scheme not in ("http", "https") or not parts.netloc:
                return None
            path = parts.path

        # Drop UI suffixes such as /-/issues and the .git extension
        path = path.split("/-/", 1)[0].strip("/")
        if path.endswith(".git"):
            path = path[: -len(".git")]

        segments = [s for s in path.split("/") if s]
        if len(segments) < 2:
            return None
        return RepositoryRef(owner="/".join(segments[:-1]), repo=segments[-1])

    def _project_path(self, ref: RepositoryRef) -> str:
        return quote(ref.full_name, safe="")

    def build_authorize_url(self, config: OAuthAppConfig, state: str) -> str:
        base_url = (config.base_url or self.base_url).rstrip("/")
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{base_url}/oauth/authorize?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str, config: OAuthAppConfig) -> str:
        base_url = (config.base_url or self.base_url).rstrip("/")
        try:
            response = await self._request(
                "POST",
                f"{base_url}/oauth/token",
                operation="exchange OAuth code",
                data={
                    "client_id": config.client_id,
                    "client_secret": config.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": config.redirect_uri,
                },
                headers={"Accept": "application/json", "User-Agent": self.user_agent},
            )
        except ProviderAPIError as e:
            raise OAuthExchangeError(e.message, service_type=self.service_type.value, original_exception=e)

        if not response.is_success:
            raise OAuthExchangeError(
                f"GitLab OAuth error: {self._extract_error_message(response)}",
                service_type=self.service_type.value,
            )
        try:
            data = response.json()
        except ValueError:
            raise OAuthExchangeError("GitLab returned a malformed token response", service_type=self.service_type.value)

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise OAuthExchangeError("GitLab token response did not include an access token", service_type=self.service_type.value)

        logger.info("Exchanged GitLab OAuth code for an access token")
        return access_token

    async def fetch_issues_page(
        self,
        access_token: str,
        ref: RepositoryRef,
        state: str = "open",
        page: int = 1,
        per_page: int = 100,
    ) -> IssuePage:
        operation = f"fetch issues for {ref.full_name}"
        response = await self._request(
            "GET",
            f"{self.api_base_url}/projects/{self._project_path(ref)}/issues",
            operation=operation,
            timeout=self.page_timeout,
            params={"state": "all" if state == "all" else "opened", "page": page, "per_page": per_page},
            headers=self.auth_headers(access_token),
        )
        self._raise_for_status(response, operation)

        items = self._json_body(response, operation, expected=list)
        issues = self._convert_items(response, operation, items, self._to_provider_issue)
        return IssuePage(
            issues=issues,
            has_next=bool(response.headers.get("X-Next-Page")),
            page_size_returned=len(items),
        )

    async def register_webhook(self, access_token: str, repository_url: str, callback_url: str) -> WebhookRegistration:
        ref = self.require_repository_ref(repository_url)
        secret = self.generate_webhook_secret()
        operation = f"register webhook on {ref.full_name}"

        try:
            response = await self._request(
                "POST",
                f"{self.api_base_url}/projects/{self._project_path(ref)}/hooks",
                operation=operation,
                json={
                    "url": callback_url,
                    "push_events": True,
                    "merge_requests_events": True,
                    "issues_events": True,
                    "token": secret,
                    "enable_ssl_verification": True,
                },
                headers=self.auth_headers(access_token),
            )
            self._raise_for_status(response, operation)
            webhook_id = self._json_body(response, operation).get("id")
        except ProviderAPIError as e:
            raise WebhookRegistrationError(
                f"Failed to register GitLab webhook: {e.message}",
                repository_url=repository_url,
                upstream_status=e.upstream_status,
                service_type=self.service_type.value,
                original_exception=e,
            )

        if webhook_id is None:
            raise WebhookRegistrationError(
                "GitLab webhook response did not include an id",
                repository_url=repository_url,
                service_type=self.service_type.value,
            )
        logger.info(f"Registered GitLab webhook {webhook_id} on {ref.full_name}")
        return WebhookRegistration(webhook_id=str(webhook_id), webhook_secret=secret)

    async def fetch_repository_file(self, access_token: str, ref: RepositoryRef, path: str) -> Optional[str]:
        headers = self.auth_headers(access_token)
        project_path = self._project_path(ref)

        operation = f"get project {ref.full_name}"
        response = await self._request("GET", f"{self.api_base_url}/projects/{project_path}", operation=operation, headers=headers)
        self._raise_for_status(response, operation)
        branch = self._json_body(response, operation).get("default_branch") or "main"

        operation = f"read {path} from {ref.full_name}"
        response = await self._request(
            "GET",
            f"{self.api_base_url}/projects/{project_path}/repository/files/{quote(path, safe='')}/raw",
            operation=operation,
            params={"ref": branch},
            headers=headers,
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, operation)
        return response.text

    @staticmethod
    def _to_provider_issue(item: Dict[str, Any]) -> ProviderIssue:
        labels = []
        for label in item.get("labels") or []:
            if isinstance(label, dict):
                labels.append({"name": label.get("name"), "color": label.get("color")})
            else:
                labels.append({"name": str(label), "color": None})

        assignees = [
            {"login": a.get("username"), "name": a.get("name"), "email": a.get("email")}
            for a in item.get("assignees") or []
        ]

        return ProviderIssue(
            id=str(item["id"]),
            number=item["iid"],
            title=item.get("title") or "",
            body=item.get("description"),
            state="open" if item.get("state") == "opened" else "closed",
            html_url=item.get("web_url"),
            labels=labels,
            assignees=assignees,
            created_at=parse_timestamp(item.get("created_at")),
            updated_at=parse_timestamp(item.get("updated_at")),
        )
