"""
GitHub provider adapter.

OAuth App authorization flow plus the REST v3 endpoints needed to read
issues, read the repository config file and register the repository webhook.
"""

import base64
import re
from typing import Any, Dict, Optional
from urllib.parse import urlencode, quote

from reposync.core.settings import OAuthAppConfig
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

HTTPS_URL_PATTERN = re.compile(r"^https?://(?:www\.)?github\.com/([^/?#]+)/([^/?#]+?)(?:\.git)?(?:[/?#].*)?$", re.IGNORECASE)
SSH_URL_PATTERN = re.compile(r"^git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$", re.IGNORECASE)


class GitHubAdapter(ProviderAdapter):
    """GitHub REST API adapter."""

    service_type = ServiceType.GITHUB

    authorize_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    api_base_url = "https://api.github.com"
    scopes = ["repo", "admin:repo_hook"]

    def auth_headers(self, access_token: str) -> Dict[str, str]:
        headers = super().auth_headers(access_token)
        headers["Accept"] = "application/vnd.github+json"
        headers["X-GitHub-Api-Version"] = "2022-11-28"
        return headers

    def parse_repository_url(self, url: str) -> Optional[RepositoryRef]:
        if not isinstance(url, str):
            return None
        url = url.strip()
        match = HTTPS_URL_PATTERN.match(url) or SSH_URL_PATTERN.match(url)
        if not match:
            return None
        return RepositoryRef(owner=match.group(1), repo=match.group(2))

    def build_authorize_url(self, config: OAuthAppConfig, state: str) -> str:
        params = {
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str, config: OAuthAppConfig) -> str:
        try:
            response = await self._request(
                "POST",
                self.token_url,
                operation="exchange OAuth code",
                json={
                    "client_id": config.client_id,
                    "client_secret": config.client_secret,
                    "code": code,
                    "redirect_uri": config.redirect_uri,
                },
                headers={"Accept": "application/json", "User-Agent": self.user_agent},
            )
        except ProviderAPIError as e:
            raise OAuthExchangeError(e.message, service_type=self.service_type.value, original_exception=e)

        if not response.is_success:
            raise OAuthExchangeError(
                f"GitHub OAuth error: {self._extract_error_message(response)}",
                service_type=self.service_type.value,
            )

        try:
            data = response.json()
        except ValueError:
            raise OAuthExchangeError("GitHub returned a malformed token response", service_type=self.service_type.value)

        if not isinstance(data, dict):
            raise OAuthExchangeError("GitHub returned a malformed token response", service_type=self.service_type.value)
        if data.get("error"):
            raise OAuthExchangeError(
                f"GitHub OAuth error: {data.get('error_description') or data['error']}",
                service_type=self.service_type.value,
            )
        access_token = data.get("access_token")
        if not access_token:
            raise OAuthExchangeError("GitHub token response did not include an access token", service_type=self.service_type.value)

        logger.info("Exchanged GitHub OAuth code for an access token")
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
            f"{self.api_base_url}/repos/{ref.owner}/{ref.repo}/issues",
            operation=operation,
            timeout=self.page_timeout,
            params={"state": "all" if state == "all" else "open", "page": page, "per_page": per_page},
            headers=self.auth_headers(access_token),
        )
        self._raise_for_status(response, operation)

        items = self._json_body(response, operation, expected=list)
        # The issues endpoint also returns pull requests
        issue_items = [item for item in items if not (isinstance(item, dict) and "pull_request" in item)]
        issues = self._convert_items(response, operation, issue_items, self._to_provider_issue)

        return IssuePage(issues=issues, has_next="next" in response.links, page_size_returned=len(items))

    async def register_webhook(self, access_token: str, repository_url: str, callback_url: str) -> WebhookRegistration:
        ref = self.require_repository_ref(repository_url)
        secret = self.generate_webhook_secret()
        operation = f"register webhook on {ref.full_name}"

        try:
            response = await self._request(
                "POST",
                f"{self.api_base_url}/repos/{ref.owner}/{ref.repo}/hooks",
                operation=operation,
                json={
                    "name": "web",
                    "active": True,
                    "events": ["push", "pull_request", "issues"],
                    "config": {
                        "url": callback_url,
                        "content_type": "json",
                        "secret": secret,
                        "insecure_ssl": "0",
                    },
                },
                headers=self.auth_headers(access_token),
            )
            self._raise_for_status(response, operation)
            webhook_id = self._json_body(response, operation).get("id")
        except ProviderAPIError as e:
            raise WebhookRegistrationError(
                f"Failed to register GitHub webhook: {e.message}",
                repository_url=repository_url,
                upstream_status=e.upstream_status,
                service_type=self.service_type.value,
                original_exception=e,
            )

        if webhook_id is None:
            raise WebhookRegistrationError(
                "GitHub webhook response did not include an id",
                repository_url=repository_url,
                service_type=self.service_type.value,
            )
        logger.info(f"Registered GitHub webhook {webhook_id} on {ref.full_name}")
        return WebhookRegistration(webhook_id=str(webhook_id), webhook_secret=secret)

    async def fetch_repository_file(self, access_token: str, ref: RepositoryRef, path: str) -> Optional[str]:
        headers = self.auth_headers(access_token)

        operation = f"get repository {ref.full_name}"
        response = await self._request(
            "GET", f"{self.api_base_url}/repos/{ref.owner}/{ref.repo}", operation=operation, headers=headers
        )
        self._raise_for_status(response, operation)
        branch = self._json_body(response, operation).get("default_branch") or "main"

        operation = f"read {path} from {ref.full_name}"
        response = await self._request(
            "GET",
            f"{self.api_base_url}/repos/{ref.owner}/{ref.repo}/contents/{quote(path)}",
            operation=operation,
            params={"ref": branch},
            headers=headers,
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, operation)

        data = self._json_body(response, operation, expected=None)
        # A directory path comes back as a list
        if not isinstance(data, dict) or data.get("type") != "file":
            return None
        content = data.get("content") or ""
        if data.get("encoding") != "base64":
            return content
        try:
            return base64.b64decode(content).decode("utf-8")
        except (TypeError, ValueError) as e:
            raise self._malformed_response(response, operation, "file content is not UTF-8 text", e)

    @staticmethod
    def _to_provider_issue(item: Dict[str, Any]) -> ProviderIssue:
        labels = []
        for label in item.get("labels") or []:
            if isinstance(label, dict):
                labels.append({"name": label.get("name"), "color": label.get("color")})
            else:
                labels.append({"name": str(label), "color": None})

        assignees = [
            {"login": a.get("login"), "name": a.get("name"), "email": a.get("email")}
            for a in item.get("assignees") or []
        ]

        return ProviderIssue(
            id=str(item["id"]),
            number=item["number"],
            title=item.get("title") or "",
            body=item.get("body"),
            state="closed" if item.get("state") == "closed" else "open",
            html_url=item.get("html_url"),
            labels=labels,
            assignees=assignees,
            created_at=parse_timestamp(item.get("created_at")),
            updated_at=parse_timestamp(item.get("updated_at")),
        )
