"""
Bitbucket Cloud provider adapter.
"""

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

HTTPS_URL_PATTERN = re.compile(r"^https?://(?:[^@/]+@)?bitbucket\.org/([^/?#]+)/([^/?#]+?)(?:\.git)?(?:[/?#].*)?$", re.IGNORECASE)
SSH_URL_PATTERN = re.compile(r"^git@bitbucket\.org:([^/]+)/([^/]+?)(?:\.git)?$", re.IGNORECASE)

OPEN_STATES = ("new", "open")


class BitbucketAdapter(ProviderAdapter):
    """Bitbucket Cloud REST API 2.0 adapter."""

    service_type = ServiceType.BITBUCKET

    authorize_url = "https://bitbucket.org/site/oauth2/authorize"
    token_url = "https://bitbucket.org/site/oauth2/access_token"
    api_base_url = "https://api.bitbucket.org/2.0"

    def parse_repository_url(self, url: str) -> Optional[RepositoryRef]:
        if not isinstance(url, str):
            return None
        url = url.strip()
        match = HTTPS_URL_PATTERN.match(url) or SSH_URL_PATTERN.match(url)
        if not match:
            return None
        return RepositoryRef(owner=match.group(1), repo=match.group(2))

    def build_authorize_url(self, config: OAuthAppConfig, state: str) -> str:
        # Scopes are fixed on the Bitbucket OAuth consumer
        params = {
            "client_id": config.client_id,
            "response_type": "code",
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str, config: OAuthAppConfig) -> str:
        try:
            response = await self._request(
                "POST",
                self.token_url,
                operation="exchange OAuth code",
                data={"grant_type": "authorization_code", "code": code},
                auth=(config.client_id, config.client_secret),
                headers={"Accept": "application/json", "User-Agent": self.user_agent},
            )
        except ProviderAPIError as e:
            raise OAuthExchangeError(e.message, service_type=self.service_type.value, original_exception=e)

        if not response.is_success:
            raise OAuthExchangeError(
                f"Bitbucket OAuth error: {self._extract_error_message(response)}",
                service_type=self.service_type.value,
            )
        try:
            data = response.json()
        except ValueError:
            raise OAuthExchangeError("Bitbucket returned a malformed token response", service_type=self.service_type.value)

        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise OAuthExchangeError("Bitbucket token response did not include an access token", service_type=self.service_type.value)

        logger.info("Exchanged Bitbucket OAuth code for an access token")
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
        params: Dict[str, Any] = {"page": page, "pagelen": per_page}
        if state != "all":
            params["q"] = " OR ".join(f'state="{s}"' for s in OPEN_STATES)

        response = await self._request(
            "GET",
            f"{self.api_base_url}/repositories/{ref.owner}/{ref.repo}/issues",
            operation=operation,
            timeout=self.page_timeout,
            params=params,
            headers=self.auth_headers(access_token),
        )
        self._raise_for_status(response, operation)

        data = self._json_body(response, operation)
        items = data.get("values") or []
        if not isinstance(items, list):
            raise self._malformed_response(response, operation, "values is not a list")
        issues = self._convert_items(response, operation, items, self._to_provider_issue)
        return IssuePage(issues=issues, has_next=bool(data.get("next")), page_size_returned=len(items))

    async def register_webhook(self, access_token: str, repository_url: str, callback_url: str) -> WebhookRegistration:
        ref = self.require_repository_ref(repository_url)
        secret = self.generate_webhook_secret()
        operation = f"register webhook on {ref.full_name}"

        try:
            response = await self._request(
                "POST",
                f"{self.api_base_url}/repositories/{ref.owner}/{ref.repo}/hooks",
                operation=operation,
                json={
                    "description": "RepoSync issue synchronization",
                    "url": callback_url,
                    "active": True,
                    "secret": secret,
                    "events": ["repo:push", "pullrequest:created", "pullrequest:updated", "issue:created", "issue:updated"],
                },
                headers=self.auth_headers(access_token),
            )
            self._raise_for_status(response, operation)
            webhook_id = self._json_body(response, operation).get("uuid")
        except ProviderAPIError as e:
            raise WebhookRegistrationError(
                f"Failed to register Bitbucket webhook: {e.message}",
                repository_url=repository_url,
                upstream_status=e.upstream_status,
                service_type=self.service_type.value,
                original_exception=e,
            )

        if not webhook_id:
            raise WebhookRegistrationError(
                "Bitbucket webhook response did not include a uuid",
                repository_url=repository_url,
                service_type=self.service_type.value,
            )
        logger.info(f"Registered Bitbucket webhook {webhook_id} on {ref.full_name}")
        return WebhookRegistration(webhook_id=str(webhook_id), webhook_secret=secret)

    async def fetch_repository_file(self, access_token: str, ref: RepositoryRef, path: str) -> Optional[str]:
        headers = self.auth_headers(access_token)

        operation = f"get repository {ref.full_name}"
        response = await self._request(
            "GET", f"{self.api_base_url}/repositories/{ref.owner}/{ref.repo}", operation=operation, headers=headers
        )
        self._raise_for_status(response, operation)
        mainbranch = self._json_body(response, operation).get("mainbranch")
        branch = (mainbranch.get("name") if isinstance(mainbranch, dict) else None) or "main"

        operation = f"read {path} from {ref.full_name}"
        response = await self._request(
            "GET",
            f"{self.api_base_url}/repositories/{ref.owner}/{ref.repo}/src/{quote(branch, safe='')}/{quote(path)}",
            operation=operation,
            headers=headers,
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response, operation)
        return response.text

    @staticmethod
    def _to_provider_issue(item: Dict[str, Any]) -> ProviderIssue:
        labels = []
        for key in ("kind", "priority"):
            if item.get(key):
                labels.append({"name": item[key], "color": None})
        component = item.get("component")
        if isinstance(component, dict) and component.get("name"):
            labels.append({"name": component["name"], "color": None})

        assignees = []
        assignee = item.get("assignee")
        if isinstance(assignee, dict):
            assignees.append({
                "login": assignee.get("nickname") or assignee.get("display_name"),
                "name": assignee.get("display_name"),
                "email": None,
            })

        content = item.get("content") or {}
        links = item.get("links") or {}
        return ProviderIssue(
            id=str(item["id"]),
            number=item["id"],
            title=item.get("title") or "",
            body=content.get("raw"),
            state="open" if item.get("state") in OPEN_STATES else "closed",
            html_url=(links.get("html") or {}).get("href"),
            labels=labels,
            assignees=assignees,
            created_at=parse_timestamp(item.get("created_on")),
            updated_at=parse_timestamp(item.get("updated_on")),
        )
