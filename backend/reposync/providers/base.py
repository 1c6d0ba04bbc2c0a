"""
Abstract base class for Git hosting provider adapters.

Each adapter hides one provider's REST quirks (URL formats, OAuth endpoints,
pagination shape, webhook payloads) behind the same capability set, so the
connection manager and sync orchestrator never branch on provider type.
"""
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from reposync.core.settings import OAuthAppConfig, get_settings
from reposync.exceptions.repository_exceptions import (
    InvalidRepositoryUrlError,
    ProviderAPIError,
    ProviderRateLimitError,
)
from reposync.models.repository_connection import ServiceType
from logconfig.logger import get_logger

logger = get_logger()


@dataclass
class RepositoryRef:
    """Provider-side repository coordinates."""
    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass
class ProviderIssue:
    """Provider issue normalized across GitHub, GitLab and Bitbucket."""
    id: str
    number: int
    title: str
    body: Optional[str]
    state: str  # "open" | "closed"
    html_url: Optional[str] = None
    labels: List[Dict[str, Any]] = field(default_factory=list)
    assignees: List[Dict[str, Any]] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class IssuePage:
    issues: List[ProviderIssue]
    has_next: bool
    # Items the provider returned, including entries filtered out of `issues`
    page_size_returned: Optional[int] = None

    def __post_init__(self):
        if self.page_size_returned is None:
            self.page_size_returned = len(self.issues)


@dataclass
class WebhookRegistration:
    webhook_id: str
    webhook_secret: str


class ProviderAdapter(ABC):
    """Abstract base class for provider adapters."""

    service_type: ServiceType
    user_agent = "RepoSync/1.0"

    def __init__(
        self,
        timeout: Optional[float] = None,
        page_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            timeout: Timeout for OAuth, webhook and file calls
            page_timeout: Timeout for issue page fetches
            transport: Optional httpx transport (tests inject a mock transport)
        """
        settings = get_settings()
        self.timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
        self.page_timeout = page_timeout if page_timeout is not None else settings.SYNC_PAGE_TIMEOUT_SECONDS
        self.transport = transport

    # ------------------------------------------------------------------
    # Capability set
    # ------------------------------------------------------------------

    @abstractmethod
    def parse_repository_url(self, url: str) -> Optional[RepositoryRef]:
        """
        Parse a repository URL into owner/repo coordinates.

        Args:
            url: HTTPS or SSH clone URL

        Returns:
            RepositoryRef, or None if the URL does not belong to this provider
        """
        pass

    @abstractmethod
    def build_authorize_url(self, config: OAuthAppConfig, state: str) -> str:
        """
        Build the provider authorize URL the user is redirected to.

        Args:
            config: OAuth application credentials
            state: Encoded OAuth state token

        Returns:
            Absolute authorize URL
        """
        pass

    @abstractmethod
    async def exchange_code_for_token(self, code: str, config: OAuthAppConfig) -> str:
        """
        Exchange an authorization code for an access token.

        Args:
            code: Authorization code from the callback
            config: OAuth application credentials

        Returns:
            Access token

        Raises:
            OAuthExchangeError: On non-2xx or malformed provider response
        """
        pass

    @abstractmethod
    async def fetch_issues_page(
        self,
        access_token: str,
        ref: RepositoryRef,
        state: str = "open",
        page: int = 1,
        per_page: int = 100,
    ) -> IssuePage:
        """
        Fetch one page of issues. Pagination is driven by the caller.

        Args:
            access_token: Provider access token
            ref: Repository coordinates
            state: "open" or "all"
            page: 1-based page number
            per_page: Page size

        Returns:
            IssuePage with the page's issues and whether another page exists

        Raises:
            ProviderRateLimitError: If the provider rate limit is exhausted
            ProviderAPIError: For other provider failures
        """
        pass

    @abstractmethod
    async def register_webhook(self, access_token: str, repository_url: str, callback_url: str) -> WebhookRegistration:
        """
        Register a webhook pointing at this deployment.

        The shared secret is generated here and sent to the provider.

        Raises:
            WebhookRegistrationError: If the provider refuses the webhook
        """
        pass

    @abstractmethod
    async def fetch_repository_file(self, access_token: str, ref: RepositoryRef, path: str) -> Optional[str]:
        """
        Read a file from the repository's default branch.

        Returns:
            File content, or None if the file does not exist
        """
        pass

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def require_repository_ref(self, url: str) -> RepositoryRef:
        ref = self.parse_repository_url(url)
        if ref is None:
            raise InvalidRepositoryUrlError(url, service_type=self.service_type.value)
        return ref

    @staticmethod
    def generate_webhook_secret() -> str:
        return secrets.token_hex(32)

    def auth_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }

    async def _request(
        self,
        method: str,
        url: str,
        operation: str,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> httpx.Response:
        """
        Send a request, converting transport failures into ProviderAPIError.

        HTTP error statuses are returned untouched; callers decide which ones
        are expected (for example a 404 on an optional file).
        """
        try:
            async with httpx.AsyncClient(
                timeout=timeout if timeout is not None else self.timeout,
                transport=self.transport,
            ) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"{self.service_type.value} request timed out during {operation}")
            raise ProviderAPIError(
                f"Timed out during {operation}",
                operation=operation,
                service_type=self.service_type.value,
                original_exception=e,
            )
        except httpx.HTTPError as e:
            logger.warning(f"{self.service_type.value} request failed during {operation}: {e.__class__.__name__}")
            raise ProviderAPIError(
                f"Request failed during {operation}: {e}",
                operation=operation,
                service_type=self.service_type.value,
                original_exception=e,
            )

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        """
        Map provider error responses onto the integration error taxonomy.

        Raises:
            ProviderRateLimitError: 429, or 403 with an exhausted rate limit
            ProviderAPIError: Any other non-2xx status
        """
        if response.is_success:
            return

        error_message = self._extract_error_message(response)
        service = self.service_type.value

        remaining = response.headers.get("X-RateLimit-Remaining")
        if response.status_code == 429 or (
            response.status_code == 403
            and (remaining == "0" or "rate limit" in error_message.lower())
        ):
            retry_after = self._retry_after(response)
            logger.warning(f"{service} rate limit hit during {operation} (retry after {retry_after}s)")
            raise ProviderRateLimitError(
                f"Rate limit exceeded for {operation}",
                operation=operation,
                upstream_status=response.status_code,
                service_type=service,
                retry_after=retry_after,
            )

        if response.status_code in (401, 403):
            message = f"Access denied for {operation}: {error_message}"
        elif response.status_code == 404:
            message = f"Resource not found for {operation}: {error_message}"
        elif response.status_code == 422:
            message = f"Validation failed for {operation}: {error_message}"
        elif response.status_code >= 500:
            message = f"{service} server error during {operation}: {error_message}"
        else:
            message = f"{service} API error during {operation}: {error_message}"

        raise ProviderAPIError(
            message,
            operation=operation,
            upstream_status=response.status_code,
            service_type=service,
        )

    def _malformed_response(
        self,
        response: httpx.Response,
        operation: str,
        reason: str,
        cause: Optional[BaseException] = None,
    ) -> ProviderAPIError:
        service = self.service_type.value
        logger.warning(f"{service} returned a malformed response during {operation}: {reason}")
        return ProviderAPIError(
            f"{service} returned a malformed response during {operation}: {reason}",
            operation=operation,
            upstream_status=response.status_code,
            service_type=service,
            original_exception=cause,
        )

    def _json_body(self, response: httpx.Response, operation: str, expected: Optional[type] = dict) -> Any:
        """
        Decode a successful response body.

        Raises:
            ProviderAPIError: The body is not JSON or not of the expected type
        """
        try:
            data = response.json()
        except ValueError as e:
            raise self._malformed_response(response, operation, "body is not JSON", e)
        if expected is not None and not isinstance(data, expected):
            raise self._malformed_response(
                response, operation, f"expected {expected.__name__}, got {type(data).__name__}"
            )
        return data

    def _convert_items(
        self,
        response: httpx.Response,
        operation: str,
        items: List[Any],
        convert: Callable[[Dict[str, Any]], ProviderIssue],
    ) -> List[ProviderIssue]:
        """Normalize raw issue items, turning shape errors into ProviderAPIError."""
        try:
            return [convert(item) for item in items]
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise self._malformed_response(response, operation, f"unexpected issue shape ({e.__class__.__name__})", e)

    @staticmethod
    def _extract_error_message(response: httpx.Response) -> str:
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if isinstance(data, dict):
            message = data.get("message") or data.get("error_description") or data.get("error")
            if isinstance(message, dict):
                message = message.get("message")
            if message:
                return str(message)
        return f"HTTP {response.status_code}"

    @staticmethod
    def _retry_after(response: httpx.Response) -> Optional[int]:
        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            return int(retry_after)
        reset = response.headers.get("X-RateLimit-Reset")
        if reset and reset.isdigit():
            return max(0, int(reset) - int(datetime.now().timestamp()))
        return None

