"""
Repository integration exception hierarchy.

Errors raised while linking a project to a Git hosting provider and while
synchronizing its issues. Provider network failures are converted into these
types at the adapter boundary, so nothing above the adapters handles raw
``httpx`` errors.
"""

from typing import Optional, Dict, Any
from .base_exceptions import (
    BaseApplicationError,
    AuthorizationError,
    ConfigurationError,
    ResourceConflictError,
    ResourceNotFoundError,
)


class RepositoryIntegrationError(BaseApplicationError):
    """
    Base exception for provider-facing repository operations.
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        service_type: Optional[str] = None,
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message=message, **kwargs)
        self.service_type = service_type
        self.retry_after = retry_after
        self.details.update({"service_type": service_type})
        if retry_after:
            self.details.update({"retry_after": retry_after})


class OAuthExchangeError(RepositoryIntegrationError):
    """
    Exception raised when an authorization code cannot be exchanged for a token.
    """

    status_code = 400

    def __init__(self, message: str = "OAuth code exchange failed", **kwargs):
        kwargs.setdefault('error_code', 'OAUTH_EXCHANGE_FAILED')
        kwargs.setdefault('user_message', 'The repository provider rejected the authorization. Please try connecting again.')
        kwargs.setdefault('troubleshooting_guide', 'Authorization codes are single-use and short-lived. Restart the connection flow.')
        super().__init__(message=message, **kwargs)


class WebhookRegistrationError(RepositoryIntegrationError):
    """
    Exception raised when the provider refuses to create the repository webhook.
    """

    def __init__(
        self,
        message: str = "Webhook registration failed",
        repository_url: Optional[str] = None,
        upstream_status: Optional[int] = None,
        **kwargs,
    ):
        kwargs.setdefault('error_code', 'WEBHOOK_REGISTRATION_FAILED')
        kwargs.setdefault('user_message', 'Could not register a webhook on the repository.')
        kwargs.setdefault('troubleshooting_guide', 'Make sure the authorizing account has admin access to the repository.')
        super().__init__(message=message, **kwargs)
        self.repository_url = repository_url
        self.upstream_status = upstream_status
        self.details.update({"repository_url": repository_url, "upstream_status": upstream_status})


class ProviderAPIError(RepositoryIntegrationError):
    """
    Exception raised when a provider REST call fails.
    """

    def __init__(
        self,
        message: str = "Provider API request failed",
        operation: Optional[str] = None,
        upstream_status: Optional[int] = None,
        **kwargs,
    ):
        kwargs.setdefault('error_code', 'PROVIDER_API_ERROR')
        kwargs.setdefault('retryable', upstream_status is None or upstream_status >= 500)
        super().__init__(message=message, **kwargs)
        self.operation = operation
        self.upstream_status = upstream_status
        self.details.update({"operation": operation, "upstream_status": upstream_status})


class ProviderRateLimitError(ProviderAPIError):
    """
    Exception raised when the provider reports an exhausted rate limit.
    """

    status_code = 429

    def __init__(self, message: str = "Provider rate limit exceeded", **kwargs):
        kwargs.setdefault('error_code', 'PROVIDER_RATE_LIMITED')
        kwargs.setdefault('user_message', 'The repository provider rate limit was reached. Please try again later.')
        kwargs.setdefault('retryable', True)
        kwargs.setdefault('severity', 'low')
        super().__init__(message=message, **kwargs)


class InvalidRepositoryUrlError(RepositoryIntegrationError):
    """
    Exception raised when a repository URL cannot be parsed for its provider.
    """

    status_code = 400

    def __init__(self, repository_url: str, service_type: Optional[str] = None, **kwargs):
        kwargs.setdefault('error_code', 'INVALID_REPOSITORY_URL')
        kwargs.setdefault('severity', 'low')
        super().__init__(
            message=f"Invalid {service_type or 'repository'} URL: {repository_url}",
            service_type=service_type,
            **kwargs,
        )
        self.repository_url = repository_url


class UnsupportedRepositoryTypeError(RepositoryIntegrationError):
    """
    Exception raised for a repository type without a registered adapter.
    """

    status_code = 400

    def __init__(self, service_type: str, **kwargs):
        kwargs.setdefault('error_code', 'UNSUPPORTED_REPOSITORY_TYPE')
        kwargs.setdefault('severity', 'low')
        super().__init__(message=f"Unsupported repository type: {service_type}", service_type=service_type, **kwargs)


class MissingCredentialsError(RepositoryIntegrationError):
    """
    Exception raised when a connection has no usable access token.
    """

    status_code = 500

    def __init__(self, connection_id: Optional[str] = None, **kwargs):
        kwargs.setdefault('error_code', 'CREDENTIALS_UNAVAILABLE')
        kwargs.setdefault('user_message', 'Repository credentials are unavailable. Please reconnect the repository.')
        super().__init__(message="Repository access token is missing or could not be decrypted", **kwargs)
        self.connection_id = connection_id
        self.details.update({"connection_id": connection_id})


class DecryptionError(BaseApplicationError):
    """
    Exception raised when stored ciphertext is corrupt, tampered with or foreign.
    """

    def __init__(self, message: str = "Failed to decrypt stored credential", **kwargs):
        kwargs.setdefault('error_code', 'DECRYPTION_FAILED')
        kwargs.setdefault('severity', 'high')
        super().__init__(message=message, **kwargs)


class ProviderNotConfiguredError(ConfigurationError):
    """
    Exception raised when the OAuth app for a provider is not configured.
    """

    def __init__(self, service_type: str, missing: Optional[list] = None, **kwargs):
        kwargs.setdefault('error_code', 'PROVIDER_NOT_CONFIGURED')
        kwargs.setdefault('user_message', f"{service_type} integration is not configured.")
        super().__init__(message=f"{service_type} OAuth is not configured", **kwargs)
        self.service_type = service_type
        self.details.update({"service_type": service_type, "missing": missing or []})


class RepositoryAlreadyLinkedError(ResourceConflictError):
    """
    Exception raised when a repository is already connected to another project.
    """

    def __init__(self, repository_url: str, conflict_project_id: str, **kwargs):
        kwargs.setdefault('error_code', 'REPOSITORY_ALREADY_LINKED')
        super().__init__(
            message=f"Repository is already connected to project {conflict_project_id}",
            resource_type="repository_connection",
            conflict_reason="repository_linked_elsewhere",
            **kwargs,
        )
        self.repository_url = repository_url
        self.conflict_project_id = conflict_project_id
        self.details.update({"repository_url": repository_url, "conflict_project_id": conflict_project_id})

    def to_user_dict(self) -> Dict[str, Any]:
        data = super().to_user_dict()
        data["conflictProjectId"] = self.conflict_project_id
        return data


class SyncConflictError(ResourceConflictError):
    """
    Exception raised when a sync is already pending or running for a repository.
    """

    def __init__(self, repository_connection_id: str, active_operation_id: Optional[str] = None, **kwargs):
        kwargs.setdefault('error_code', 'SYNC_IN_PROGRESS')
        super().__init__(
            message="A sync operation is already in progress for this repository",
            resource_type="sync_operation",
            resource_id=active_operation_id,
            conflict_reason="active_sync",
            **kwargs,
        )
        self.repository_connection_id = repository_connection_id
        self.active_operation_id = active_operation_id

    def to_user_dict(self) -> Dict[str, Any]:
        data = super().to_user_dict()
        if self.active_operation_id:
            data["activeOperationId"] = self.active_operation_id
        return data


class ConfirmationRequiredError(BaseApplicationError):
    """
    Exception raised when a sync needs an explicit confirmation flag.
    """

    status_code = 400

    def __init__(self, message: str, reason: str, **kwargs):
        kwargs.setdefault('error_code', 'CONFIRMATION_REQUIRED')
        kwargs.setdefault('severity', 'low')
        super().__init__(message=message, **kwargs)
        self.reason = reason
        self.details.update({"reason": reason})

    def to_user_dict(self) -> Dict[str, Any]:
        data = super().to_user_dict()
        data["requiresConfirmation"] = True
        return data


class SyncOperationStateError(BaseApplicationError):
    """
    Exception raised when an operation cannot move to the requested state.
    """

    status_code = 400

    def __init__(self, operation_id: str, status: str, **kwargs):
        kwargs.setdefault('error_code', 'SYNC_OPERATION_FINISHED')
        kwargs.setdefault('severity', 'low')
        super().__init__(message=f"Cannot cancel operation with status: {status}", **kwargs)
        self.operation_id = operation_id
        self.status = status
        self.details.update({"operation_id": operation_id, "status": status})


class ProjectNotFoundError(ResourceNotFoundError):
    def __init__(self, project_id: str, **kwargs):
        super().__init__(message="Project not found", resource_type="project", resource_id=project_id, **kwargs)


class RepositoryConnectionNotFoundError(ResourceNotFoundError):
    def __init__(self, connection_id: str, **kwargs):
        super().__init__(
            message="Repository connection not found",
            resource_type="repository_connection",
            resource_id=connection_id,
            **kwargs,
        )


class SyncOperationNotFoundError(ResourceNotFoundError):
    def __init__(self, operation_id: str, **kwargs):
        super().__init__(message="Sync operation not found", resource_type="sync_operation", resource_id=operation_id, **kwargs)


class SyncPermissionError(AuthorizationError):
    """
    Exception raised when the caller may not manage or sync a repository.
    """

    def __init__(self, message: str = "Permission denied", **kwargs):
        kwargs.setdefault('error_code', 'SYNC_PERMISSION_DENIED')
        kwargs.setdefault('required_permission', 'repository:sync')
        super().__init__(message=message, **kwargs)


class SyncFailedError(RepositoryIntegrationError):
    """
    Exception raised when an inline sync stops on an error.

    Issues committed before the failure stay in place; ``partial_results``
    carries their counts.
    """

    status_code = 500

    def __init__(self, message: str, partial_results: Optional[Dict[str, Any]] = None, **kwargs):
        kwargs.setdefault('error_code', 'SYNC_FAILED')
        kwargs.setdefault('user_message', message)
        super().__init__(message=message, **kwargs)
        self.partial_results = partial_results
        self.details.update({"partial_results": partial_results})
