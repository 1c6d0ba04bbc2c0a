"""
Base exception classes for the application.

Every error carries the HTTP status it maps to, so the API layer renders it
without a per-type lookup table. ``to_user_dict`` is what clients see;
``to_dict`` is the full record used for logging.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone
import traceback


class BaseApplicationError(Exception):
    """
    Root of the application error hierarchy.

    Keyword arguments that are not recognised below are merged into
    ``details``, which subclasses use to attach ids and upstream context.
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        user_message: Optional[str] = None,
        troubleshooting_guide: Optional[str] = None,
        severity: str = "medium",
        retryable: bool = False,
        status_code: Optional[int] = None,
        **extra: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.user_message = user_message or message
        self.troubleshooting_guide = troubleshooting_guide
        self.severity = severity
        self.retryable = retryable
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)
        if status_code is not None:
            self.status_code = status_code

        self.details: Dict[str, Any] = {**(details or {}), **extra}
        if original_exception is not None:
            self.details["cause"] = self._describe_cause(original_exception)

    @staticmethod
    def _describe_cause(exc: BaseException) -> Dict[str, Any]:
        cause: Dict[str, Any] = {"type": exc.__class__.__name__, "message": str(exc)}
        if exc.__traceback__ is not None:
            cause["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return cause

    def to_dict(self) -> Dict[str, Any]:
        """Full record for logs. May contain internal details."""
        return {
            "error_type": self.__class__.__name__,
            "status_code": self.status_code,
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "severity": self.severity,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_user_dict(self) -> Dict[str, Any]:
        """Client-facing body. Subclasses add their own keys on top."""
        return {
            "error": self.user_message,
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        if self.error_code:
            return f"{self.message} [{self.error_code}]"
        return self.message


class AuthorizationError(BaseApplicationError):
    """The caller's role does not allow the operation."""

    status_code = 403

    def __init__(
        self,
        message: str = "Access denied",
        required_permission: Optional[str] = None,
        user_role: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault('error_code', 'AUTHORIZATION_ERROR')
        kwargs.setdefault('user_message', "You don't have permission to perform this action.")
        kwargs.setdefault('troubleshooting_guide', 'Ask a project administrator for the admin or member role.')
        super().__init__(message=message, **kwargs)
        self.required_permission = required_permission
        self.user_role = user_role
        self.details.update({"required_permission": required_permission, "user_role": user_role})


class ResourceNotFoundError(BaseApplicationError):
    """A project, connection or operation id did not resolve."""

    status_code = 404

    def __init__(
        self,
        message: str = "Resource not found",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault('error_code', 'RESOURCE_NOT_FOUND')
        kwargs.setdefault('severity', 'low')
        super().__init__(message=message, **kwargs)
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.details.update({"resource_type": resource_type, "resource_id": resource_id})


class ResourceConflictError(BaseApplicationError):
    """The request collides with existing state (an active sync, a linked repository)."""

    status_code = 409

    def __init__(
        self,
        message: str = "Resource conflict",
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        conflict_reason: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault('error_code', 'RESOURCE_CONFLICT')
        kwargs.setdefault('severity', 'low')
        super().__init__(message=message, **kwargs)
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.conflict_reason = conflict_reason
        self.details.update(
            {"resource_type": resource_type, "resource_id": resource_id, "conflict_reason": conflict_reason}
        )


class ConfigurationError(BaseApplicationError):
    """A required setting is missing, so the feature is unavailable."""

    status_code = 503

    def __init__(self, message: str = "Configuration error", config_key: Optional[str] = None, **kwargs):
        kwargs.setdefault('error_code', 'CONFIGURATION_ERROR')
        kwargs.setdefault('user_message', 'This feature is not configured on the server.')
        kwargs.setdefault('troubleshooting_guide', 'Check the provider client id and secret in the environment.')
        kwargs.setdefault('severity', 'high')
        super().__init__(message=message, **kwargs)
        self.config_key = config_key
        self.details.update({"config_key": config_key})
