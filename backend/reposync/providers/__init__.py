from .base import (
    IssuePage,
    ProviderAdapter,
    ProviderIssue,
    RepositoryRef,
    WebhookRegistration,
)
from .provider_factory import ProviderFactory

__all__ = [
    "IssuePage",
    "ProviderAdapter",
    "ProviderIssue",
    "RepositoryRef",
    "WebhookRegistration",
    "ProviderFactory",
]
