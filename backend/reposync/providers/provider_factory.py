from typing import Dict, List, Type, Union

from reposync.exceptions.repository_exceptions import UnsupportedRepositoryTypeError
from reposync.models.repository_connection import ServiceType
from .base import ProviderAdapter
from .bitbucket import BitbucketAdapter
from .github import GitHubAdapter
from .gitlab import GitLabAdapter


class ProviderFactory:
    """Factory for creating provider adapters by repository service type."""

    _providers: Dict[ServiceType, Type[ProviderAdapter]] = {
        ServiceType.GITHUB: GitHubAdapter,
        ServiceType.GITLAB: GitLabAdapter,
        ServiceType.BITBUCKET: BitbucketAdapter,
    }

    def __init__(self, **adapter_kwargs):
        """Keyword arguments are passed to every adapter (timeouts, transport)."""
        self.adapter_kwargs = adapter_kwargs

    @classmethod
    def register_provider(cls, service_type: ServiceType, provider_class: Type[ProviderAdapter]):
        """Register a new provider type."""
        cls._providers[service_type] = provider_class

    @classmethod
    def resolve_service_type(cls, value: Union[str, ServiceType]) -> ServiceType:
        """Accept an enum member, its value ("GitHub") or a case-insensitive name."""
        if isinstance(value, ServiceType):
            return value
        for service_type in ServiceType:
            if value == service_type.value or str(value).lower() == service_type.value.lower():
                return service_type
        raise UnsupportedRepositoryTypeError(str(value))

    @classmethod
    def get_available_providers(cls) -> List[str]:
        """Get list of available provider types."""
        return [service_type.value for service_type in cls._providers]

    def create_provider(self, service_type: Union[str, ServiceType]) -> ProviderAdapter:
        """Create an adapter for a service type."""
        resolved = self.resolve_service_type(service_type)
        if resolved not in self._providers:
            raise UnsupportedRepositoryTypeError(resolved.value)
        return self._providers[resolved](**self.adapter_kwargs)
