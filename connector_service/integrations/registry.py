"""Provider registry keyed by provider id."""

from typing import Dict, Type, Optional

from connector_service.core.exceptions import UnknownProvider
from connector_service.integrations.base import BaseProvider


class ProviderRegistry:
    """Registry for provider implementations."""

    _providers: Dict[str, Type[BaseProvider]] = {}

    @classmethod
    def register(cls, provider_id: str):
        """Decorator to register a provider class."""
        def decorator(provider_class: Type[BaseProvider]):
            provider_class.provider_id = provider_id
            cls._providers[provider_id] = provider_class
            return provider_class
        return decorator

    @classmethod
    def get(cls, provider_id: str) -> Optional[Type[BaseProvider]]:
        """Get provider class by id."""
        return cls._providers.get(provider_id)

    @classmethod
    def require(cls, provider_id: str) -> Type[BaseProvider]:
        provider_class = cls.get(provider_id)
        if provider_class is None:
            raise UnknownProvider(f"Unknown provider: {provider_id}", provider_id)
        return provider_class

    @classmethod
    def list_types(cls) -> list[str]:
        """List all registered provider ids."""
        return list(cls._providers.keys())
