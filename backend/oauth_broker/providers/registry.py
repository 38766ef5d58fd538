"""Name-keyed registry of OAuth provider clients.

Services resolve providers by the name in the request path. Adding a provider
means registering another OAuthProviderClient; no service changes.
"""

import logging
from typing import TYPE_CHECKING

from oauth_broker.core.errors import UnknownProviderError
from oauth_broker.providers.base import OAuthProviderClient
from oauth_broker.providers.http_client import BUILTIN_PROVIDERS, HttpOAuthProvider

if TYPE_CHECKING:
    import httpx

    from oauth_broker.core.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Mapping of provider name -> client."""

    def __init__(self, providers: list[OAuthProviderClient] | None = None) -> None:
        self._providers: dict[str, OAuthProviderClient] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: OAuthProviderClient) -> None:
        """Add or replace a provider under its own name."""
        self._providers[provider.name] = provider

    def get(self, name: str) -> OAuthProviderClient | None:
        return self._providers.get(name)

    def require(self, name: str) -> OAuthProviderClient:
        """Get a provider or raise.

        Raises:
            UnknownProviderError: If no provider is registered under name.
        """
        provider = self._providers.get(name)
        if provider is None:
            raise UnknownProviderError(name)
        return provider

    def has(self, name: str) -> bool:
        return name in self._providers

    def list(self) -> list[str]:
        """Registered provider names in registration order."""
        return list(self._providers)

    def clear(self) -> None:
        self._providers.clear()


def build_provider_registry(
    settings: "Settings",
    *,
    transport: "httpx.AsyncBaseTransport | None" = None,
) -> ProviderRegistry:
    """Create a registry with every built-in provider that has credentials.

    Args:
        settings: Application settings holding client ids and secrets.
        transport: Optional httpx transport shared by all clients.

    Returns:
        ProviderRegistry with the configured providers.
    """
    registry = ProviderRegistry()
    for name, config in BUILTIN_PROVIDERS.items():
        client_id: str = getattr(settings, f"{name}_client_id")
        if not client_id:
            logger.info("OAuth provider not configured", extra={"provider": name})
            continue
        client_secret = getattr(settings, f"{name}_client_secret").get_secret_value()
        registry.register(
            HttpOAuthProvider(
                config,
                client_id=client_id,
                client_secret=client_secret,
                redirect_uri=getattr(settings, f"{name}_redirect_uri"),
                timeout=settings.provider_timeout_seconds,
                transport=transport,
            )
        )
    return registry
