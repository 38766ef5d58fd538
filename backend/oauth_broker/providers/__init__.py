"""OAuth provider abstraction layer.

Exports:
    Provider client interface and result types
    Registry and factory for configured providers
"""

from oauth_broker.providers.base import (
    FailureKind,
    OAuthProviderClient,
    ProviderFailure,
    ProviderResult,
    TokenSet,
    UserInfo,
)
from oauth_broker.providers.http_client import (
    GITHUB,
    GOOGLE,
    HttpOAuthProvider,
    OAuthProviderConfig,
)
from oauth_broker.providers.registry import ProviderRegistry, build_provider_registry

__all__ = [
    # Interface
    "OAuthProviderClient",
    "FailureKind",
    "ProviderFailure",
    "ProviderResult",
    "TokenSet",
    "UserInfo",
    # HTTP client
    "HttpOAuthProvider",
    "OAuthProviderConfig",
    "GOOGLE",
    "GITHUB",
    # Registry
    "ProviderRegistry",
    "build_provider_registry",
]
