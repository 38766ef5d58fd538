"""Abstract base class and result types for OAuth provider clients.

Network operations return a ProviderResult instead of raising. The failure
carries a FailureKind so the refresh coordinator decides whether to retry from
data, not from the exception type a particular HTTP library happens to raise.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")

# Used when a token response omits expires_in
DEFAULT_EXPIRES_IN_SECONDS = 3600


class FailureKind(Enum):
    """Retry classification of a provider failure.

    RECOVERABLE: network errors, timeouts, 5xx, rate limiting. Retry with
        backoff.
    NON_RECOVERABLE: the grant itself is dead (invalid_grant). Stop and ask
        the user to re-authenticate.
    """

    RECOVERABLE = "recoverable"
    NON_RECOVERABLE = "non_recoverable"


@dataclass(frozen=True)
class ProviderFailure:
    """Why a provider operation failed.

    Attributes:
        kind: Retry classification.
        message: Short description, safe to store in last_refresh_error.
        code: Provider error code when one was returned (e.g., "invalid_grant").
    """

    kind: FailureKind
    message: str
    code: str | None = None

    @property
    def recoverable(self) -> bool:
        """True when a retry may succeed."""
        return self.kind is FailureKind.RECOVERABLE


@dataclass(frozen=True)
class ProviderResult(Generic[T]):
    """Value-or-failure outcome of a provider call."""

    value: T | None = None
    failure: ProviderFailure | None = None

    @property
    def ok(self) -> bool:
        """True when the call succeeded."""
        return self.failure is None

    @classmethod
    def success(cls, value: T) -> "ProviderResult[T]":
        return cls(value=value)

    @classmethod
    def fail(
        cls,
        kind: FailureKind,
        message: str,
        code: str | None = None,
    ) -> "ProviderResult[T]":
        return cls(failure=ProviderFailure(kind=kind, message=message, code=code))


@dataclass(frozen=True)
class TokenSet:
    """Tokens returned by a code exchange or refresh.

    Attributes:
        access_token: Bearer token for provider APIs.
        refresh_token: New refresh token, if the provider rotated or issued one.
        expires_in: Lifetime in seconds, if reported.
        token_type: Usually "Bearer".
        scope: Space-separated granted scopes, if reported.
    """

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    @property
    def scopes(self) -> list[str]:
        """Granted scopes as a list."""
        return self.scope.split() if self.scope else []


@dataclass(frozen=True)
class UserInfo:
    """Identity reported by the provider for an access token."""

    id: str
    email: str
    name: str | None = None
    picture: str | None = None
    email_verified: bool | None = None


class OAuthProviderClient(ABC):
    """Abstract interface every OAuth provider client implements.

    WHY ABSTRACT:
    - Services depend on this capability set, never on a concrete HTTP client
    - Tests swap in MockOAuthProvider
    - New providers plug in through the registry without touching services

    Attributes:
        scopes: Scopes requested on the authorization URL.
        required_scopes: Scopes that must be granted for the connection to be
            usable.
        supports_pkce: Whether the flow should send a PKCE challenge.
    """

    scopes: list[str] = []
    required_scopes: list[str] = []
    supports_pkce: bool = True

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name used as the registry key (e.g., "google")."""

    @abstractmethod
    def get_authorization_url(
        self,
        state: str,
        code_challenge: str | None = None,
    ) -> str:
        """Build the provider consent URL.

        Args:
            state: Signed CSRF state token.
            code_challenge: PKCE S256 challenge, if the flow uses PKCE.
        """

    @abstractmethod
    async def exchange_code(
        self,
        code: str,
        code_verifier: str | None = None,
    ) -> ProviderResult[TokenSet]:
        """Exchange an authorization code for tokens."""

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> ProviderResult[TokenSet]:
        """Obtain a new access token from a refresh token."""

    @abstractmethod
    async def get_user_info(self, access_token: str) -> ProviderResult[UserInfo]:
        """Fetch the identity behind an access token."""

    def validate_scopes(self, granted_scopes: str | None) -> bool:
        """Check that every required scope was granted.

        Args:
            granted_scopes: Space-separated scope string from the token
                response.

        Returns:
            True if all required scopes are present.
        """
        if not granted_scopes:
            return not self.required_scopes
        granted = set(granted_scopes.split())
        return all(scope in granted for scope in self.required_scopes)
