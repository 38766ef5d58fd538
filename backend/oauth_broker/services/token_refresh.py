"""Token refresh coordination.

Hands out live access tokens for a (user, provider) pair. Tokens that are
still comfortably valid are returned directly. Tokens inside the refresh
buffer are refreshed through a single-flight map, so concurrent callers
share one upstream refresh sequence and all observe its outcome.

Retry policy:
- NON_RECOVERABLE failure (invalid_grant, missing refresh token) -> stop, 1 attempt
- RECOVERABLE failure (timeout, network, 5xx, 429) -> up to max_attempts
  with exponential backoff and jitter

Health tracking:
- Success resets refresh_failure_count to 0 and marks the connection healthy
- Each terminal failure increments the count; the connection turns
  unhealthy once the count reaches unhealthy_failure_threshold
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from oauth_broker.core.crypto import TokenCipher
from oauth_broker.core.errors import InvalidGrantError, NotFoundError, ProviderError
from oauth_broker.core.retry import RetryPolicy, retry_while
from oauth_broker.core.single_flight import SingleFlight
from oauth_broker.providers.base import (
    DEFAULT_EXPIRES_IN_SECONDS,
    FailureKind,
    ProviderFailure,
    ProviderResult,
    TokenSet,
)
from oauth_broker.providers.registry import ProviderRegistry
from oauth_broker.storage.base import ConnectionRecord, Store

logger = logging.getLogger(__name__)

# Refresh when the token expires within this window (5 minutes)
DEFAULT_REFRESH_BUFFER_SECONDS = 300

DEFAULT_UNHEALTHY_THRESHOLD = 3

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class AccessToken:
    """Live access token handed to a caller.

    Attributes:
        token: Plaintext access token.
        expires_at: Expiry, if known.
        scopes: Granted scopes.
        refreshed: Whether this call triggered (or joined) a refresh.
    """

    token: str
    expires_at: datetime | None
    scopes: list[str]
    refreshed: bool = False


def refresh_key(user_id: uuid.UUID, provider: str) -> str:
    """Single-flight key for a user's provider connection."""
    return f"{user_id}:{provider}"


class TokenRefreshCoordinator:
    """Returns valid access tokens, refreshing them when needed.

    Args:
        store: Persistence.
        cipher: Token cipher for the stored ciphertext.
        providers: Provider registry.
        single_flight: Shared in-flight refresh map (one per process).
        retry_policy: Attempt budget and backoff shape.
        refresh_buffer_seconds: Refresh when expiry is closer than this.
        unhealthy_threshold: Failure count that marks a connection unhealthy.
        provider_timeout_seconds: Bound on each upstream refresh attempt.
    """

    def __init__(
        self,
        *,
        store: Store,
        cipher: TokenCipher,
        providers: ProviderRegistry,
        single_flight: SingleFlight,
        retry_policy: RetryPolicy | None = None,
        refresh_buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        unhealthy_threshold: int = DEFAULT_UNHEALTHY_THRESHOLD,
        provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._providers = providers
        self._single_flight = single_flight
        self._retry_policy = retry_policy or RetryPolicy()
        self._refresh_buffer = timedelta(seconds=refresh_buffer_seconds)
        self._unhealthy_threshold = unhealthy_threshold
        self._provider_timeout = provider_timeout_seconds

    async def get_valid_token(self, user_id: uuid.UUID, provider: str) -> AccessToken:
        """Return a live access token for the user's provider connection.

        Args:
            user_id: Owner of the connection.
            provider: Provider name.

        Returns:
            AccessToken with the plaintext token.

        Raises:
            NotFoundError: If the user has no connection for the provider.
            InvalidGrantError: If the grant is dead; the user must reconnect.
            ProviderError: If the provider kept failing transiently.
            DecryptionError: If the stored token does not authenticate.
        """
        connection = await self._store.get_connection(user_id, provider)
        if connection is None:
            raise NotFoundError("OAuth connection", provider)

        if not self._needs_refresh(connection):
            access_token = self._cipher.decrypt_or_raise(connection.access_token)
            await self._store.update_connection(
                connection.id, last_used_at=datetime.now(UTC)
            )
            return AccessToken(
                token=access_token,
                expires_at=connection.expires_at,
                scopes=connection.scopes,
            )

        return await self._single_flight.run(
            refresh_key(user_id, provider),
            lambda: self._refresh(user_id, provider),
        )

    def _needs_refresh(self, connection: ConnectionRecord) -> bool:
        if connection.expires_at is None:
            return False
        return connection.expires_at - datetime.now(UTC) <= self._refresh_buffer

    async def _refresh(self, user_id: uuid.UUID, provider: str) -> AccessToken:
        # Re-read inside the flight; the row may have changed since the check
        connection = await self._store.get_connection(user_id, provider)
        if connection is None:
            raise NotFoundError("OAuth connection", provider)
        if not self._needs_refresh(connection):
            # A flight that settled just before this one already refreshed it
            return AccessToken(
                token=self._cipher.decrypt_or_raise(connection.access_token),
                expires_at=connection.expires_at,
                scopes=connection.scopes,
            )

        try:
            if not connection.refresh_token:
                result: ProviderResult[TokenSet] = ProviderResult.fail(
                    FailureKind.NON_RECOVERABLE,
                    "No refresh token available",
                    code="invalid_grant",
                )
            else:
                refresh_token = self._cipher.decrypt_or_raise(connection.refresh_token)
                result = await self._refresh_with_retries(provider, refresh_token)
        except Exception as e:
            await self._record_failure(connection, type(e).__name__)
            raise

        if result.failure is not None or result.value is None:
            failure = result.failure or ProviderFailure(
                FailureKind.RECOVERABLE, "Empty token response"
            )
            await self._record_failure(connection, failure.message)
            if failure.kind is FailureKind.NON_RECOVERABLE:
                raise InvalidGrantError(provider)
            raise ProviderError(provider, failure.message)

        return await self._record_success(connection, result.value)

    async def _refresh_with_retries(
        self,
        provider: str,
        refresh_token: str,
    ) -> ProviderResult[TokenSet]:
        client = self._providers.require(provider)

        async def attempt() -> ProviderResult[TokenSet]:
            try:
                return await asyncio.wait_for(
                    client.refresh_token(refresh_token),
                    timeout=self._provider_timeout,
                )
            except TimeoutError:
                logger.warning(
                    "Token refresh timed out",
                    extra={"provider": provider, "timeout": self._provider_timeout},
                )
                return ProviderResult.fail(FailureKind.RECOVERABLE, "Request timed out")

        return await retry_while(
            attempt,
            self._retry_policy,
            lambda r: r.failure is not None and r.failure.recoverable,
        )

    async def _record_success(
        self,
        connection: ConnectionRecord,
        tokens: TokenSet,
    ) -> AccessToken:
        now = datetime.now(UTC)
        expires_in = tokens.expires_in or DEFAULT_EXPIRES_IN_SECONDS
        expires_at = now + timedelta(seconds=expires_in)

        fields: dict[str, object] = {
            "access_token": self._cipher.encrypt(tokens.access_token),
            "expires_at": expires_at,
            "refresh_failure_count": 0,
            "is_healthy": True,
            "last_refresh_error": None,
            "last_refresh_attempt": now,
            "last_used_at": now,
        }
        # Keep the stored refresh token unless the provider rotated it
        if tokens.refresh_token:
            fields["refresh_token"] = self._cipher.encrypt(tokens.refresh_token)

        await self._store.update_connection(connection.id, **fields)
        logger.info(
            "Token refreshed",
            extra={"provider": connection.provider, "connection_id": str(connection.id)},
        )
        return AccessToken(
            token=tokens.access_token,
            expires_at=expires_at,
            scopes=tokens.scopes or connection.scopes,
            refreshed=True,
        )

    async def _record_failure(self, connection: ConnectionRecord, message: str) -> None:
        count = connection.refresh_failure_count + 1
        is_healthy = count < self._unhealthy_threshold
        await self._store.update_connection(
            connection.id,
            refresh_failure_count=count,
            is_healthy=is_healthy,
            last_refresh_error=message,
            last_refresh_attempt=datetime.now(UTC),
        )
        logger.warning(
            "Token refresh failed",
            extra={
                "provider": connection.provider,
                "connection_id": str(connection.id),
                "failure_count": count,
                "is_healthy": is_healthy,
            },
        )
