"""OAuth authorization-code flow orchestration.

Ties the CSRF state manager, provider clients, account linking, token
encryption and sessions together:

    initiate_oauth   -> signed state (+ PKCE) -> provider consent URL
    handle_callback  -> validate state -> exchange code -> check scopes
                     -> fetch identity -> ONE transaction:
                        resolve user, upsert encrypted connection, create session

Nothing is persisted until every provider round-trip has succeeded and the
granted scopes are sufficient. The database writes commit together or not
at all.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

from oauth_broker.core.crypto import TokenCipher
from oauth_broker.core.errors import (
    AlreadyConnectedError,
    InsufficientScopeError,
    InvalidGrantError,
    InvalidStateError,
    MissingCodeError,
    NotFoundError,
    ProviderError,
    UserDeniedError,
    to_error_payload,
)
from oauth_broker.core.oauth_state import (
    CSRFStateManager,
    generate_code_challenge,
    generate_code_verifier,
)
from oauth_broker.providers.base import DEFAULT_EXPIRES_IN_SECONDS, FailureKind
from oauth_broker.providers.registry import ProviderRegistry
from oauth_broker.services.account_linking import LinkingAction, SecureAccountLinking
from oauth_broker.services.session_manager import SessionManager, SessionResponse
from oauth_broker.storage.base import Store, normalize_email

logger = logging.getLogger(__name__)

DEFAULT_NEW_USER_CREDITS = 500


@dataclass(frozen=True)
class AuthorizationRequest:
    """Everything the caller needs to redirect the user to the provider.

    Attributes:
        url: Provider consent URL.
        state: Signed state token embedded in the URL.
        code_verifier: PKCE verifier to keep for the callback (None if the
            provider does not use PKCE).
    """

    url: str
    state: str
    code_verifier: str | None = None


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of a successful callback.

    Attributes:
        user_id: Resolved or created user.
        email: User's primary email.
        credits: Current balance in cents.
        is_new_user: Whether the callback created the user.
        provider: Provider the user logged in with.
        session: Newly issued session.
        redirect_url: Post-login destination carried in the state, if any.
    """

    user_id: uuid.UUID
    email: str
    credits: int
    is_new_user: bool
    provider: str
    session: SessionResponse
    redirect_url: str | None = None


class OAuthFlowService:
    """Runs the authorization-code flow.

    Args:
        store: Persistence.
        providers: Provider registry.
        state_manager: Issues and validates state tokens.
        cipher: Encrypts tokens before storage.
        linking: Account-linking engine.
        sessions: Session manager.
        frontend_url: Base URL for success and error redirects.
        new_user_credits: Starting balance for new users, in cents.
    """

    def __init__(
        self,
        *,
        store: Store,
        providers: ProviderRegistry,
        state_manager: CSRFStateManager,
        cipher: TokenCipher,
        linking: SecureAccountLinking,
        sessions: SessionManager,
        frontend_url: str,
        new_user_credits: int = DEFAULT_NEW_USER_CREDITS,
    ) -> None:
        self._store = store
        self._providers = providers
        self._state_manager = state_manager
        self._cipher = cipher
        self._linking = linking
        self._sessions = sessions
        self._frontend_url = frontend_url.rstrip("/")
        self._new_user_credits = new_user_credits

    def initiate_oauth(
        self,
        provider: str,
        redirect_url: str | None = None,
    ) -> AuthorizationRequest:
        """Start a flow for a provider.

        Raises:
            UnknownProviderError: If the provider is not registered.
        """
        client = self._providers.require(provider)
        state = self._state_manager.create_state(provider, redirect_url)

        code_verifier = None
        code_challenge = None
        if client.supports_pkce:
            code_verifier = generate_code_verifier()
            code_challenge = generate_code_challenge(code_verifier)

        url = client.get_authorization_url(state, code_challenge)
        logger.info("OAuth flow initiated", extra={"provider": provider})
        return AuthorizationRequest(url=url, state=state, code_verifier=code_verifier)

    async def handle_callback(
        self,
        provider: str,
        code: str | None,
        state: str | None,
        error: str | None = None,
        code_verifier: str | None = None,
        session_metadata: dict[str, Any] | None = None,
    ) -> CallbackResult:
        """Complete a flow from the provider's redirect.

        Args:
            provider: Provider name from the callback path.
            code: Authorization code query parameter.
            state: State query parameter.
            error: Error query parameter, if the provider sent one.
            code_verifier: PKCE verifier saved by initiate_oauth's caller.
            session_metadata: Client details stored on the new session.

        Returns:
            CallbackResult with the user and session.

        Raises:
            UserDeniedError: If the user refused consent.
            MissingCodeError: If no authorization code arrived.
            InvalidStateError: If the state is missing, invalid, expired or
                for another provider.
            UnknownProviderError: If the provider is not registered.
            InvalidGrantError: If the code was rejected.
            ProviderError: If a provider call failed.
            InsufficientScopeError: If required scopes were not granted.
        """
        if error == "access_denied":
            raise UserDeniedError(provider)
        if not code:
            raise MissingCodeError(provider)
        if not state:
            raise InvalidStateError(provider)

        payload = self._state_manager.validate_state(state, expected_provider=provider)
        client = self._providers.require(provider)

        exchanged = await client.exchange_code(code, code_verifier)
        if exchanged.failure is not None or exchanged.value is None:
            message = exchanged.failure.message if exchanged.failure else "No tokens"
            if exchanged.failure and exchanged.failure.kind is FailureKind.NON_RECOVERABLE:
                raise InvalidGrantError(provider)
            raise ProviderError(provider, message)
        tokens = exchanged.value

        if not client.validate_scopes(tokens.scope):
            logger.warning("OAuth callback missing required scopes", extra={"provider": provider})
            raise InsufficientScopeError(provider, client.required_scopes or client.scopes)

        identity = await client.get_user_info(tokens.access_token)
        if identity.failure is not None or identity.value is None:
            message = identity.failure.message if identity.failure else "No user info"
            raise ProviderError(provider, message)
        email = normalize_email(identity.value.email)

        expires_at = datetime.now(UTC) + timedelta(
            seconds=tokens.expires_in or DEFAULT_EXPIRES_IN_SECONDS
        )
        encrypted_access = self._cipher.encrypt(tokens.access_token)
        encrypted_refresh = (
            self._cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None
        )

        async with self._store.transaction() as tx:
            user_id, is_new_user = await self._resolve_user(tx, email, provider)

            await tx.upsert_connection(
                user_id=user_id,
                provider=provider,
                email=email,
                scopes=tokens.scopes or list(client.scopes),
                access_token=encrypted_access,
                refresh_token=encrypted_refresh,
                expires_at=expires_at,
            )
            session = await self._sessions.create_session(
                user_id, session_metadata, store=tx
            )
            user = await tx.get_user(user_id)
            if user is None:
                raise NotFoundError("User", str(user_id))

        logger.info(
            "OAuth callback completed",
            extra={
                "provider": provider,
                "user_id": str(user_id),
                "is_new_user": is_new_user,
            },
        )
        return CallbackResult(
            user_id=user.id,
            email=user.primary_email,
            credits=user.credits,
            is_new_user=is_new_user,
            provider=provider,
            session=session,
            redirect_url=payload.redirect_url,
        )

    async def _resolve_user(
        self,
        tx: Store,
        email: str,
        provider: str,
    ) -> tuple[uuid.UUID, bool]:
        """Map a verified identity to a user id, creating the user if needed.

        Returns:
            (user_id, is_new_user)
        """
        try:
            decision = await self._linking.check_existing_account(
                email, provider, store=tx
            )
        except AlreadyConnectedError as e:
            # Returning login with an already connected account
            return e.user_id, False

        if (
            decision.action is LinkingAction.ADD_TO_EXISTING
            and decision.existing_user_id is not None
        ):
            return decision.existing_user_id, False

        user = await tx.create_user(
            primary_email=email,
            provider=provider,
            credits=self._new_user_credits,
        )
        return user.id, True

    def error_redirect_url(self, error: BaseException, provider: str) -> str:
        """Frontend URL that reports a failed callback.

        Broker errors carry their own safe message; anything else gets a
        generic one so internal details never reach the browser.
        """
        payload = to_error_payload(error)
        query = urlencode(
            {
                "error": payload["error"],
                "message": payload["message"],
                "provider": provider,
            }
        )
        return f"{self._frontend_url}/auth/error?{query}"

    def success_redirect_url(self, result: CallbackResult) -> str:
        """Frontend URL that completes a successful callback."""
        query = urlencode(
            {
                "session_url": result.session.session_url,
                "email": result.email,
                "credits": str(result.credits),
                "is_new_user": "true" if result.is_new_user else "false",
            }
        )
        return f"{self._frontend_url}/auth/success?{query}"
