"""OAuth state parameter and PKCE utilities.

The state parameter is a signed, self-contained JWT round-tripped through the
provider. It binds the callback to the request that started the flow and
needs no server-side storage.
"""

import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass

import jwt

from oauth_broker.core.errors import InvalidStateError

logger = logging.getLogger(__name__)

# State lifetime (10 minutes)
STATE_TTL_SECONDS = 600

_ALGORITHM = "HS256"

# CSRF nonce size in bytes
_NONCE_BYTES = 32

# PKCE code verifier length (RFC 7636 allows 43-128)
_VERIFIER_LENGTH = 128

# Characters allowed in PKCE code verifier (RFC 7636 §4.1)
# unreserved = ALPHA / DIGIT / "-" / "." / "_" / "~"
_UNRESERVED_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"


def generate_code_verifier() -> str:
    """Generate a PKCE code verifier.

    RFC 7636 §4.1: 128-character string from unreserved characters.

    Returns:
        Random 128-character code verifier string.
    """
    return "".join(secrets.choice(_UNRESERVED_CHARS) for _ in range(_VERIFIER_LENGTH))


def generate_code_challenge(verifier: str) -> str:
    """Generate a PKCE code challenge from a verifier.

    RFC 7636 §4.2: BASE64URL(SHA256(code_verifier)), no padding.

    Args:
        verifier: PKCE code verifier string.

    Returns:
        Base64url-encoded SHA256 hash without padding.
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class StatePayload:
    """Decoded contents of a validated state token.

    Attributes:
        csrf: Random nonce.
        provider: Provider the flow was started for.
        timestamp: Issuance time in epoch milliseconds.
        redirect_url: Where the client wants to land after login.
    """

    csrf: str
    provider: str
    timestamp: int
    redirect_url: str | None = None


class CSRFStateManager:
    """Issues and validates signed OAuth state tokens.

    Holds only the signing secret, so it is safe to share.

    Args:
        secret: HMAC signing secret.
        ttl_seconds: State lifetime.
    """

    def __init__(self, secret: str, *, ttl_seconds: int = STATE_TTL_SECONDS) -> None:
        if not secret:
            raise ValueError("State signing secret is required")
        self._secret = secret
        self._ttl_seconds = ttl_seconds

    def create_state(self, provider: str, redirect_url: str | None = None) -> str:
        """Create a signed state token for a new authorization request.

        Args:
            provider: Provider name the flow is started for.
            redirect_url: Optional post-login destination.

        Returns:
            Opaque signed token for the `state` query parameter.
        """
        now = time.time()
        payload: dict[str, object] = {
            "csrf": secrets.token_urlsafe(_NONCE_BYTES),
            "provider": provider,
            "timestamp": int(now * 1000),
            "exp": int(now) + self._ttl_seconds,
        }
        if redirect_url is not None:
            payload["redirect_url"] = redirect_url
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def validate_state(
        self,
        token: str,
        expected_provider: str | None = None,
    ) -> StatePayload:
        """Validate a state token from a callback.

        Signature comparison happens inside PyJWT (hmac.compare_digest).
        Expiry is checked twice: by the embedded `exp` claim and by the
        elapsed time since `timestamp`.

        Args:
            token: Value of the `state` query parameter.
            expected_provider: Provider from the callback path, if known.

        Returns:
            Decoded StatePayload.

        Raises:
            InvalidStateError: If the token is forged, expired, malformed, or
                issued for a different provider.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"require": ["exp"]},
            )
        except jwt.InvalidTokenError:
            raise InvalidStateError(expected_provider) from None

        try:
            payload = StatePayload(
                csrf=str(claims["csrf"]),
                provider=str(claims["provider"]),
                timestamp=int(claims["timestamp"]),
                redirect_url=claims.get("redirect_url"),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidStateError(expected_provider) from None

        elapsed_ms = int(time.time() * 1000) - payload.timestamp
        if elapsed_ms > self._ttl_seconds * 1000:
            raise InvalidStateError(expected_provider)

        if expected_provider is not None and payload.provider != expected_provider:
            logger.warning(
                "OAuth state provider mismatch",
                extra={"expected": expected_provider, "actual": payload.provider},
            )
            raise InvalidStateError(expected_provider)

        return payload
