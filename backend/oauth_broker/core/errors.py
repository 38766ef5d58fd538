"""Broker error classes.

Every failure a caller can observe carries a machine-readable code, a
message that is safe to show to an end user, and an HTTP status for the
outer API layer.

WHY CUSTOM ERROR CLASSES:
- Consistent error payload for callback redirects and internal API calls
- Easy to map to HTTP status codes at the edge
- Type-safe error handling in services and stores
"""

from typing import Any

# Shown instead of raw exception text for anything that is not a BrokerError
GENERIC_ERROR_MESSAGE = "An error occurred during authentication"


class BrokerError(Exception):
    """Base class for broker errors.

    Attributes:
        code: Machine-readable error code (e.g., "INVALID_STATE").
        message: Human-readable message, safe to expose.
        status_code: HTTP status code to return.
        provider: OAuth provider the error relates to, if any.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        provider: str | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


class ValidationError(BrokerError):
    """Caller passed an invalid argument (400)."""

    def __init__(self, message: str) -> None:
        super().__init__(code="VALIDATION_ERROR", message=message, status_code=400)


class InvalidStateError(BrokerError):
    """CSRF state is forged, expired, malformed or for another provider (400)."""

    def __init__(self, provider: str | None = None) -> None:
        super().__init__(
            code="INVALID_STATE",
            message="Invalid or expired state parameter",
            status_code=400,
            provider=provider,
        )


class UserDeniedError(BrokerError):
    """User refused consent at the provider (400)."""

    def __init__(self, provider: str | None = None) -> None:
        super().__init__(
            code="USER_DENIED",
            message="User denied the authorization request",
            status_code=400,
            provider=provider,
        )


class MissingCodeError(BrokerError):
    """Callback arrived without an authorization code (400)."""

    def __init__(self, provider: str | None = None) -> None:
        super().__init__(
            code="MISSING_CODE",
            message="Authorization code is missing",
            status_code=400,
            provider=provider,
        )


class InvalidGrantError(BrokerError):
    """Grant is invalid, expired or revoked; re-authentication required (400).

    Never retried.
    """

    def __init__(self, provider: str | None = None) -> None:
        super().__init__(
            code="INVALID_GRANT",
            message="The authorization grant is invalid, expired, or revoked",
            status_code=400,
            provider=provider,
        )


class ProviderError(BrokerError):
    """Transient provider failure that outlived the retry budget (502)."""

    def __init__(self, provider: str | None, detail: str) -> None:
        super().__init__(
            code="PROVIDER_ERROR",
            message=f"OAuth provider error: {detail}",
            status_code=502,
            provider=provider,
        )


class InsufficientScopeError(BrokerError):
    """User did not grant every required scope (403)."""

    def __init__(self, provider: str, required_scopes: list[str]) -> None:
        super().__init__(
            code="INSUFFICIENT_SCOPE",
            message=(
                "User did not grant required permissions: "
                f"{', '.join(required_scopes)}"
            ),
            status_code=403,
            provider=provider,
        )
        self.required_scopes = list(required_scopes)


class DecryptionError(BrokerError):
    """Stored token failed authentication (500).

    Fatal for the record it came from, not for the process. Signals tampering
    or an encryption key that does not match the one used to write the row.
    """

    def __init__(self, message: str = "Stored token could not be decrypted") -> None:
        super().__init__(code="DECRYPTION_FAILED", message=message, status_code=500)


class NotFoundError(BrokerError):
    """Resource not found (404).

    WHY NOT SEPARATE "FORBIDDEN" FOR LOOKUPS:
    - Revealing "exists but not yours" leaks information
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(code="NOT_FOUND", message=message, status_code=404)


class ForbiddenError(BrokerError):
    """Authenticated caller does not own the resource (403)."""

    def __init__(self, message: str = "Unauthorized to access this resource") -> None:
        super().__init__(code="UNAUTHORIZED", message=message, status_code=403)


class SessionExpiredError(BrokerError):
    """Session is past its expiry and can no longer be extended (401)."""

    def __init__(self) -> None:
        super().__init__(
            code="SESSION_EXPIRED",
            message="Session has expired. Please create a new session.",
            status_code=401,
        )


class AlreadyConnectedError(BrokerError):
    """This exact email already has this provider connected (409).

    Attributes:
        user_id: Owner of the existing connection, for callers that treat the
            condition as a returning login rather than a linking attempt.
    """

    def __init__(self, provider: str, user_id: Any = None) -> None:
        super().__init__(
            code="ALREADY_CONNECTED",
            message="This provider is already connected to your account",
            status_code=409,
            provider=provider,
        )
        self.user_id = user_id


class UnknownProviderError(BrokerError):
    """Provider name is not registered (400)."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            code="INVALID_PROVIDER",
            message=f"OAuth provider '{provider}' is not supported",
            status_code=400,
            provider=provider,
        )


def to_error_payload(error: BaseException) -> dict[str, Any]:
    """Render an exception as a structured error object.

    Broker errors expose their own code and message. Anything else becomes a
    generic server error so raw exception text never reaches a client.

    Args:
        error: Exception raised while serving a request.

    Returns:
        Dict with "error", "message" and, when known, "provider".
    """
    if isinstance(error, BrokerError):
        payload: dict[str, Any] = {"error": error.code, "message": error.message}
        if error.provider:
            payload["provider"] = error.provider
        return payload
    return {"error": "SERVER_ERROR", "message": GENERIC_ERROR_MESSAGE}
