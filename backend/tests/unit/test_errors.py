"""Tests for broker error classes and error payload rendering."""

import uuid

import pytest

from oauth_broker.core.errors import (
    GENERIC_ERROR_MESSAGE,
    AlreadyConnectedError,
    BrokerError,
    DecryptionError,
    ForbiddenError,
    InsufficientScopeError,
    InvalidGrantError,
    InvalidStateError,
    MissingCodeError,
    NotFoundError,
    ProviderError,
    SessionExpiredError,
    UnknownProviderError,
    UserDeniedError,
    ValidationError,
    to_error_payload,
)


class TestErrorCodes:
    """Each error class carries a stable code and HTTP status."""

    @pytest.mark.parametrize(
        ("error", "code", "status"),
        [
            (ValidationError("bad"), "VALIDATION_ERROR", 400),
            (InvalidStateError("google"), "INVALID_STATE", 400),
            (UserDeniedError("google"), "USER_DENIED", 400),
            (MissingCodeError("google"), "MISSING_CODE", 400),
            (InvalidGrantError("google"), "INVALID_GRANT", 400),
            (ProviderError("google", "HTTP 503"), "PROVIDER_ERROR", 502),
            (InsufficientScopeError("google", ["a"]), "INSUFFICIENT_SCOPE", 403),
            (DecryptionError(), "DECRYPTION_FAILED", 500),
            (NotFoundError("User"), "NOT_FOUND", 404),
            (ForbiddenError(), "UNAUTHORIZED", 403),
            (SessionExpiredError(), "SESSION_EXPIRED", 401),
            (AlreadyConnectedError("google"), "ALREADY_CONNECTED", 409),
            (UnknownProviderError("myspace"), "INVALID_PROVIDER", 400),
        ],
    )
    def test_code_and_status(self, error: BrokerError, code: str, status: int):
        assert error.code == code
        assert error.status_code == status

    def test_broker_errors_are_exceptions(self):
        with pytest.raises(BrokerError):
            raise InvalidGrantError("github")


class TestErrorMessages:
    def test_not_found_with_id(self):
        error = NotFoundError("Session", "abc")
        assert error.message == "Session with id 'abc' not found"

    def test_not_found_without_id(self):
        assert NotFoundError("Session").message == "Session not found"

    def test_insufficient_scope_lists_scopes(self):
        error = InsufficientScopeError("google", ["email", "calendar"])
        assert "email, calendar" in error.message
        assert error.required_scopes == ["email", "calendar"]

    def test_already_connected_carries_user_id(self):
        user_id = uuid.uuid4()
        error = AlreadyConnectedError("google", user_id=user_id)
        assert error.user_id == user_id
        assert error.provider == "google"

    def test_provider_error_includes_detail(self):
        assert "HTTP 503" in ProviderError("github", "HTTP 503").message


class TestToErrorPayload:
    """to_error_payload never leaks raw exception text."""

    def test_broker_error_payload(self):
        payload = to_error_payload(InvalidStateError("google"))
        assert payload == {
            "error": "INVALID_STATE",
            "message": "Invalid or expired state parameter",
            "provider": "google",
        }

    def test_omits_provider_when_unknown(self):
        payload = to_error_payload(SessionExpiredError())
        assert "provider" not in payload

    def test_generic_payload_for_unexpected_errors(self):
        payload = to_error_payload(RuntimeError("connection to 10.0.0.5 refused"))
        assert payload == {"error": "SERVER_ERROR", "message": GENERIC_ERROR_MESSAGE}
        assert "10.0.0.5" not in str(payload)
