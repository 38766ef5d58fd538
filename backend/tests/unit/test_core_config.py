"""Tests for application configuration.

Settings for database, state signing, token encryption, refresh policy and
provider credentials. Tests cover defaults, env var loading, and production
security validation.
"""

import pytest
from pydantic import ValidationError

from oauth_broker.core.config import (
    _INSECURE_DEFAULT_PASSWORD,
    WEAK_ENCRYPTION_KEYS,
    Settings,
)

# Reusable test constants
_SECURE_DB_PASSWORD = "my-secure-production-password-123!"
_STATE_SECRET = "s" * 64
_ENCRYPTION_KEY = "9f" * 32
_PRODUCTION = "production"


def _production_settings(**overrides) -> Settings:
    values = {
        "environment": _PRODUCTION,
        "database_password": _SECURE_DB_PASSWORD,
        "state_secret": _STATE_SECRET,
        "encryption_key": _ENCRYPTION_KEY,
    }
    values.update(overrides)
    return Settings(**values)


class TestDefaults:
    """Tests for default values."""

    def test_refresh_policy_defaults(self):
        s = Settings()
        assert s.token_refresh_buffer_seconds == 300
        assert s.token_refresh_max_attempts == 3
        assert s.token_refresh_base_delay_ms == 500
        assert s.token_refresh_max_delay_ms == 5000
        assert s.unhealthy_failure_threshold == 3

    def test_session_defaults(self):
        s = Settings()
        assert s.session_duration_days == 30
        assert s.session_touch_interval_seconds == 3600

    def test_new_user_credits_default(self):
        """New users start with 500 cents."""
        assert Settings().new_user_credits == 500

    def test_database_url_uses_asyncpg(self):
        s = Settings(
            database_user="u",
            database_password="p",
            database_host="db",
            database_port=6543,
            database_name="broker",
        )
        assert s.database_url == "postgresql+asyncpg://u:p@db:6543/broker"


class TestEnvironmentLoading:
    """Tests for loading values from environment variables."""

    def test_reads_provider_credentials_from_env(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CLIENT_ID", "google-id")
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "google-secret")
        s = Settings()
        assert s.google_client_id == "google-id"
        assert s.google_client_secret.get_secret_value() == "google-secret"

    def test_secrets_are_masked_in_repr(self, monkeypatch):
        monkeypatch.setenv("STATE_SECRET", _STATE_SECRET)
        s = Settings()
        assert _STATE_SECRET not in repr(s)


class TestEncryptionKeyFormat:
    """ENCRYPTION_KEY must be 64 hex characters when set."""

    def test_accepts_hex_key(self):
        s = Settings(encryption_key=_ENCRYPTION_KEY)
        assert s.encryption_key.get_secret_value() == _ENCRYPTION_KEY

    def test_rejects_short_key(self):
        with pytest.raises(ValidationError, match="64 hex characters"):
            Settings(encryption_key="abc123")

    def test_rejects_non_hex_key(self):
        with pytest.raises(ValidationError, match="64 hex characters"):
            Settings(encryption_key="z" * 64)

    def test_empty_key_allowed_outside_production(self):
        s = Settings(environment="development", encryption_key="")
        assert s.encryption_key.get_secret_value() == ""


class TestRefreshPolicyValidation:
    def test_rejects_zero_attempts(self):
        with pytest.raises(ValidationError, match="TOKEN_REFRESH_MAX_ATTEMPTS"):
            Settings(token_refresh_max_attempts=0)

    def test_rejects_zero_threshold(self):
        with pytest.raises(ValidationError, match="UNHEALTHY_FAILURE_THRESHOLD"):
            Settings(unhealthy_failure_threshold=0)


class TestProductionSecurityValidation:
    """Tests for production security requirements."""

    def test_valid_production_settings(self):
        s = _production_settings()
        assert s.is_production is True

    def test_rejects_default_password_in_production(self):
        with pytest.raises(ValidationError) as exc_info:
            _production_settings(database_password=_INSECURE_DEFAULT_PASSWORD)

        errors = exc_info.value.errors()
        assert len(errors) == 1
        assert "Cannot use default database password in production" in str(
            errors[0]["msg"]
        )

    def test_allows_default_password_in_development(self):
        s = Settings(
            environment="development",
            database_password=_INSECURE_DEFAULT_PASSWORD,
        )
        assert s.is_production is False

    def test_rejects_short_state_secret_in_production(self):
        with pytest.raises(ValidationError, match="STATE_SECRET"):
            _production_settings(state_secret="too-short")

    def test_rejects_missing_encryption_key_in_production(self):
        with pytest.raises(ValidationError, match="ENCRYPTION_KEY must be set"):
            _production_settings(encryption_key="")

    @pytest.mark.parametrize("weak_key", sorted(WEAK_ENCRYPTION_KEYS))
    def test_rejects_weak_encryption_keys_in_production(self, weak_key):
        with pytest.raises(ValidationError, match="weak encryption keys"):
            _production_settings(encryption_key=weak_key)

    def test_weak_key_allowed_in_development(self):
        weak_key = next(iter(WEAK_ENCRYPTION_KEYS))
        s = Settings(environment="development", encryption_key=weak_key)
        assert s.encryption_key.get_secret_value() == weak_key
