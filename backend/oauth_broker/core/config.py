"""Application configuration loaded from environment variables.

Settings for the database, OAuth state signing, token encryption, token
refresh policy, sessions, and OAuth provider credentials. Uses
pydantic-settings for validation and .env file support.
"""

import re

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_production_security() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "oauth_broker_dev_password"  # nosec B105

# Minimum length for STATE_SECRET in production (256 bits = 32 bytes)
_MIN_STATE_SECRET_LENGTH = 32

# ENCRYPTION_KEY is 32 bytes written as hex
_ENCRYPTION_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")

# Example/placeholder encryption keys that appear in docs and .env templates
WEAK_ENCRYPTION_KEYS: frozenset[str] = frozenset(
    {
        "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef",
        "deadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeefdeadbeef",
        "0" * 64,
        "1" * 64,
    }
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "oauth_broker"
    database_user: str = "oauth_broker"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    # OAuth state signing (HS256) and token encryption (AES-256-GCM, hex key)
    state_secret: SecretStr = SecretStr("")
    encryption_key: SecretStr = SecretStr("")

    # Sessions
    session_duration_days: int = 30
    session_base_url: str = "https://relayforge.com"
    session_touch_interval_seconds: int = 3600
    session_cleanup_interval_seconds: int = 3600

    # Frontend URL (callback redirects land here)
    frontend_url: str = "http://localhost:5173"

    # Token refresh
    token_refresh_buffer_seconds: int = 300
    token_refresh_max_attempts: int = 3
    token_refresh_base_delay_ms: int = 500
    token_refresh_max_delay_ms: int = 5000
    provider_timeout_seconds: float = 10.0
    unhealthy_failure_threshold: int = 3

    # New accounts start with $5.00 in cents
    new_user_credits: int = 500

    # OAuth Providers
    google_client_id: str = ""
    google_client_secret: SecretStr = SecretStr("")
    google_redirect_uri: str = "http://localhost:3002/oauth/google/callback"
    github_client_id: str = ""
    github_client_secret: SecretStr = SecretStr("")
    github_redirect_uri: str = "http://localhost:3002/oauth/github/callback"

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def is_production(self) -> bool:
        """Whether the app runs with production security checks."""
        return self.environment == "production"

    @model_validator(mode="after")
    def check_production_security(self) -> "Settings":
        """Validate security requirements.

        Checks:
        - Refresh policy values are usable (all environments)
        - ENCRYPTION_KEY, when set, is 64 hex characters (all environments)
        - Database password must not be the default in production
        - STATE_SECRET must be set and >= 32 chars in production
        - ENCRYPTION_KEY must be set and not an example key in production
        """
        if self.token_refresh_max_attempts < 1:
            msg = (
                "TOKEN_REFRESH_MAX_ATTEMPTS must be at least 1. "
                f"Got: {self.token_refresh_max_attempts}"
            )
            raise ValueError(msg)
        if self.unhealthy_failure_threshold < 1:
            msg = (
                "UNHEALTHY_FAILURE_THRESHOLD must be at least 1. "
                f"Got: {self.unhealthy_failure_threshold}"
            )
            raise ValueError(msg)

        key_value = self.encryption_key.get_secret_value()
        if key_value and not _ENCRYPTION_KEY_PATTERN.match(key_value):
            msg = "ENCRYPTION_KEY must be 64 hex characters (32 bytes)."
            raise ValueError(msg)

        if self.is_production:
            if self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            secret_value = self.state_secret.get_secret_value()
            if len(secret_value) < _MIN_STATE_SECRET_LENGTH:
                msg = (
                    f"STATE_SECRET must be at least {_MIN_STATE_SECRET_LENGTH} "
                    "characters in production. Generate with: "
                    'python -c "import secrets; print(secrets.token_hex(32))"'
                )
                raise ValueError(msg)

            if not key_value:
                msg = "ENCRYPTION_KEY must be set in production."
                raise ValueError(msg)
            if key_value.lower() in WEAK_ENCRYPTION_KEYS:
                msg = (
                    "Cannot use example or weak encryption keys in production. "
                    "Generate a key with: openssl rand -hex 32"
                )
                raise ValueError(msg)

        return self


settings = Settings()
