import socket
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from oauth_broker.core.config import settings
from oauth_broker.core.crypto import TokenCipher, generate_key
from oauth_broker.core.oauth_state import CSRFStateManager
from oauth_broker.core.retry import RetryPolicy
from oauth_broker.core.single_flight import SingleFlight
from oauth_broker.models.base import Base
from oauth_broker.providers.mock import MockOAuthProvider
from oauth_broker.providers.registry import ProviderRegistry
from oauth_broker.storage.memory import MemoryStore

# Use separate test database
TEST_DATABASE_URL = settings.database_url.replace(
    settings.database_name, f"{settings.database_name}_test"
)

# Security: test-only secrets. Production reads real ones from env.
TEST_STATE_SECRET = "test-state-secret-that-is-at-least-32-characters"  # nosec B105  # gitleaks:allow

# Retries without real waiting
FAST_RETRY = RetryPolicy(max_attempts=3, base_delay_ms=1, max_delay_ms=2)


def _is_postgres_available() -> bool:
    """Check if PostgreSQL is accepting connections.

    Returns:
        True if PostgreSQL is reachable on port 5432, False otherwise.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(("127.0.0.1", 5432))
        sock.close()
        return result == 0
    except OSError:
        return False


# Check once at module load time
_POSTGRES_AVAILABLE = _is_postgres_available()


def skip_if_no_postgres() -> None:
    """Skip test if PostgreSQL is not available.

    Called by fixtures that require database connection.
    """
    if not _POSTGRES_AVAILABLE:
        pytest.skip(
            "PostgreSQL not available on port 5432. "
            "Start database with: docker compose up -d"
        )


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine.

    Skips test if PostgreSQL is not available (e.g., Docker not running).
    """
    skip_if_no_postgres()

    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(db_session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with db_session_factory() as session:
        yield session
        await session.rollback()


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def cipher() -> TokenCipher:
    """Token cipher with a fresh random key."""
    return TokenCipher(generate_key())


@pytest.fixture
def state_manager() -> CSRFStateManager:
    return CSRFStateManager(TEST_STATE_SECRET)


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def mock_provider() -> MockOAuthProvider:
    """Mock provider registered as "mock" with no required scopes."""
    return MockOAuthProvider("mock")


@pytest.fixture
def registry(mock_provider: MockOAuthProvider) -> ProviderRegistry:
    return ProviderRegistry([mock_provider])


@pytest.fixture
def single_flight() -> SingleFlight:
    return SingleFlight()


async def create_connected_user(
    store: MemoryStore,
    cipher: TokenCipher,
    *,
    email: str = "user@example.com",
    provider: str = "mock",
    access_token: str = "stored-access-token",
    refresh_token: str | None = "stored-refresh-token",
    expires_in: timedelta | None = timedelta(hours=1),
    credits: int = 500,
) -> tuple[uuid.UUID, uuid.UUID]:
    """Create a user with one encrypted provider connection.

    Args:
        store: Store to write to.
        cipher: Cipher used to encrypt the tokens.
        email: Account email.
        provider: Provider name.
        access_token: Plaintext access token.
        refresh_token: Plaintext refresh token, or None for no refresh token.
        expires_in: Time until expiry from now; None stores no expiry.
        credits: Starting balance.

    Returns:
        (user_id, connection_id)
    """
    user = await store.create_user(primary_email=email, provider=provider, credits=credits)
    connection = await store.upsert_connection(
        user_id=user.id,
        provider=provider,
        email=email,
        scopes=["email", "profile"],
        access_token=cipher.encrypt(access_token),
        refresh_token=cipher.encrypt(refresh_token) if refresh_token else None,
        expires_at=datetime.now(UTC) + expires_in if expires_in is not None else None,
    )
    return user.id, connection.id
