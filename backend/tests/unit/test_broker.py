"""Tests for broker wiring.

create_broker builds every service from Settings; these tests use a
MemoryStore and mock providers and run one end-to-end login + token fetch.
"""

from datetime import UTC, datetime, timedelta

import pytest

from oauth_broker.broker import create_broker
from oauth_broker.core.config import Settings
from oauth_broker.core.crypto import CipherConfigurationError, generate_key
from oauth_broker.providers.mock import MockOAuthProvider
from oauth_broker.providers.registry import ProviderRegistry
from oauth_broker.storage.memory import MemoryStore
from tests.conftest import TEST_STATE_SECRET


@pytest.fixture
def broker_settings() -> Settings:
    return Settings(
        state_secret=TEST_STATE_SECRET,
        encryption_key=generate_key(),
        session_base_url="https://relay.example.com",
        new_user_credits=250,
        token_refresh_base_delay_ms=1,
        token_refresh_max_delay_ms=2,
    )


class TestCreateBroker:
    def test_requires_encryption_key(self):
        settings = Settings(state_secret=TEST_STATE_SECRET, encryption_key="")
        with pytest.raises(CipherConfigurationError):
            create_broker(settings, store=MemoryStore(), providers=ProviderRegistry())

    def test_requires_state_secret(self):
        settings = Settings(state_secret="", encryption_key=generate_key())
        with pytest.raises(ValueError, match="secret"):
            create_broker(settings, store=MemoryStore(), providers=ProviderRegistry())

    def test_shares_collaborators(self, broker_settings: Settings):
        store = MemoryStore()
        broker = create_broker(
            broker_settings, store=store, providers=ProviderRegistry()
        )

        assert broker.store is store
        assert broker.tokens._single_flight is broker.single_flight
        assert broker.flow._sessions is broker.sessions

    def test_builds_configured_providers_by_default(self, broker_settings: Settings):
        broker_settings.github_client_id = "gh-id"
        broker = create_broker(broker_settings, store=MemoryStore())
        assert broker.providers.list() == ["github"]


class TestBrokerEndToEnd:
    async def test_login_then_fetch_token(self, broker_settings: Settings):
        provider = MockOAuthProvider("google")
        store = MemoryStore()
        broker = create_broker(
            broker_settings, store=store, providers=ProviderRegistry([provider])
        )

        request = broker.flow.initiate_oauth("google")
        result = await broker.flow.handle_callback(
            "google", "code", request.state, code_verifier=request.code_verifier
        )

        assert result.credits == 250
        session = await broker.sessions.validate_session(result.session.session_id)
        assert session.user_id == result.user_id

        token = await broker.tokens.get_valid_token(result.user_id, "google")
        assert token.token == "mock-access-token"

        (conn,) = store.connections.values()
        conn.expires_at = datetime.now(UTC) + timedelta(seconds=30)
        token = await broker.tokens.get_valid_token(result.user_id, "google")
        assert token.refreshed is True
        assert token.token == "refreshed-access-1"

        statuses = await broker.connections.list_provider_status(result.user_id)
        assert statuses[0].connected is True

    async def test_start_and_stop(self, broker_settings: Settings):
        broker = create_broker(
            broker_settings, store=MemoryStore(), providers=ProviderRegistry()
        )

        broker.start()
        assert broker.cleanup_worker.is_running is True
        await broker.stop()
        assert broker.cleanup_worker.is_running is False
