"""Broker composition root.

Builds every service from Settings and wires shared collaborators (store,
cipher, provider registry, single-flight map) into them once. An HTTP layer
or a worker process creates one Broker at startup and calls start()/stop()
from its lifespan hooks.
"""

from dataclasses import dataclass

import structlog

from oauth_broker.core.config import Settings
from oauth_broker.core.crypto import TokenCipher
from oauth_broker.core.oauth_state import CSRFStateManager
from oauth_broker.core.retry import RetryPolicy
from oauth_broker.core.single_flight import SingleFlight
from oauth_broker.providers.registry import ProviderRegistry, build_provider_registry
from oauth_broker.services.account_linking import SecureAccountLinking
from oauth_broker.services.connections import ConnectionService
from oauth_broker.services.oauth_flow import OAuthFlowService
from oauth_broker.services.session_cleanup import SessionCleanupWorker
from oauth_broker.services.session_manager import SessionManager
from oauth_broker.services.token_refresh import TokenRefreshCoordinator
from oauth_broker.storage.base import Store

logger = structlog.get_logger()


@dataclass
class Broker:
    """Wired set of broker services sharing one store and provider registry."""

    store: Store
    providers: ProviderRegistry
    cipher: TokenCipher
    state_manager: CSRFStateManager
    single_flight: SingleFlight
    sessions: SessionManager
    linking: SecureAccountLinking
    tokens: TokenRefreshCoordinator
    connections: ConnectionService
    flow: OAuthFlowService
    cleanup_worker: SessionCleanupWorker

    def start(self) -> None:
        """Start background work. Must be called from a running event loop."""
        self.cleanup_worker.start()
        logger.info("broker_started", providers=self.providers.list())

    async def stop(self) -> None:
        """Stop background work."""
        await self.cleanup_worker.stop()
        logger.info("broker_stopped")


def create_broker(
    settings: Settings,
    *,
    store: Store | None = None,
    providers: ProviderRegistry | None = None,
) -> Broker:
    """Create and wire the broker services.

    WHY FACTORY FUNCTION:
    - Tests pass a MemoryStore and a registry of mock providers
    - Production passes nothing and gets PostgreSQL and the configured providers

    Args:
        settings: Application settings.
        store: Persistence; defaults to the SQLAlchemy store.
        providers: Provider registry; defaults to the configured providers.

    Returns:
        Broker with every service wired.

    Raises:
        CipherConfigurationError: If ENCRYPTION_KEY is missing or unusable.
        ValueError: If STATE_SECRET is empty.
    """
    if store is None:
        from oauth_broker.storage.sql import create_store

        store = create_store()
    if providers is None:
        providers = build_provider_registry(settings)

    cipher = TokenCipher(
        settings.encryption_key.get_secret_value(),
        production=settings.is_production,
    )
    state_manager = CSRFStateManager(settings.state_secret.get_secret_value())
    single_flight = SingleFlight()

    sessions = SessionManager(
        store=store,
        base_url=settings.session_base_url,
        duration_days=settings.session_duration_days,
        touch_interval_seconds=settings.session_touch_interval_seconds,
    )
    linking = SecureAccountLinking(store)
    tokens = TokenRefreshCoordinator(
        store=store,
        cipher=cipher,
        providers=providers,
        single_flight=single_flight,
        retry_policy=RetryPolicy(
            max_attempts=settings.token_refresh_max_attempts,
            base_delay_ms=settings.token_refresh_base_delay_ms,
            max_delay_ms=settings.token_refresh_max_delay_ms,
        ),
        refresh_buffer_seconds=settings.token_refresh_buffer_seconds,
        unhealthy_threshold=settings.unhealthy_failure_threshold,
        provider_timeout_seconds=settings.provider_timeout_seconds,
    )
    flow = OAuthFlowService(
        store=store,
        providers=providers,
        state_manager=state_manager,
        cipher=cipher,
        linking=linking,
        sessions=sessions,
        frontend_url=settings.frontend_url,
        new_user_credits=settings.new_user_credits,
    )

    return Broker(
        store=store,
        providers=providers,
        cipher=cipher,
        state_manager=state_manager,
        single_flight=single_flight,
        sessions=sessions,
        linking=linking,
        tokens=tokens,
        connections=ConnectionService(store=store, providers=providers),
        flow=flow,
        cleanup_worker=SessionCleanupWorker(
            sessions, interval_seconds=settings.session_cleanup_interval_seconds
        ),
    )
