"""Connection status and disconnect.

Read-side view of a user's provider connections for dashboards, plus
removal of connections the user no longer wants.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from oauth_broker.providers.registry import ProviderRegistry
from oauth_broker.storage.base import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderStatus:
    """Connection summary for one registered provider.

    Attributes:
        provider: Provider name.
        connected: Whether the user has at least one connection.
        emails: Connected account emails, most recently used first.
        last_used: Most recent use across the provider's connections.
        is_healthy: False if any connection has been marked unhealthy.
    """

    provider: str
    connected: bool
    emails: list[str] = field(default_factory=list)
    last_used: datetime | None = None
    is_healthy: bool = True


class ConnectionService:
    """Lists and removes a user's provider connections."""

    def __init__(self, *, store: Store, providers: ProviderRegistry) -> None:
        self._store = store
        self._providers = providers

    async def list_provider_status(self, user_id: uuid.UUID) -> list[ProviderStatus]:
        """Status for every registered provider, in registry order."""
        connections = await self._store.list_connections(user_id)
        statuses = []
        for name in self._providers.list():
            mine = [c for c in connections if c.provider == name]
            statuses.append(
                ProviderStatus(
                    provider=name,
                    connected=bool(mine),
                    emails=[c.email for c in mine],
                    last_used=max((c.last_used_at for c in mine), default=None),
                    is_healthy=all(c.is_healthy for c in mine),
                )
            )
        return statuses

    async def disconnect(
        self,
        user_id: uuid.UUID,
        provider: str,
        email: str | None = None,
    ) -> int:
        """Remove the user's connections for a provider.

        Args:
            user_id: Owner.
            provider: Provider name.
            email: Only this account when given; all accounts otherwise.

        Returns:
            Number of connections removed.
        """
        removed = await self._store.delete_connections(user_id, provider, email)
        logger.info(
            "Provider disconnected",
            extra={"user_id": str(user_id), "provider": provider, "count": removed},
        )
        return removed
