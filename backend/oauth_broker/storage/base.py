"""Store interface and record types.

Services talk to persistence only through Store. Records are plain
dataclasses so services never hold ORM instances across awaits or
transactions.

WHY AN INTERFACE:
- Services are tested against MemoryStore without a database
- SqlAlchemyStore maps the same calls onto the repositories
- transaction() gives multi-step operations (callback, merge) all-or-nothing
  semantics on either backend
"""

import uuid
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Connection columns callers may change through update_connection()
CONNECTION_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "scopes",
        "access_token",
        "refresh_token",
        "expires_at",
        "last_used_at",
        "refresh_failure_count",
        "last_refresh_error",
        "last_refresh_attempt",
        "is_healthy",
    }
)

# Session columns callers may change through update_session()
SESSION_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"expires_at", "last_accessed_at", "metadata"}
)


def normalize_email(email: str) -> str:
    """Canonical form used for every email comparison and lookup."""
    return email.strip().lower()


@dataclass
class UserRecord:
    id: uuid.UUID
    primary_email: str
    credits: int
    created_at: datetime
    updated_at: datetime


@dataclass
class LinkedEmailRecord:
    id: uuid.UUID
    user_id: uuid.UUID
    email: str
    provider: str
    is_primary: bool
    verified_at: datetime | None
    linked_at: datetime


@dataclass
class ConnectionRecord:
    """A user's OAuth grant for one provider account.

    access_token and refresh_token hold ciphertext, never plaintext.
    """

    id: uuid.UUID
    user_id: uuid.UUID
    provider: str
    email: str
    scopes: list[str]
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    connected_at: datetime
    last_used_at: datetime
    refresh_failure_count: int = 0
    last_refresh_error: str | None = None
    last_refresh_attempt: datetime | None = None
    is_healthy: bool = True


@dataclass
class SessionRecord:
    id: uuid.UUID
    session_id: str
    user_id: uuid.UUID
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    metadata: dict[str, Any] | None = field(default=None)


class Store(ABC):
    """Async persistence interface for users, emails, connections, sessions.

    Calls made on the object yielded by transaction() commit together or not
    at all. Calls made outside a transaction take effect individually.
    """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager["Store"]:
        """Open a unit of work.

        Usage:
            async with store.transaction() as tx:
                user = await tx.create_user(...)
                await tx.upsert_connection(...)

        Any exception inside the block rolls back every change made through
        tx and propagates.
        """

    # =========================================================================
    # Users and linked emails
    # =========================================================================

    @abstractmethod
    async def get_user(self, user_id: uuid.UUID) -> UserRecord | None: ...

    @abstractmethod
    async def find_user_by_email(self, email: str) -> UserRecord | None:
        """Find the user owning a linked email (exact match after normalizing)."""

    @abstractmethod
    async def create_user(
        self,
        *,
        primary_email: str,
        provider: str,
        credits: int,
    ) -> UserRecord:
        """Create a user together with its primary, verified linked email.

        Raises:
            ValueError: If the email is already linked to a user.
        """

    @abstractmethod
    async def add_credits(self, user_id: uuid.UUID, amount: int) -> None: ...

    @abstractmethod
    async def delete_user(self, user_id: uuid.UUID) -> bool: ...

    @abstractmethod
    async def find_linked_email(self, email: str) -> LinkedEmailRecord | None: ...

    @abstractmethod
    async def list_linked_emails(self, user_id: uuid.UUID) -> list[LinkedEmailRecord]: ...

    @abstractmethod
    async def add_linked_email(
        self,
        *,
        user_id: uuid.UUID,
        email: str,
        provider: str,
        is_primary: bool = False,
    ) -> LinkedEmailRecord:
        """Attach a verified email to a user.

        Raises:
            ValueError: If the email is already linked to a user.
        """

    @abstractmethod
    async def move_linked_emails(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        """Reassign emails as non-primary, dropping ones to_user already has.

        Returns:
            Number of emails moved.
        """

    # =========================================================================
    # OAuth connections
    # =========================================================================

    @abstractmethod
    async def get_connection(
        self,
        user_id: uuid.UUID,
        provider: str,
    ) -> ConnectionRecord | None:
        """Most recently used connection for (user, provider)."""

    @abstractmethod
    async def find_connection(
        self,
        user_id: uuid.UUID,
        provider: str,
        email: str,
    ) -> ConnectionRecord | None: ...

    @abstractmethod
    async def find_connection_by_email(
        self,
        provider: str,
        email: str,
    ) -> ConnectionRecord | None:
        """Connection for provider + email regardless of owner."""

    @abstractmethod
    async def list_connections(self, user_id: uuid.UUID) -> list[ConnectionRecord]: ...

    @abstractmethod
    async def upsert_connection(
        self,
        *,
        user_id: uuid.UUID,
        provider: str,
        email: str,
        scopes: list[str],
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> ConnectionRecord:
        """Insert or update the (user, provider, email) connection.

        On update the stored refresh token is kept when refresh_token is None,
        and health fields are reset.
        """

    @abstractmethod
    async def update_connection(
        self,
        connection_id: uuid.UUID,
        **fields: Any,
    ) -> ConnectionRecord | None:
        """Update fields listed in CONNECTION_UPDATABLE_FIELDS.

        Raises:
            ValueError: If an unknown field name is passed.
        """

    @abstractmethod
    async def delete_connections(
        self,
        user_id: uuid.UUID,
        provider: str,
        email: str | None = None,
    ) -> int: ...

    @abstractmethod
    async def reassign_connections(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        """Move connections, dropping ones to_user already has for the same
        provider and email.

        Returns:
            Number of connections moved.
        """

    # =========================================================================
    # Sessions
    # =========================================================================

    @abstractmethod
    async def create_session(
        self,
        *,
        user_id: uuid.UUID,
        session_id: str,
        expires_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> SessionRecord: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> SessionRecord | None: ...

    @abstractmethod
    async def list_sessions(self, user_id: uuid.UUID) -> list[SessionRecord]:
        """All sessions for a user, most recently accessed first."""

    @abstractmethod
    async def update_session(
        self,
        session_id: str,
        **fields: Any,
    ) -> SessionRecord | None:
        """Update fields listed in SESSION_UPDATABLE_FIELDS.

        Raises:
            ValueError: If an unknown field name is passed.
        """

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    @abstractmethod
    async def delete_user_sessions(self, user_id: uuid.UUID) -> int: ...

    @abstractmethod
    async def delete_expired_sessions(self, now: datetime) -> int:
        """Delete sessions with expires_at < now."""

    @abstractmethod
    async def reassign_sessions(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int: ...


def check_fields(fields: dict[str, Any], allowed: frozenset[str]) -> None:
    """Reject unknown field names passed to an update call.

    Raises:
        ValueError: If any name is not in allowed.
    """
    unknown = set(fields) - allowed
    if unknown:
        msg = f"Unknown fields: {', '.join(sorted(unknown))}"
        raise ValueError(msg)
