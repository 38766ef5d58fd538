"""Repository for OAuthConnection operations.

Provides database access for the oauth_connections table. Token columns are
stored as given; encryption happens in the services before they get here.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, delete, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from oauth_broker.models.oauth_connection import OAuthConnection

# Fields that may be updated via OAuthConnectionRepository.update().
# Security: Never add 'id', 'user_id', 'provider' or 'email'; they identify
# the grant and are immutable.
_UPDATABLE_FIELDS: frozenset[str] = frozenset(
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


class OAuthConnectionRepository:
    """Stateless repository for OAuthConnection table operations.

    All methods are static; there is no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def get_by_id(
        db: AsyncSession,
        connection_id: uuid.UUID,
    ) -> OAuthConnection | None:
        return await db.get(OAuthConnection, connection_id)

    @staticmethod
    async def get_most_recent(
        db: AsyncSession,
        user_id: uuid.UUID,
        provider: str,
    ) -> OAuthConnection | None:
        """Most recently used connection for a user and provider.

        Args:
            db: Async database session.
            user_id: UUID of the user.
            provider: Provider name.

        Returns:
            OAuthConnection if any exists, None otherwise.
        """
        stmt = (
            select(OAuthConnection)
            .where(
                OAuthConnection.user_id == user_id,
                OAuthConnection.provider == provider,
            )
            .order_by(OAuthConnection.last_used_at.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_identity(
        db: AsyncSession,
        *,
        provider: str,
        email: str,
        user_id: uuid.UUID | None = None,
    ) -> OAuthConnection | None:
        """Find a connection by provider and email, optionally for one user.

        Args:
            db: Async database session.
            provider: Provider name.
            email: Normalized provider account email.
            user_id: Restrict to this user when given.

        Returns:
            First matching OAuthConnection, or None.
        """
        stmt = select(OAuthConnection).where(
            OAuthConnection.provider == provider,
            OAuthConnection.email == email,
        )
        if user_id is not None:
            stmt = stmt.where(OAuthConnection.user_id == user_id)
        result = await db.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_user(
        db: AsyncSession,
        user_id: uuid.UUID,
    ) -> list[OAuthConnection]:
        stmt = (
            select(OAuthConnection)
            .where(OAuthConnection.user_id == user_id)
            .order_by(OAuthConnection.last_used_at.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def upsert(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        provider: str,
        email: str,
        scopes: list[str],
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> OAuthConnection:
        """Insert or update the connection for (user, provider, email).

        Uses INSERT ... ON CONFLICT so concurrent callbacks for the same
        account cannot create duplicates. On conflict the refresh token is
        only replaced when a new one is supplied, and health is reset.

        Returns:
            The stored OAuthConnection.
        """
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "user_id": user_id,
            "provider": provider,
            "email": email,
            "scopes": scopes,
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires_at,
            "connected_at": now,
            "last_used_at": now,
        }
        on_update: dict[str, Any] = {
            "scopes": scopes,
            "access_token": access_token,
            "expires_at": expires_at,
            "last_used_at": now,
            "is_healthy": True,
            "refresh_failure_count": 0,
            "last_refresh_error": None,
        }
        if refresh_token is not None:
            on_update["refresh_token"] = refresh_token

        stmt = (
            insert(OAuthConnection)
            .values(id=uuid.uuid4(), **values)
            .on_conflict_do_update(
                constraint="uq_oauth_connections_user_provider_email",
                set_=on_update,
            )
            .returning(OAuthConnection)
        )
        orm_stmt = (
            select(OAuthConnection)
            .from_statement(stmt)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(orm_stmt)
        return result.scalar_one()

    @staticmethod
    async def update(
        db: AsyncSession,
        connection_id: uuid.UUID,
        **kwargs: Any,
    ) -> OAuthConnection | None:
        """Update connection fields.

        Only fields in _UPDATABLE_FIELDS are allowed. Unknown field names
        raise ValueError.

        Returns:
            Updated OAuthConnection if found, None otherwise.

        Raises:
            ValueError: If an unknown field name is passed.
        """
        unknown = set(kwargs) - _UPDATABLE_FIELDS
        if unknown:
            msg = f"Unknown fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        connection = await db.get(OAuthConnection, connection_id)
        if connection is None:
            return None

        for field, value in kwargs.items():
            setattr(connection, field, value)

        await db.flush()
        await db.refresh(connection)
        return connection

    @staticmethod
    async def delete_for_provider(
        db: AsyncSession,
        user_id: uuid.UUID,
        provider: str,
        email: str | None = None,
    ) -> int:
        """Delete a user's connections for a provider.

        Returns:
            Number of rows deleted.
        """
        stmt = delete(OAuthConnection).where(
            OAuthConnection.user_id == user_id,
            OAuthConnection.provider == provider,
        )
        if email is not None:
            stmt = stmt.where(OAuthConnection.email == email)
        result = await db.execute(stmt)
        return result.rowcount  # type: ignore[attr-defined, no-any-return]

    @staticmethod
    async def reassign(
        db: AsyncSession,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        """Move connections to another user.

        Connections the target already has for the same provider and email
        are deleted from the source first so the unique constraint holds.

        Returns:
            Number of connections moved.
        """
        target = OAuthConnection.__table__.alias("target")
        duplicate = (
            select(target.c.id)
            .where(
                and_(
                    target.c.user_id == to_user_id,
                    target.c.provider == OAuthConnection.provider,
                    target.c.email == OAuthConnection.email,
                )
            )
            .exists()
        )
        await db.execute(
            delete(OAuthConnection).where(
                OAuthConnection.user_id == from_user_id,
                duplicate,
            ).execution_options(synchronize_session=False)
        )
        result = await db.execute(
            update(OAuthConnection)
            .where(OAuthConnection.user_id == from_user_id)
            .values(user_id=to_user_id)
        )
        return result.rowcount  # type: ignore[attr-defined, no-any-return]
