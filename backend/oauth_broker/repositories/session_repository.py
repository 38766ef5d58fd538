"""Repository for Session operations.

Provides database access for the sessions table.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oauth_broker.models.session import Session

# Fields that may be updated via SessionRepository.update().
# "metadata" maps to the session_metadata attribute.
_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"expires_at", "last_accessed_at", "metadata"}
)


class SessionRepository:
    """Stateless repository for Session table operations.

    All methods are static; there is no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        session_id: str,
        expires_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """Create a new session.

        Args:
            db: Async database session.
            user_id: Owner of the session.
            session_id: Opaque random identifier.
            expires_at: Hard expiry.
            metadata: Optional JSON metadata.

        Returns:
            Created Session with database-generated fields populated.

        Raises:
            sqlalchemy.exc.IntegrityError: If session_id already exists.
        """
        session = Session(
            user_id=user_id,
            session_id=session_id,
            expires_at=expires_at,
            session_metadata=metadata,
        )
        db.add(session)
        await db.flush()
        await db.refresh(session)
        return session

    @staticmethod
    async def get_by_session_id(db: AsyncSession, session_id: str) -> Session | None:
        stmt = select(Session).where(Session.session_id == session_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: uuid.UUID) -> list[Session]:
        stmt = (
            select(Session)
            .where(Session.user_id == user_id)
            .order_by(Session.last_accessed_at.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def update(
        db: AsyncSession,
        session_id: str,
        **kwargs: Any,
    ) -> Session | None:
        """Update session fields.

        Raises:
            ValueError: If an unknown field name is passed.
        """
        unknown = set(kwargs) - _UPDATABLE_FIELDS
        if unknown:
            msg = f"Unknown fields: {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        session = await SessionRepository.get_by_session_id(db, session_id)
        if session is None:
            return None

        for field, value in kwargs.items():
            setattr(session, "session_metadata" if field == "metadata" else field, value)

        await db.flush()
        await db.refresh(session)
        return session

    @staticmethod
    async def delete_by_session_id(db: AsyncSession, session_id: str) -> bool:
        stmt = delete(Session).where(Session.session_id == session_id)
        result = await db.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    @staticmethod
    async def delete_for_user(db: AsyncSession, user_id: uuid.UUID) -> int:
        stmt = delete(Session).where(Session.user_id == user_id)
        result = await db.execute(stmt)
        return result.rowcount  # type: ignore[attr-defined, no-any-return]

    @staticmethod
    async def delete_expired(db: AsyncSession, now: datetime) -> int:
        """Bulk delete sessions with expires_at < now.

        Returns:
            Number of rows deleted. Concurrent runs each delete a disjoint
            subset, so the sum never exceeds the expired count.
        """
        stmt = delete(Session).where(Session.expires_at < now)
        result = await db.execute(stmt)
        return result.rowcount  # type: ignore[attr-defined, no-any-return]

    @staticmethod
    async def reassign(
        db: AsyncSession,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        stmt = (
            update(Session)
            .where(Session.user_id == from_user_id)
            .values(user_id=to_user_id)
        )
        result = await db.execute(stmt)
        return result.rowcount  # type: ignore[attr-defined, no-any-return]
