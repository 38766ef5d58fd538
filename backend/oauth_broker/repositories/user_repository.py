"""Repository for User and LinkedEmail operations.

Provides database access for the users and linked_emails tables.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from oauth_broker.models.linked_email import LinkedEmail
from oauth_broker.models.user import User


class UserRepository:
    """Stateless repository for User table operations.

    All methods are static; there is no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def get_by_id(db: AsyncSession, user_id: uuid.UUID) -> User | None:
        """Fetch a user by primary key.

        Args:
            db: Async database session.
            user_id: UUID primary key.

        Returns:
            User if found, None otherwise.
        """
        return await db.get(User, user_id)

    @staticmethod
    async def get_by_linked_email(db: AsyncSession, email: str) -> User | None:
        """Fetch the user owning a linked email.

        Args:
            db: Async database session.
            email: Normalized email address.

        Returns:
            User if found, None otherwise.
        """
        stmt = (
            select(User)
            .join(LinkedEmail, LinkedEmail.user_id == User.id)
            .where(LinkedEmail.email == email)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        primary_email: str,
        credits: int,
    ) -> User:
        """Create a new user.

        Args:
            db: Async database session.
            primary_email: Normalized email address.
            credits: Starting balance in cents.

        Returns:
            Created User with database-generated fields populated.
        """
        user = User(primary_email=primary_email, credits=credits)
        db.add(user)
        await db.flush()
        await db.refresh(user)
        return user

    @staticmethod
    async def add_credits(db: AsyncSession, user_id: uuid.UUID, amount: int) -> None:
        """Atomically add credits to a user's balance.

        Args:
            db: Async database session.
            user_id: UUID of the user.
            amount: Cents to add.
        """
        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount)
        )
        await db.execute(stmt)

    @staticmethod
    async def delete(db: AsyncSession, user_id: uuid.UUID) -> bool:
        """Delete a user. Emails, connections and sessions cascade.

        Returns:
            True if a row was deleted.
        """
        stmt = delete(User).where(User.id == user_id)
        result = await db.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]


class LinkedEmailRepository:
    """Stateless repository for LinkedEmail table operations."""

    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> LinkedEmail | None:
        stmt = select(LinkedEmail).where(LinkedEmail.email == email)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: uuid.UUID) -> list[LinkedEmail]:
        stmt = (
            select(LinkedEmail)
            .where(LinkedEmail.user_id == user_id)
            .order_by(LinkedEmail.linked_at)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        email: str,
        provider: str,
        is_primary: bool = False,
    ) -> LinkedEmail:
        """Attach a verified email to a user.

        Raises:
            sqlalchemy.exc.IntegrityError: If the email is already linked.
        """
        now = datetime.now(UTC)
        linked = LinkedEmail(
            user_id=user_id,
            email=email,
            provider=provider,
            is_primary=is_primary,
            verified_at=now,
            linked_at=now,
        )
        db.add(linked)
        await db.flush()
        await db.refresh(linked)
        return linked

    @staticmethod
    async def move_to_user(
        db: AsyncSession,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        """Reassign emails to another user as non-primary.

        Emails the target already holds are deleted first.

        Returns:
            Number of emails moved.
        """
        existing = select(LinkedEmail.email).where(LinkedEmail.user_id == to_user_id)
        await db.execute(
            delete(LinkedEmail).where(
                LinkedEmail.user_id == from_user_id,
                LinkedEmail.email.in_(existing),
            ).execution_options(synchronize_session=False)
        )
        result = await db.execute(
            update(LinkedEmail)
            .where(LinkedEmail.user_id == from_user_id)
            .values(user_id=to_user_id, is_primary=False)
        )
        return result.rowcount  # type: ignore[attr-defined, no-any-return]
