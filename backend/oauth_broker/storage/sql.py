"""SQLAlchemy-backed Store.

Adapts the stateless repositories to the Store interface. Outside a
transaction every call runs on its own session and commits. transaction()
binds one session for the whole block; the block commits on success and rolls
back on any exception.
"""

import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oauth_broker.models.linked_email import LinkedEmail
from oauth_broker.models.oauth_connection import OAuthConnection
from oauth_broker.models.session import Session
from oauth_broker.models.user import User
from oauth_broker.repositories.oauth_connection_repository import (
    OAuthConnectionRepository,
)
from oauth_broker.repositories.session_repository import SessionRepository
from oauth_broker.repositories.user_repository import (
    LinkedEmailRepository,
    UserRepository,
)
from oauth_broker.storage.base import (
    CONNECTION_UPDATABLE_FIELDS,
    SESSION_UPDATABLE_FIELDS,
    ConnectionRecord,
    LinkedEmailRecord,
    SessionRecord,
    Store,
    UserRecord,
    check_fields,
    normalize_email,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _user_record(user: User) -> UserRecord:
    return UserRecord(
        id=user.id,
        primary_email=user.primary_email,
        credits=user.credits,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _linked_email_record(linked: LinkedEmail) -> LinkedEmailRecord:
    return LinkedEmailRecord(
        id=linked.id,
        user_id=linked.user_id,
        email=linked.email,
        provider=linked.provider,
        is_primary=linked.is_primary,
        verified_at=linked.verified_at,
        linked_at=linked.linked_at,
    )


def _connection_record(conn: OAuthConnection) -> ConnectionRecord:
    return ConnectionRecord(
        id=conn.id,
        user_id=conn.user_id,
        provider=conn.provider,
        email=conn.email,
        scopes=list(conn.scopes or []),
        access_token=conn.access_token,
        refresh_token=conn.refresh_token,
        expires_at=conn.expires_at,
        connected_at=conn.connected_at,
        last_used_at=conn.last_used_at,
        refresh_failure_count=conn.refresh_failure_count,
        last_refresh_error=conn.last_refresh_error,
        last_refresh_attempt=conn.last_refresh_attempt,
        is_healthy=conn.is_healthy,
    )


def _session_record(session: Session) -> SessionRecord:
    return SessionRecord(
        id=session.id,
        session_id=session.session_id,
        user_id=session.user_id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_accessed_at=session.last_accessed_at,
        metadata=session.session_metadata,
    )


async def _link_email(
    db: AsyncSession,
    user_id: uuid.UUID,
    email: str,
    provider: str,
    *,
    is_primary: bool,
) -> LinkedEmail:
    try:
        return await LinkedEmailRepository.create(
            db,
            user_id=user_id,
            email=email,
            provider=provider,
            is_primary=is_primary,
        )
    except IntegrityError as e:
        msg = "Email is already linked to a user"
        raise ValueError(msg) from e


class SqlAlchemyStore(Store):
    """Store over PostgreSQL via SQLAlchemy async sessions.

    Args:
        session_factory: Async session factory (see core.database).
        session: Session bound by transaction(). Internal.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        session: AsyncSession | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._session = session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqlAlchemyStore"]:
        if self._session is not None:
            # Already inside a unit of work; join it
            yield self
            return
        async with self._session_factory() as db, db.begin():
            yield SqlAlchemyStore(self._session_factory, session=db)

    async def _run(self, func: Callable[[AsyncSession], Awaitable[T]]) -> T:
        if self._session is not None:
            return await func(self._session)
        async with self._session_factory() as db:
            try:
                result = await func(db)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
            return result

    # =========================================================================
    # Users and linked emails
    # =========================================================================

    async def get_user(self, user_id: uuid.UUID) -> UserRecord | None:
        async def op(db: AsyncSession) -> UserRecord | None:
            user = await UserRepository.get_by_id(db, user_id)
            return _user_record(user) if user else None

        return await self._run(op)

    async def find_user_by_email(self, email: str) -> UserRecord | None:
        async def op(db: AsyncSession) -> UserRecord | None:
            user = await UserRepository.get_by_linked_email(db, normalize_email(email))
            return _user_record(user) if user else None

        return await self._run(op)

    async def create_user(
        self,
        *,
        primary_email: str,
        provider: str,
        credits: int,
    ) -> UserRecord:
        email = normalize_email(primary_email)

        async def op(db: AsyncSession) -> UserRecord:
            user = await UserRepository.create(db, primary_email=email, credits=credits)
            await _link_email(db, user.id, email, provider, is_primary=True)
            return _user_record(user)

        return await self._run(op)

    async def add_credits(self, user_id: uuid.UUID, amount: int) -> None:
        async def op(db: AsyncSession) -> None:
            await UserRepository.add_credits(db, user_id, amount)

        await self._run(op)

    async def delete_user(self, user_id: uuid.UUID) -> bool:
        async def op(db: AsyncSession) -> bool:
            return await UserRepository.delete(db, user_id)

        return await self._run(op)

    async def find_linked_email(self, email: str) -> LinkedEmailRecord | None:
        async def op(db: AsyncSession) -> LinkedEmailRecord | None:
            linked = await LinkedEmailRepository.get_by_email(db, normalize_email(email))
            return _linked_email_record(linked) if linked else None

        return await self._run(op)

    async def list_linked_emails(self, user_id: uuid.UUID) -> list[LinkedEmailRecord]:
        async def op(db: AsyncSession) -> list[LinkedEmailRecord]:
            rows = await LinkedEmailRepository.list_for_user(db, user_id)
            return [_linked_email_record(row) for row in rows]

        return await self._run(op)

    async def add_linked_email(
        self,
        *,
        user_id: uuid.UUID,
        email: str,
        provider: str,
        is_primary: bool = False,
    ) -> LinkedEmailRecord:
        async def op(db: AsyncSession) -> LinkedEmailRecord:
            linked = await _link_email(
                db, user_id, normalize_email(email), provider, is_primary=is_primary
            )
            return _linked_email_record(linked)

        return await self._run(op)

    async def move_linked_emails(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        async def op(db: AsyncSession) -> int:
            return await LinkedEmailRepository.move_to_user(db, from_user_id, to_user_id)

        return await self._run(op)

    # =========================================================================
    # OAuth connections
    # =========================================================================

    async def get_connection(
        self,
        user_id: uuid.UUID,
        provider: str,
    ) -> ConnectionRecord | None:
        async def op(db: AsyncSession) -> ConnectionRecord | None:
            conn = await OAuthConnectionRepository.get_most_recent(db, user_id, provider)
            return _connection_record(conn) if conn else None

        return await self._run(op)

    async def find_connection(
        self,
        user_id: uuid.UUID,
        provider: str,
        email: str,
    ) -> ConnectionRecord | None:
        async def op(db: AsyncSession) -> ConnectionRecord | None:
            conn = await OAuthConnectionRepository.get_by_identity(
                db, provider=provider, email=normalize_email(email), user_id=user_id
            )
            return _connection_record(conn) if conn else None

        return await self._run(op)

    async def find_connection_by_email(
        self,
        provider: str,
        email: str,
    ) -> ConnectionRecord | None:
        async def op(db: AsyncSession) -> ConnectionRecord | None:
            conn = await OAuthConnectionRepository.get_by_identity(
                db, provider=provider, email=normalize_email(email)
            )
            return _connection_record(conn) if conn else None

        return await self._run(op)

    async def list_connections(self, user_id: uuid.UUID) -> list[ConnectionRecord]:
        async def op(db: AsyncSession) -> list[ConnectionRecord]:
            rows = await OAuthConnectionRepository.list_for_user(db, user_id)
            return [_connection_record(row) for row in rows]

        return await self._run(op)

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
        async def op(db: AsyncSession) -> ConnectionRecord:
            conn = await OAuthConnectionRepository.upsert(
                db,
                user_id=user_id,
                provider=provider,
                email=normalize_email(email),
                scopes=list(scopes),
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
            return _connection_record(conn)

        return await self._run(op)

    async def update_connection(
        self,
        connection_id: uuid.UUID,
        **fields: Any,
    ) -> ConnectionRecord | None:
        check_fields(fields, CONNECTION_UPDATABLE_FIELDS)

        async def op(db: AsyncSession) -> ConnectionRecord | None:
            conn = await OAuthConnectionRepository.update(db, connection_id, **fields)
            return _connection_record(conn) if conn else None

        return await self._run(op)

    async def delete_connections(
        self,
        user_id: uuid.UUID,
        provider: str,
        email: str | None = None,
    ) -> int:
        target = normalize_email(email) if email else None

        async def op(db: AsyncSession) -> int:
            return await OAuthConnectionRepository.delete_for_provider(
                db, user_id, provider, target
            )

        return await self._run(op)

    async def reassign_connections(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        async def op(db: AsyncSession) -> int:
            return await OAuthConnectionRepository.reassign(db, from_user_id, to_user_id)

        return await self._run(op)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self,
        *,
        user_id: uuid.UUID,
        session_id: str,
        expires_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> SessionRecord:
        async def op(db: AsyncSession) -> SessionRecord:
            session = await SessionRepository.create(
                db,
                user_id=user_id,
                session_id=session_id,
                expires_at=expires_at,
                metadata=metadata,
            )
            return _session_record(session)

        return await self._run(op)

    async def get_session(self, session_id: str) -> SessionRecord | None:
        async def op(db: AsyncSession) -> SessionRecord | None:
            session = await SessionRepository.get_by_session_id(db, session_id)
            return _session_record(session) if session else None

        return await self._run(op)

    async def list_sessions(self, user_id: uuid.UUID) -> list[SessionRecord]:
        async def op(db: AsyncSession) -> list[SessionRecord]:
            rows = await SessionRepository.list_for_user(db, user_id)
            return [_session_record(row) for row in rows]

        return await self._run(op)

    async def update_session(
        self,
        session_id: str,
        **fields: Any,
    ) -> SessionRecord | None:
        check_fields(fields, SESSION_UPDATABLE_FIELDS)

        async def op(db: AsyncSession) -> SessionRecord | None:
            session = await SessionRepository.update(db, session_id, **fields)
            return _session_record(session) if session else None

        return await self._run(op)

    async def delete_session(self, session_id: str) -> bool:
        async def op(db: AsyncSession) -> bool:
            return await SessionRepository.delete_by_session_id(db, session_id)

        return await self._run(op)

    async def delete_user_sessions(self, user_id: uuid.UUID) -> int:
        async def op(db: AsyncSession) -> int:
            return await SessionRepository.delete_for_user(db, user_id)

        return await self._run(op)

    async def delete_expired_sessions(self, now: datetime) -> int:
        async def op(db: AsyncSession) -> int:
            return await SessionRepository.delete_expired(db, now)

        return await self._run(op)

    async def reassign_sessions(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        async def op(db: AsyncSession) -> int:
            return await SessionRepository.reassign(db, from_user_id, to_user_id)

        return await self._run(op)


def create_store(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> SqlAlchemyStore:
    """Build a SqlAlchemyStore, defaulting to the application session factory."""
    if session_factory is None:
        from oauth_broker.core.database import async_session_factory

        session_factory = async_session_factory
    return SqlAlchemyStore(session_factory)
