"""In-memory Store for tests and local development.

State lives in plain dicts. Records handed out are copies, so callers cannot
mutate stored state behind the store's back.

transaction() serializes units of work on an asyncio.Lock, snapshots the
state on entry and restores the snapshot if the block raises. Writes made
outside a transaction while one is open are lost if that transaction rolls
back; use SqlAlchemyStore where that matters.
"""

import asyncio
import copy
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

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

_EPOCH = datetime.min.replace(tzinfo=UTC)


class MemoryStore(Store):
    """Dict-backed Store."""

    def __init__(self) -> None:
        self.users: dict[uuid.UUID, UserRecord] = {}
        self.linked_emails: dict[uuid.UUID, LinkedEmailRecord] = {}
        self.connections: dict[uuid.UUID, ConnectionRecord] = {}
        self.sessions: dict[str, SessionRecord] = {}
        self._tx_lock = asyncio.Lock()

    def _snapshot(self) -> tuple[dict, dict, dict, dict]:
        return copy.deepcopy(
            (self.users, self.linked_emails, self.connections, self.sessions)
        )

    def _restore(self, snapshot: tuple[dict, dict, dict, dict]) -> None:
        self.users, self.linked_emails, self.connections, self.sessions = snapshot

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MemoryStore"]:
        async with self._tx_lock:
            snapshot = self._snapshot()
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                logger.debug("Memory store transaction rolled back")
                raise

    # =========================================================================
    # Users and linked emails
    # =========================================================================

    async def get_user(self, user_id: uuid.UUID) -> UserRecord | None:
        user = self.users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def find_user_by_email(self, email: str) -> UserRecord | None:
        linked = await self.find_linked_email(email)
        if linked is None:
            return None
        return await self.get_user(linked.user_id)

    async def create_user(
        self,
        *,
        primary_email: str,
        provider: str,
        credits: int,
    ) -> UserRecord:
        email = normalize_email(primary_email)
        if await self.find_linked_email(email) is not None:
            msg = "Email is already linked to a user"
            raise ValueError(msg)
        now = datetime.now(UTC)
        user = UserRecord(
            id=uuid.uuid4(),
            primary_email=email,
            credits=credits,
            created_at=now,
            updated_at=now,
        )
        self.users[user.id] = user
        await self.add_linked_email(
            user_id=user.id, email=email, provider=provider, is_primary=True
        )
        return copy.deepcopy(user)

    async def add_credits(self, user_id: uuid.UUID, amount: int) -> None:
        user = self.users.get(user_id)
        if user is None:
            return
        user.credits += amount
        user.updated_at = datetime.now(UTC)

    async def delete_user(self, user_id: uuid.UUID) -> bool:
        if self.users.pop(user_id, None) is None:
            return False
        # Mirror ON DELETE CASCADE
        self.linked_emails = {
            k: v for k, v in self.linked_emails.items() if v.user_id != user_id
        }
        self.connections = {
            k: v for k, v in self.connections.items() if v.user_id != user_id
        }
        self.sessions = {k: v for k, v in self.sessions.items() if v.user_id != user_id}
        return True

    async def find_linked_email(self, email: str) -> LinkedEmailRecord | None:
        target = normalize_email(email)
        for linked in self.linked_emails.values():
            if linked.email == target:
                return copy.deepcopy(linked)
        return None

    async def list_linked_emails(self, user_id: uuid.UUID) -> list[LinkedEmailRecord]:
        return [
            copy.deepcopy(e)
            for e in sorted(self.linked_emails.values(), key=lambda e: e.linked_at)
            if e.user_id == user_id
        ]

    async def add_linked_email(
        self,
        *,
        user_id: uuid.UUID,
        email: str,
        provider: str,
        is_primary: bool = False,
    ) -> LinkedEmailRecord:
        normalized = normalize_email(email)
        if any(e.email == normalized for e in self.linked_emails.values()):
            msg = "Email is already linked to a user"
            raise ValueError(msg)
        now = datetime.now(UTC)
        linked = LinkedEmailRecord(
            id=uuid.uuid4(),
            user_id=user_id,
            email=normalized,
            provider=provider,
            is_primary=is_primary,
            verified_at=now,
            linked_at=now,
        )
        self.linked_emails[linked.id] = linked
        return copy.deepcopy(linked)

    async def move_linked_emails(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        existing = {
            e.email for e in self.linked_emails.values() if e.user_id == to_user_id
        }
        moved = 0
        for key, linked in list(self.linked_emails.items()):
            if linked.user_id != from_user_id:
                continue
            if linked.email in existing:
                del self.linked_emails[key]
                continue
            linked.user_id = to_user_id
            linked.is_primary = False
            moved += 1
        return moved

    # =========================================================================
    # OAuth connections
    # =========================================================================

    async def get_connection(
        self,
        user_id: uuid.UUID,
        provider: str,
    ) -> ConnectionRecord | None:
        matches = [
            c
            for c in self.connections.values()
            if c.user_id == user_id and c.provider == provider
        ]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda c: c.last_used_at or _EPOCH))

    async def find_connection(
        self,
        user_id: uuid.UUID,
        provider: str,
        email: str,
    ) -> ConnectionRecord | None:
        target = normalize_email(email)
        for conn in self.connections.values():
            if (
                conn.user_id == user_id
                and conn.provider == provider
                and conn.email == target
            ):
                return copy.deepcopy(conn)
        return None

    async def find_connection_by_email(
        self,
        provider: str,
        email: str,
    ) -> ConnectionRecord | None:
        target = normalize_email(email)
        for conn in self.connections.values():
            if conn.provider == provider and conn.email == target:
                return copy.deepcopy(conn)
        return None

    async def list_connections(self, user_id: uuid.UUID) -> list[ConnectionRecord]:
        return [
            copy.deepcopy(c)
            for c in sorted(
                self.connections.values(),
                key=lambda c: c.last_used_at or _EPOCH,
                reverse=True,
            )
            if c.user_id == user_id
        ]

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
        now = datetime.now(UTC)
        target = normalize_email(email)
        for conn in self.connections.values():
            if (
                conn.user_id == user_id
                and conn.provider == provider
                and conn.email == target
            ):
                conn.scopes = list(scopes)
                conn.access_token = access_token
                if refresh_token is not None:
                    conn.refresh_token = refresh_token
                conn.expires_at = expires_at
                conn.last_used_at = now
                conn.is_healthy = True
                conn.refresh_failure_count = 0
                conn.last_refresh_error = None
                return copy.deepcopy(conn)

        conn = ConnectionRecord(
            id=uuid.uuid4(),
            user_id=user_id,
            provider=provider,
            email=target,
            scopes=list(scopes),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            connected_at=now,
            last_used_at=now,
        )
        self.connections[conn.id] = conn
        return copy.deepcopy(conn)

    async def update_connection(
        self,
        connection_id: uuid.UUID,
        **fields: Any,
    ) -> ConnectionRecord | None:
        check_fields(fields, CONNECTION_UPDATABLE_FIELDS)
        conn = self.connections.get(connection_id)
        if conn is None:
            return None
        for name, value in fields.items():
            setattr(conn, name, value)
        return copy.deepcopy(conn)

    async def delete_connections(
        self,
        user_id: uuid.UUID,
        provider: str,
        email: str | None = None,
    ) -> int:
        target = normalize_email(email) if email else None
        doomed = [
            key
            for key, c in self.connections.items()
            if c.user_id == user_id
            and c.provider == provider
            and (target is None or c.email == target)
        ]
        for key in doomed:
            del self.connections[key]
        return len(doomed)

    async def reassign_connections(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        existing = {
            (c.provider, c.email)
            for c in self.connections.values()
            if c.user_id == to_user_id
        }
        moved = 0
        for key, conn in list(self.connections.items()):
            if conn.user_id != from_user_id:
                continue
            if (conn.provider, conn.email) in existing:
                del self.connections[key]
                continue
            conn.user_id = to_user_id
            moved += 1
        return moved

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
        if session_id in self.sessions:
            msg = "Session id already exists"
            raise ValueError(msg)
        now = datetime.now(UTC)
        record = SessionRecord(
            id=uuid.uuid4(),
            session_id=session_id,
            user_id=user_id,
            created_at=now,
            expires_at=expires_at,
            last_accessed_at=now,
            metadata=copy.deepcopy(metadata),
        )
        self.sessions[session_id] = record
        return copy.deepcopy(record)

    async def get_session(self, session_id: str) -> SessionRecord | None:
        record = self.sessions.get(session_id)
        return copy.deepcopy(record) if record else None

    async def list_sessions(self, user_id: uuid.UUID) -> list[SessionRecord]:
        return [
            copy.deepcopy(s)
            for s in sorted(
                self.sessions.values(),
                key=lambda s: s.last_accessed_at,
                reverse=True,
            )
            if s.user_id == user_id
        ]

    async def update_session(
        self,
        session_id: str,
        **fields: Any,
    ) -> SessionRecord | None:
        check_fields(fields, SESSION_UPDATABLE_FIELDS)
        record = self.sessions.get(session_id)
        if record is None:
            return None
        for name, value in fields.items():
            setattr(record, name, value)
        return copy.deepcopy(record)

    async def delete_session(self, session_id: str) -> bool:
        return self.sessions.pop(session_id, None) is not None

    async def delete_user_sessions(self, user_id: uuid.UUID) -> int:
        doomed = [k for k, s in self.sessions.items() if s.user_id == user_id]
        for key in doomed:
            del self.sessions[key]
        return len(doomed)

    async def delete_expired_sessions(self, now: datetime) -> int:
        doomed = [k for k, s in self.sessions.items() if s.expires_at < now]
        for key in doomed:
            del self.sessions[key]
        return len(doomed)

    async def reassign_sessions(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
    ) -> int:
        moved = 0
        for record in self.sessions.values():
            if record.user_id == from_user_id:
                record.user_id = to_user_id
                moved += 1
        return moved
