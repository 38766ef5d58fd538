"""Session lifecycle management.

Issues opaque session ids after a successful login and validates, extends,
revokes and expires them. Session ids are 32 random bytes, base64url
encoded. The public session URL is {session_base_url}/mcp/{session_id}.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from oauth_broker.core.errors import ForbiddenError, NotFoundError, SessionExpiredError
from oauth_broker.storage.base import SessionRecord, Store

logger = logging.getLogger(__name__)

DEFAULT_SESSION_DURATION_DAYS = 30

# Validation writes last_accessed_at at most once per interval
DEFAULT_TOUCH_INTERVAL_SECONDS = 3600

_SESSION_ID_BYTES = 32


@dataclass(frozen=True)
class SessionResponse:
    """Session handed back to the client.

    Attributes:
        session_id: Opaque identifier.
        session_url: Public URL embedding the session id.
        expires_at: Hard expiry.
        created_at: Creation time.
    """

    session_id: str
    session_url: str
    expires_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class SessionStats:
    total: int
    active: int
    expired: int
    last_activity: datetime | None


def generate_session_id() -> str:
    """Generate an unguessable session id."""
    return secrets.token_urlsafe(_SESSION_ID_BYTES)


class SessionManager:
    """Creates and maintains login sessions.

    Args:
        store: Persistence.
        base_url: Prefix for public session URLs.
        duration_days: Default session lifetime.
        touch_interval_seconds: Minimum gap between last_accessed_at writes.
    """

    def __init__(
        self,
        *,
        store: Store,
        base_url: str,
        duration_days: int = DEFAULT_SESSION_DURATION_DAYS,
        touch_interval_seconds: int = DEFAULT_TOUCH_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._base_url = base_url.rstrip("/")
        self._duration = timedelta(days=duration_days)
        self._touch_interval = timedelta(seconds=touch_interval_seconds)

    def session_url(self, session_id: str) -> str:
        """Public URL for a session."""
        return f"{self._base_url}/mcp/{session_id}"

    def _lifetime(self, days: int | None) -> timedelta:
        return timedelta(days=days) if days else self._duration

    def _response(self, record: SessionRecord) -> SessionResponse:
        return SessionResponse(
            session_id=record.session_id,
            session_url=self.session_url(record.session_id),
            expires_at=record.expires_at,
            created_at=record.created_at,
        )

    async def create_session(
        self,
        user_id: uuid.UUID,
        metadata: dict[str, Any] | None = None,
        expires_in_days: int | None = None,
        *,
        store: Store | None = None,
    ) -> SessionResponse:
        """Create a session for an existing user.

        Args:
            user_id: Session owner.
            metadata: Optional client details (user agent, origin, ...).
            expires_in_days: Lifetime override.
            store: Transaction-bound store to join, if any.

        Returns:
            SessionResponse with the new id and URL.

        Raises:
            NotFoundError: If the user does not exist.
        """
        db = store or self._store
        if await db.get_user(user_id) is None:
            raise NotFoundError("User", str(user_id))

        record = await db.create_session(
            user_id=user_id,
            session_id=generate_session_id(),
            expires_at=datetime.now(UTC) + self._lifetime(expires_in_days),
            metadata=metadata,
        )
        logger.info("Session created", extra={"user_id": str(user_id)})
        return self._response(record)

    async def validate_session(self, session_id: str) -> SessionRecord | None:
        """Look up a live session.

        Touches last_accessed_at only when more than the touch interval has
        passed since the previous touch, so hot sessions do not write on
        every request.

        Returns:
            The session, or None if it does not exist or has expired.
        """
        record = await self._store.get_session(session_id)
        if record is None:
            return None

        now = datetime.now(UTC)
        if record.expires_at <= now:
            return None

        if now - record.last_accessed_at > self._touch_interval:
            updated = await self._store.update_session(session_id, last_accessed_at=now)
            if updated is not None:
                record = updated
        return record

    async def _get_owned(self, user_id: uuid.UUID, session_id: str) -> SessionRecord:
        record = await self._store.get_session(session_id)
        if record is None:
            raise NotFoundError("Session")
        if record.user_id != user_id:
            raise ForbiddenError("Unauthorized to access this session")
        return record

    async def refresh_session(
        self,
        user_id: uuid.UUID,
        session_id: str,
        extend_days: int | None = None,
    ) -> SessionResponse:
        """Extend a live session.

        Raises:
            NotFoundError: If the session does not exist.
            ForbiddenError: If another user owns it.
            SessionExpiredError: If it has already expired.
        """
        record = await self._get_owned(user_id, session_id)
        now = datetime.now(UTC)
        if record.expires_at <= now:
            raise SessionExpiredError()

        updated = await self._store.update_session(
            session_id,
            expires_at=now + self._lifetime(extend_days),
            last_accessed_at=now,
        )
        if updated is None:
            raise NotFoundError("Session")
        return self._response(updated)

    async def revoke_session(self, user_id: uuid.UUID, session_id: str) -> None:
        """Delete one of the user's sessions.

        Raises:
            NotFoundError: If the session does not exist.
            ForbiddenError: If another user owns it.
        """
        await self._get_owned(user_id, session_id)
        await self._store.delete_session(session_id)
        logger.info("Session revoked", extra={"user_id": str(user_id)})

    async def revoke_all_sessions(self, user_id: uuid.UUID) -> int:
        """Delete every session of a user. Returns the count removed."""
        count = await self._store.delete_user_sessions(user_id)
        logger.info(
            "All sessions revoked", extra={"user_id": str(user_id), "count": count}
        )
        return count

    async def list_sessions(self, user_id: uuid.UUID) -> list[SessionRecord]:
        """Active sessions, most recently accessed first."""
        now = datetime.now(UTC)
        return [s for s in await self._store.list_sessions(user_id) if s.expires_at > now]

    async def get_session_stats(self, user_id: uuid.UUID) -> SessionStats:
        sessions = await self._store.list_sessions(user_id)
        now = datetime.now(UTC)
        active = sum(1 for s in sessions if s.expires_at > now)
        return SessionStats(
            total=len(sessions),
            active=active,
            expired=len(sessions) - active,
            last_activity=sessions[0].last_accessed_at if sessions else None,
        )

    async def cleanup_expired_sessions(self) -> int:
        """Bulk delete expired sessions. Safe to run concurrently.

        Returns:
            Number of sessions removed by this call.
        """
        count = await self._store.delete_expired_sessions(datetime.now(UTC))
        if count:
            logger.info("Expired sessions removed", extra={"count": count})
        return count
