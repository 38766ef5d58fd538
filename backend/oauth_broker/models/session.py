"""Session model - opaque login sessions issued after a successful callback."""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import DateTime, ForeignKey, String, func, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from oauth_broker.models.base import Base

if TYPE_CHECKING:
    from oauth_broker.models.user import User

_DEFAULT_UUID = text("gen_random_uuid()")


class Session(Base):
    """Login session.

    Attributes:
        id: UUID primary key.
        session_id: Opaque random identifier handed to the client. Unique.
        user_id: FK to users table.
        created_at: Creation timestamp.
        expires_at: Hard expiry.
        last_accessed_at: Last validation that touched the row.
        session_metadata: Free-form JSON (column "metadata").
    """

    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
        default=uuid.uuid4,
    )
    session_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    last_accessed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    # "metadata" is reserved on declarative classes
    session_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSONB(),
        nullable=True,
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="sessions")
