"""LinkedEmail model - verified email addresses attached to a user.

An email belongs to at most one user. Account linking matches on this table.
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from oauth_broker.models.base import Base

if TYPE_CHECKING:
    from oauth_broker.models.user import User

_DEFAULT_UUID = text("gen_random_uuid()")


class LinkedEmail(Base):
    """Email address verified through a provider login.

    Attributes:
        id: UUID primary key.
        user_id: FK to users table.
        email: Normalized (trimmed, lowercased) address. Globally unique.
        provider: Provider that verified the address.
        is_primary: Whether this is the user's primary address.
        verified_at: When the provider reported the address.
        linked_at: When the address was attached to the user.
    """

    __tablename__ = "linked_emails"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    is_primary: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("false"),
        default=False,
    )
    verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="linked_emails")
