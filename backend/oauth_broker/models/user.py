"""User model - the account that owns connections, emails and sessions."""

import uuid
from typing import TYPE_CHECKING

from sqlalchemy import Integer, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from oauth_broker.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from oauth_broker.models.linked_email import LinkedEmail
    from oauth_broker.models.oauth_connection import OAuthConnection
    from oauth_broker.models.session import Session

_DEFAULT_UUID = text("gen_random_uuid()")
_CASCADE_ALL_DELETE_ORPHAN = "all, delete-orphan"


class User(Base, TimestampMixin):
    """Broker user.

    Attributes:
        id: UUID primary key.
        primary_email: Normalized email the account was created with.
        credits: Balance in cents. New accounts start with 500.
        created_at: Account creation timestamp (from TimestampMixin).
        updated_at: Last modification timestamp (from TimestampMixin).
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
        default=uuid.uuid4,
    )
    primary_email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    credits: Mapped[int] = mapped_column(
        Integer(),
        nullable=False,
        server_default=text("500"),
        default=500,
    )

    # Relationships
    linked_emails: Mapped[list["LinkedEmail"]] = relationship(
        "LinkedEmail",
        back_populates="user",
        cascade=_CASCADE_ALL_DELETE_ORPHAN,
        passive_deletes=True,
    )
    connections: Mapped[list["OAuthConnection"]] = relationship(
        "OAuthConnection",
        back_populates="user",
        cascade=_CASCADE_ALL_DELETE_ORPHAN,
        passive_deletes=True,
    )
    sessions: Mapped[list["Session"]] = relationship(
        "Session",
        back_populates="user",
        cascade=_CASCADE_ALL_DELETE_ORPHAN,
        passive_deletes=True,
    )
