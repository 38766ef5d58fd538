"""OAuthConnection model - a user's grant for one provider account.

One row per (user, provider, email). Multiple rows per user and provider
when the user connected several accounts of the same provider.
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from oauth_broker.models.base import Base

if TYPE_CHECKING:
    from oauth_broker.models.user import User

_DEFAULT_UUID = text("gen_random_uuid()")


class OAuthConnection(Base):
    """Stored OAuth tokens and refresh health for a provider account.

    access_token and refresh_token hold AES-256-GCM ciphertext produced by
    TokenCipher. Plaintext tokens are never written to this table.

    Attributes:
        id: UUID primary key.
        user_id: FK to users table.
        provider: Provider name ("google", "github").
        email: Normalized provider account email.
        scopes: Granted scopes.
        access_token: Encrypted access token.
        refresh_token: Encrypted refresh token, if the provider issued one.
        expires_at: Access token expiry.
        connected_at: When the connection was first made.
        last_used_at: Last time a token was handed out.
        refresh_failure_count: Consecutive failed refreshes.
        last_refresh_error: Message from the most recent failed refresh.
        last_refresh_attempt: Time of the most recent refresh attempt.
        is_healthy: False once refresh_failure_count reaches the threshold.
    """

    __tablename__ = "oauth_connections"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "email", name="uq_oauth_connections_user_provider_email"
        ),
    )

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
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    scopes: Mapped[list[str]] = mapped_column(
        ARRAY(String()),
        nullable=False,
        server_default=text("'{}'"),
        default=list,
    )
    access_token: Mapped[str] = mapped_column(Text(), nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text(), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    connected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    last_used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    refresh_failure_count: Mapped[int] = mapped_column(
        Integer(),
        nullable=False,
        server_default=text("0"),
        default=0,
    )
    last_refresh_error: Mapped[str | None] = mapped_column(Text(), nullable=True)
    last_refresh_attempt: Mapped[datetime | None] = mapped_column(nullable=True)
    is_healthy: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("true"),
        default=True,
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="connections")
