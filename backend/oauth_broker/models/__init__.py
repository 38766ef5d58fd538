"""SQLAlchemy ORM models for the OAuth broker.

All models are exported from this module for convenient imports:
    from oauth_broker.models import User, OAuthConnection, ...

Models:
- user.py: User
- linked_email.py: LinkedEmail
- oauth_connection.py: OAuthConnection
- session.py: Session
"""

from oauth_broker.models.base import Base, TimestampMixin
from oauth_broker.models.linked_email import LinkedEmail
from oauth_broker.models.oauth_connection import OAuthConnection
from oauth_broker.models.session import Session
from oauth_broker.models.user import User

__all__ = [
    # Base classes
    "Base",
    "TimestampMixin",
    # Models
    "User",
    "LinkedEmail",
    "OAuthConnection",
    "Session",
]
