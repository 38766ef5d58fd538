"""Persistence layer.

Exports:
    Store interface and record types
    MemoryStore for tests and local development
"""

from oauth_broker.storage.base import (
    ConnectionRecord,
    LinkedEmailRecord,
    SessionRecord,
    Store,
    UserRecord,
    normalize_email,
)
from oauth_broker.storage.memory import MemoryStore

__all__ = [
    "Store",
    "UserRecord",
    "LinkedEmailRecord",
    "ConnectionRecord",
    "SessionRecord",
    "normalize_email",
    "MemoryStore",
]
