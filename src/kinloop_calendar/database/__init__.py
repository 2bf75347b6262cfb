"""Database module for calendar synchronization.

This module provides:
- SQLAlchemy async database connection
- Credential and room event models
- Encrypted storage for Google OAuth tokens
- The credential store and room event store used by the sync engine
"""

from kinloop_calendar.database.connection import (
    close_db,
    create_tables,
    get_db,
    get_session_factory,
    init_db,
)
from kinloop_calendar.database.credentials import CredentialStore
from kinloop_calendar.database.events import EventStore
from kinloop_calendar.database.models import (
    Base,
    GoogleCredential,
    RoomEvent,
)

__all__ = [
    # Connection
    "close_db",
    "create_tables",
    "get_db",
    "get_session_factory",
    "init_db",
    # Stores
    "CredentialStore",
    "EventStore",
    # Models
    "Base",
    "GoogleCredential",
    "RoomEvent",
]
