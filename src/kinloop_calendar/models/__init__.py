"""Domain models for room calendar synchronization."""

from kinloop_calendar.models.credential import (
    DEFAULT_CALENDAR_ID,
    ConnectionStatus,
    CredentialRecord,
    normalize_calendar_ids,
)
from kinloop_calendar.models.event import (
    EventPatch,
    EventSource,
    LocalEvent,
    LocalEventFields,
)

__all__ = [
    # Credentials
    "DEFAULT_CALENDAR_ID",
    "ConnectionStatus",
    "CredentialRecord",
    "normalize_calendar_ids",
    # Events
    "EventPatch",
    "EventSource",
    "LocalEvent",
    "LocalEventFields",
]
