"""Credential models for the Google connection."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

DEFAULT_CALENDAR_ID = "primary"


def normalize_calendar_ids(calendar_ids: list[str] | None) -> list[str]:
    """Drop blanks and duplicates, keep order, fall back to the primary calendar."""
    seen: list[str] = []
    for calendar_id in calendar_ids or []:
        calendar_id = calendar_id.strip()
        if calendar_id and calendar_id not in seen:
            seen.append(calendar_id)
    return seen or [DEFAULT_CALENDAR_ID]


@dataclass
class CredentialRecord:
    """Delegated Google access for one user, as held by the credential store."""

    user_id: str
    access_token: str
    refresh_token: str
    access_token_expiry: datetime
    selected_calendar_ids: list[str] = field(
        default_factory=lambda: [DEFAULT_CALENDAR_ID]
    )
    linked_email: str | None = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    scope: str | None = None

    def __post_init__(self) -> None:
        if not self.refresh_token:
            raise ValueError("A stored Google credential needs a refresh token")
        self.selected_calendar_ids = normalize_calendar_ids(self.selected_calendar_ids)

    def is_access_token_fresh(self, now: datetime, margin: timedelta) -> bool:
        """True when the access token stays valid for longer than `margin`."""
        return self.access_token_expiry - margin > now

    @property
    def default_calendar_id(self) -> str:
        """Calendar that new exports go to."""
        return self.selected_calendar_ids[0]


@dataclass
class ConnectionStatus:
    """What the room UI shows about a user's Google connection."""

    connected: bool
    linked_email: str | None = None
    selected_calendar_ids: list[str] = field(default_factory=list)
    connected_at: datetime | None = None
