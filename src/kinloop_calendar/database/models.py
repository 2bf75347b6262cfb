"""Database models for calendar synchronization.

## Security Notes

- Google access and refresh tokens are encrypted at rest using Fernet
- The encryption key is derived from the application secret
- PostgreSQL should be configured with SSL and disk encryption

## Schema Overview

```
google_credentials   one row per user (Credential Store)
room_events          one row per room event, local or mirrored
```

A room event is either authored in the room (`source = local`) or imported
from Google (`source = remote-mirror`). The pair
(`remote_calendar_id`, `remote_event_id`) is unique per room and creator, so
repeated imports cannot duplicate a Google event.
"""

from __future__ import annotations

import uuid
import datetime as dt
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Index,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend.

    SQLite drops the offset, so values read back naive are tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect) -> dt.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)

    def process_result_value(self, value: dt.datetime | None, dialect) -> dt.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
        list[str]: JSONType,
        dt.datetime: UTCDateTime,
    }


class GoogleCredential(Base):
    """Delegated Google Calendar access for one user.

    Tokens are encrypted in the store layer, not at the database level, to
    allow for key rotation.
    """

    __tablename__ = "google_credentials"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # Tokens (encrypted)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    access_token_expiry: Mapped[dt.datetime] = mapped_column(nullable=False)
    scope: Mapped[str | None] = mapped_column(Text)

    # Account
    linked_email: Mapped[str | None] = mapped_column(String(255))
    selected_calendar_ids: Mapped[list[str]] = mapped_column(nullable=False)

    # Timestamps
    connected_at: Mapped[dt.datetime] = mapped_column(nullable=False, default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return f"<GoogleCredential user_id={self.user_id}>"


class RoomEvent(Base):
    """An event in a room's calendar."""

    __tablename__ = "room_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    room_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Event data
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str | None] = mapped_column(String(5))  # HH:MM
    end_time: Mapped[str | None] = mapped_column(String(5))
    description: Mapped[str | None] = mapped_column(Text)
    all_day: Mapped[bool] = mapped_column(Boolean, default=False)
    participants: Mapped[list[str]] = mapped_column(nullable=False, default=list)

    # Sync metadata
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="local")
    remote_event_id: Mapped[str | None] = mapped_column(String(1024))
    remote_calendar_id: Mapped[str | None] = mapped_column(String(255))
    synced_at: Mapped[dt.datetime | None] = mapped_column()

    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(nullable=False, default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "room_id",
            "created_by",
            "remote_calendar_id",
            "remote_event_id",
            name="uq_room_event_remote",
        ),
        Index("ix_room_events_room", "room_id"),
        Index(
            "ix_room_events_mirror",
            "room_id",
            "source",
            "remote_calendar_id",
            "created_by",
        ),
    )

    def __repr__(self) -> str:
        return f"<RoomEvent {self.title[:30]}>"
