"""Event models for room calendars.

`LocalEventFields` is the part of a room event that the translator reads and
writes. `LocalEvent` adds identity and sync metadata. `EventPatch` is the
sparse update used for every write to an existing event: fields that are not
set are left alone, fields set to None are cleared.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class EventSource(str, Enum):
    """Where a room event came from."""

    LOCAL = "local"  # Authored in the room
    REMOTE_MIRROR = "remote-mirror"  # Imported from Google Calendar


def _dedupe(values: list[str]) -> list[str]:
    result: list[str] = []
    for value in values:
        if value and value not in result:
            result.append(value)
    return result


class LocalEventFields(BaseModel):
    """Calendar content of a room event."""

    title: str = Field(..., min_length=1)
    date: dt.date
    start_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    end_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    description: str | None = None
    all_day: bool = False
    participants: list[str] = Field(
        default_factory=list, description="Room member ids"
    )

    @field_validator("participants")
    @classmethod
    def unique_participants(cls, v: list[str]) -> list[str]:
        return _dedupe(v)

    @model_validator(mode="after")
    def check_times(self) -> LocalEventFields:
        if not self.all_day and (self.start_time is None) != (self.end_time is None):
            raise ValueError("start_time and end_time must be given together")
        if self.all_day or self.start_time is None:
            # An event without times is an all-day event
            self.all_day = True
            self.start_time = None
            self.end_time = None
        return self

    @property
    def is_timed(self) -> bool:
        """Timed events have a start time and are not flagged all-day."""
        return not self.all_day and self.start_time is not None


class LocalEvent(LocalEventFields):
    """A room event as stored locally."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    room_id: str
    source: EventSource = EventSource.LOCAL
    remote_event_id: str | None = None
    remote_calendar_id: str | None = None
    synced_at: dt.datetime | None = None
    created_by: str
    created_at: dt.datetime | None = None

    @property
    def is_linked(self) -> bool:
        """A local event that has been exported to Google."""
        return self.source == EventSource.LOCAL and bool(self.remote_event_id)


# Fields whose column is NOT NULL
_REQUIRED_FIELDS = frozenset({"title", "date", "all_day", "participants", "source"})


class EventPatch(BaseModel):
    """Sparse update of a room event.

    Example:
        ```python
        # Unlink an exported event, leave everything else untouched
        EventPatch(remote_event_id=None, remote_calendar_id=None, synced_at=now)
        ```
    """

    title: str | None = Field(default=None, min_length=1)
    date: dt.date | None = None
    start_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    end_time: str | None = Field(default=None, pattern=TIME_PATTERN)
    description: str | None = None
    all_day: bool | None = None
    participants: list[str] | None = None
    source: EventSource | None = None
    remote_event_id: str | None = None
    remote_calendar_id: str | None = None
    synced_at: dt.datetime | None = None

    @model_validator(mode="after")
    def reject_null_required(self) -> EventPatch:
        for name in self.model_fields_set & _REQUIRED_FIELDS:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared")
        return self

    @classmethod
    def from_fields(cls, fields: LocalEventFields, **extra: Any) -> EventPatch:
        """Patch that overwrites every content field, including clearing absent ones."""
        values = fields.model_dump(include=set(LocalEventFields.model_fields))
        values.update(extra)
        return cls(**values)

    def changes(self) -> dict[str, Any]:
        """Column values to write. Unset fields are omitted."""
        values = self.model_dump(exclude_unset=True)
        if "source" in values:
            values["source"] = EventSource(values["source"]).value
        if "participants" in values:
            values["participants"] = _dedupe(values["participants"])
        return values
