"""Calendar integration module.

Keeps room events and Google Calendar in step.

## Features

- List the user's writable calendars and choose which ones to import
- Import (mirror) events from the selected calendars into a room
- Export room-authored events to the user's first selected calendar

## Google Calendar API

Uses the Google Calendar API v3:
- https://developers.google.com/calendar/api/v3/reference

## Event Processing

1. Fetch events from each selected calendar in a month-aligned window
2. Translate them into room event fields
3. Create, update or delete mirror records
4. Push room-authored events back on export
"""

from kinloop_calendar.calendar.google_calendar import (
    Attendee,
    CalendarInfo,
    EventTime,
    GoogleCalendarClient,
    RemoteEvent,
)
from kinloop_calendar.calendar.sync import (
    CalendarListing,
    CalendarSyncService,
    ExportAction,
    ExportOutcome,
    ExportResult,
    SyncResult,
    build_sync_service,
    reconciliation_window,
)
from kinloop_calendar.calendar.translator import (
    EventTranslator,
    MemberDirectory,
)

__all__ = [
    "Attendee",
    "CalendarInfo",
    "EventTime",
    "GoogleCalendarClient",
    "RemoteEvent",
    "CalendarListing",
    "CalendarSyncService",
    "ExportAction",
    "ExportOutcome",
    "ExportResult",
    "SyncResult",
    "build_sync_service",
    "reconciliation_window",
    "EventTranslator",
    "MemberDirectory",
]
