"""Translation between room events and Google Calendar events.

Pure functions of their input: no I/O, no clock.

## Mapping

| Room event | Google event |
|------------|--------------|
| title | summary (blank -> "Untitled event" on import) |
| date + all_day | start.date / end.date, end exclusive (date + 1 day) |
| date + start_time/end_time | start.dateTime / end.dateTime with timeZone |
| participants (member ids) | attendees (emails) via MemberDirectory |
| description | description |

Timed events are written as wall-clock times qualified by the translator's
zone. On import, instants carrying an offset are converted to that zone so
the room shows the same local time Google shows the user.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from kinloop_calendar.calendar.google_calendar import Attendee, EventTime, RemoteEvent
from kinloop_calendar.models.event import LocalEventFields

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled event"


class MemberDirectory:
    """Resolves room member ids to attendee emails and back."""

    def __init__(self, emails_by_member: Mapping[str, str] | None = None):
        self._emails = {
            member_id: email for member_id, email in (emails_by_member or {}).items() if email
        }
        self._members = {email.lower(): member_id for member_id, email in self._emails.items()}

    def email_for(self, member_id: str) -> str | None:
        return self._emails.get(member_id)

    def member_for(self, email: str) -> str | None:
        return self._members.get(email.lower())


class EventTranslator:
    """Bidirectional mapping between room events and Google events.

    Example:
        ```python
        translator = EventTranslator("Europe/Berlin", MemberDirectory({"u1": "a@x.org"}))
        remote = translator.to_remote(local_event)
        fields = translator.to_local(remote_event)
        ```
    """

    def __init__(
        self,
        time_zone: str = "UTC",
        directory: MemberDirectory | None = None,
    ):
        self.time_zone = time_zone
        self.zone = ZoneInfo(time_zone)
        self.directory = directory or MemberDirectory()

    def to_remote(self, event: LocalEventFields) -> RemoteEvent:
        """Build the Google representation of a room event."""
        if event.is_timed:
            start_time = event.start_time
            end_time = event.end_time
            # An end before the start means the event runs past midnight
            end_date = event.date if end_time >= start_time else event.date + timedelta(days=1)
            start = EventTime(
                date_time=_wall_clock(event.date, start_time),
                time_zone=self.time_zone,
            )
            end = EventTime(
                date_time=_wall_clock(end_date, end_time),
                time_zone=self.time_zone,
            )
        else:
            start = EventTime(date=event.date.isoformat())
            end = EventTime(date=(event.date + timedelta(days=1)).isoformat())

        attendees = []
        for member_id in event.participants:
            email = self.directory.email_for(member_id)
            if email:
                attendees.append(Attendee(email=email))

        return RemoteEvent(
            summary=event.title,
            description=event.description,
            start=start,
            end=end,
            attendees=attendees,
        )

    def to_local(self, remote: RemoteEvent) -> LocalEventFields:
        """Build room event fields from a Google event.

        Raises:
            ValueError: If the event has neither a start date nor a start time
        """
        title = remote.summary if remote.summary and remote.summary.strip() else UNTITLED_EVENT

        participants = []
        for attendee in remote.attendees:
            member_id = self.directory.member_for(attendee.email)
            if member_id:
                participants.append(member_id)

        if remote.start.date_time:
            start = self._local_instant(remote.start)
            end = self._local_instant(remote.end) if remote.end.date_time else start
            return LocalEventFields(
                title=title,
                date=start.date(),
                start_time=start.strftime("%H:%M"),
                end_time=end.strftime("%H:%M"),
                description=remote.description,
                all_day=False,
                participants=participants,
            )

        if remote.start.date:
            return LocalEventFields(
                title=title,
                date=date.fromisoformat(remote.start.date),
                description=remote.description,
                all_day=True,
                participants=participants,
            )

        raise ValueError(f"Google event {remote.id} has no start")

    def _local_instant(self, value: EventTime) -> datetime:
        parsed = datetime.fromisoformat(value.date_time.replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            return parsed.astimezone(self.zone)

        if not value.time_zone or value.time_zone == self.time_zone:
            return parsed
        try:
            own_zone = ZoneInfo(value.time_zone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown time zone {value.time_zone!r}, keeping wall clock")
            return parsed
        return parsed.replace(tzinfo=own_zone).astimezone(self.zone)


def _wall_clock(day: date, hhmm: str) -> str:
    return f"{day.isoformat()}T{hhmm}:00"


def to_remote(event: LocalEventFields, time_zone: str = "UTC") -> RemoteEvent:
    """Translate with a default translator for `time_zone`."""
    return EventTranslator(time_zone).to_remote(event)


def to_local(remote: RemoteEvent, time_zone: str = "UTC") -> LocalEventFields:
    """Translate with a default translator for `time_zone`."""
    return EventTranslator(time_zone).to_local(remote)
