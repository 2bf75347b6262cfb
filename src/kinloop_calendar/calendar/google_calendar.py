"""Google Calendar API client.

Provides the remote operations the sync engine needs:
- List calendars
- List events in a time window
- Create, update and delete events

## API Documentation

https://developers.google.com/calendar/api/v3/reference

## Authentication

Every call takes the caller's access token. The client keeps no token and
no service object between calls; token refresh belongs to `TokenManager`.

## Errors

`HttpError` responses are normalized:

| Status | Raised |
|--------|--------|
| 401 | Unauthorized |
| 404, 410 | NotFound |
| 429, 403 rate limit reasons | RateLimited |
| 5xx, transport failure | RemoteServerError |
| other 4xx | RemoteClientError |

## Rate Limits

Google Calendar API has quotas:
- 1,000,000 queries per day (default)
- 500 queries per 100 seconds per user
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from kinloop_calendar.errors import (
    NotFound,
    RateLimited,
    RemoteCalendarError,
    RemoteClientError,
    RemoteServerError,
    Unauthorized,
)

logger = logging.getLogger(__name__)

WRITABLE_ACCESS_ROLES = ("owner", "writer")
RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})


@dataclass
class CalendarInfo:
    """A calendar the user can write to."""

    id: str
    name: str
    primary: bool = False
    access_role: str = "reader"
    background_color: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> CalendarInfo:
        """Create from Google Calendar API response."""
        return cls(
            id=data["id"],
            name=data.get("summaryOverride") or data.get("summary", ""),
            primary=data.get("primary", False),
            access_role=data.get("accessRole", "reader"),
            background_color=data.get("backgroundColor"),
        )


@dataclass
class EventTime:
    """Start or end of a Google event: a date for all-day events, else an instant."""

    date: str | None = None  # YYYY-MM-DD
    date_time: str | None = None  # RFC 3339
    time_zone: str | None = None

    @property
    def is_date_only(self) -> bool:
        return self.date is not None and self.date_time is None

    @classmethod
    def from_api(cls, data: dict[str, Any] | None) -> EventTime:
        data = data or {}
        return cls(
            date=data.get("date"),
            date_time=data.get("dateTime"),
            time_zone=data.get("timeZone"),
        )

    def to_api(self) -> dict[str, Any]:
        if self.date_time is not None:
            body: dict[str, Any] = {"dateTime": self.date_time}
            if self.time_zone:
                body["timeZone"] = self.time_zone
            return body
        return {"date": self.date}


@dataclass
class Attendee:
    """An invited participant."""

    email: str
    display_name: str | None = None
    response_status: str | None = None


@dataclass
class RemoteEvent:
    """A Google Calendar event."""

    id: str | None = None
    summary: str | None = None
    description: str | None = None
    start: EventTime = field(default_factory=EventTime)
    end: EventTime = field(default_factory=EventTime)
    attendees: list[Attendee] = field(default_factory=list)
    status: str = "confirmed"  # confirmed, tentative, cancelled
    html_link: str | None = None
    updated: datetime | None = None
    etag: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def is_all_day(self) -> bool:
        return self.start.is_date_only

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RemoteEvent:
        """Create from Google Calendar API response."""
        updated = None
        if data.get("updated"):
            updated = datetime.fromisoformat(data["updated"].replace("Z", "+00:00"))

        return cls(
            id=data.get("id"),
            summary=data.get("summary"),
            description=data.get("description"),
            start=EventTime.from_api(data.get("start")),
            end=EventTime.from_api(data.get("end")),
            attendees=[
                Attendee(
                    email=a["email"],
                    display_name=a.get("displayName"),
                    response_status=a.get("responseStatus"),
                )
                for a in data.get("attendees", [])
                if a.get("email")
            ],
            status=data.get("status", "confirmed"),
            html_link=data.get("htmlLink"),
            updated=updated,
            etag=data.get("etag"),
        )

    def to_api_body(self, clear_missing: bool = False) -> dict[str, Any]:
        """Convert to API insert/patch body format.

        A patch leaves omitted fields untouched at Google, so `clear_missing`
        sends an empty description and attendee list instead of omitting them.
        """
        body: dict[str, Any] = {
            "summary": self.summary or "",
            "start": self.start.to_api(),
            "end": self.end.to_api(),
        }
        if self.description is not None:
            body["description"] = self.description
        elif clear_missing:
            body["description"] = ""
        if self.attendees or clear_missing:
            body["attendees"] = [
                {"email": a.email, **({"displayName": a.display_name} if a.display_name else {})}
                for a in self.attendees
            ]
        return body


def build_calendar_service(access_token: str) -> Any:
    """Build a Calendar v3 service bound to one access token."""
    credentials = Credentials(token=access_token)
    return build("calendar", "v3", credentials=credentials, cache_discovery=False)


class GoogleCalendarClient:
    """Stateless client for the Google Calendar API.

    Example:
        ```python
        client = GoogleCalendarClient()

        calendars = client.list_calendars(token)
        events = client.list_events(token, "primary", time_min, time_max)
        created = client.create_event(token, "primary", remote_event)
        ```

    Calls block on network I/O; async callers run them in a worker thread.
    """

    def __init__(
        self,
        service_factory: Callable[[str], Any] = build_calendar_service,
        page_size: int = 250,
    ):
        """Initialize the client.

        Args:
            service_factory: Builds a Calendar service for an access token
            page_size: maxResults per list request
        """
        self._service_factory = service_factory
        self.page_size = page_size

    def list_calendars(self, access_token: str) -> list[CalendarInfo]:
        """List calendars the user can write events to."""
        service = self._service_factory(access_token)
        calendars = []
        page_token = None

        while True:
            result = self._execute(
                service.calendarList().list(pageToken=page_token),
                "list calendars",
            )
            for item in result.get("items", []):
                if item.get("accessRole") in WRITABLE_ACCESS_ROLES:
                    calendars.append(CalendarInfo.from_api(item))

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return calendars

    def list_events(
        self,
        access_token: str,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[RemoteEvent]:
        """List live events of a calendar within [time_min, time_max).

        Pages are fetched until exhausted. Recurring events are expanded into
        instances and cancelled events are dropped. Listing order is kept.
        """
        service = self._service_factory(access_token)
        events = []
        params: dict[str, Any] = {
            "calendarId": calendar_id,
            "timeMin": time_min.isoformat(),
            "timeMax": time_max.isoformat(),
            "maxResults": self.page_size,
            "singleEvents": True,  # Expand recurring events
            "orderBy": "startTime",
        }

        while True:
            result = self._execute(service.events().list(**params), "list events")

            for item in result.get("items", []):
                if item.get("status") == "cancelled" or not item.get("id"):
                    continue
                events.append(RemoteEvent.from_api(item))

            page_token = result.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        logger.debug(f"Listed {len(events)} events from calendar {calendar_id}")
        return events

    def create_event(
        self, access_token: str, calendar_id: str, event: RemoteEvent
    ) -> RemoteEvent:
        """Insert an event. Google assigns the id."""
        service = self._service_factory(access_token)
        result = self._execute(
            service.events().insert(calendarId=calendar_id, body=event.to_api_body()),
            "create event",
        )
        return RemoteEvent.from_api(result)

    def update_event(
        self,
        access_token: str,
        calendar_id: str,
        remote_event_id: str,
        event: RemoteEvent,
    ) -> RemoteEvent:
        """Patch an existing event with the fields of `event`."""
        service = self._service_factory(access_token)
        result = self._execute(
            service.events().patch(
                calendarId=calendar_id,
                eventId=remote_event_id,
                body=event.to_api_body(clear_missing=True),
            ),
            "update event",
        )
        return RemoteEvent.from_api(result)

    def delete_event(
        self, access_token: str, calendar_id: str, remote_event_id: str
    ) -> None:
        """Delete an event. An event that is already gone counts as deleted."""
        service = self._service_factory(access_token)
        try:
            self._execute(
                service.events().delete(calendarId=calendar_id, eventId=remote_event_id),
                "delete event",
            )
        except NotFound:
            logger.debug(f"Event {remote_event_id} already gone from {calendar_id}")

    def _execute(self, request: Any, action: str) -> dict[str, Any]:
        try:
            return request.execute() or {}
        except HttpError as e:
            raise normalize_http_error(e, action) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise RemoteServerError(f"Failed to {action}: {e}") from e


def _error_reasons(content: bytes | str | None) -> set[str]:
    if not content:
        return set()
    try:
        data = json.loads(content)
    except (TypeError, ValueError):
        return set()
    if not isinstance(data, dict) or not isinstance(data.get("error"), dict):
        return set()
    return {
        item.get("reason", "")
        for item in data["error"].get("errors", [])
        if isinstance(item, dict)
    }


def normalize_http_error(error: HttpError, action: str) -> RemoteCalendarError:
    """Map a googleapiclient HttpError onto the sync error taxonomy."""
    status = int(error.resp.status)
    content = error.content
    body = content.decode("utf-8", "replace") if isinstance(content, bytes) else content
    message = f"Failed to {action}: {status}"

    if status == 401:
        return Unauthorized(message, status_code=status, response_body=body)
    if status in (404, 410):
        return NotFound(message, status_code=status, response_body=body)
    if status == 429 or (status == 403 and _error_reasons(content) & RATE_LIMIT_REASONS):
        retry_after = error.resp.get("retry-after")
        try:
            delay = float(retry_after) if retry_after else None
        except ValueError:
            delay = None
        return RateLimited(message, status_code=status, response_body=body, retry_after=delay)
    if status >= 500:
        return RemoteServerError(message, status_code=status, response_body=body)
    return RemoteClientError(message, status_code=status, response_body=body)
