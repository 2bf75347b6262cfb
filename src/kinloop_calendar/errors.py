"""Error taxonomy for calendar synchronization.

Two families matter to callers:

- `ReconnectRequired` and its subclasses are terminal for the current call.
  The user has to go through the Google consent screen again.
- `RemoteCalendarError` and its subclasses describe a failed call against the
  Google Calendar API. `retryable` tells the engine whether backing off and
  trying again can help.
"""

from __future__ import annotations


class CalendarSyncError(Exception):
    """Base exception for the calendar sync engine."""


class ReconnectRequired(CalendarSyncError):
    """The Google connection is unusable and must be re-established."""


class AuthExchangeError(ReconnectRequired):
    """Exchanging an authorization code for tokens failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ReauthorizationRequired(ReconnectRequired):
    """No credentials are stored for the user."""

    def __init__(self, user_id: str):
        super().__init__(f"Google Calendar not connected for user {user_id}")
        self.user_id = user_id


class TokenRefreshFailed(ReconnectRequired):
    """Google rejected the stored refresh token (revoked or expired grant)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteCalendarError(CalendarSyncError):
    """A Google Calendar API call failed."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class Unauthorized(RemoteCalendarError):
    """The access token was rejected."""


class NotFound(RemoteCalendarError):
    """The calendar or event does not exist (or no longer exists)."""


class RateLimited(RemoteCalendarError):
    """Google asked us to slow down."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code=status_code, response_body=response_body)
        self.retry_after = retry_after


class RemoteServerError(RemoteCalendarError):
    """Google returned a 5xx or the request never completed."""

    retryable = True


class RemoteClientError(RemoteCalendarError):
    """Any other 4xx response. Not retryable."""


class EventNotFound(CalendarSyncError):
    """A local event record does not exist in the given room."""

    def __init__(self, room_id: str, event_id: str):
        super().__init__(f"Event {event_id} not found in room {room_id}")
        self.room_id = room_id
        self.event_id = event_id


class InvalidOAuthState(CalendarSyncError):
    """The OAuth state parameter could not be verified."""
