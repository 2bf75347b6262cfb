"""FastAPI application and routes.

This module provides the REST API of the calendar sync service.

## API Structure

- /api/google/auth, /api/google/callback - Google OAuth connection
- /api/google/status, /api/google/calendars - Connection and calendar selection
- /api/google/sync - Import Google events into a room
- /api/google/export, /api/google/export-all - Push room events to Google
- /api/google/disconnect - Revoke the connection
- /health - Health check

## Errors

- 401 with `{"reconnect": true}` when the user must connect Google again
- 404 when a room event does not exist
- 502 when Google rejects a request
"""

from kinloop_calendar.api.app import create_app

__all__ = ["create_app"]
