"""FastAPI dependencies for the calendar routes.

The service graph is built once in the application lifespan and kept on
`app.state`. Routes reach it through these dependencies so tests can swap
it out.

## Usage

```python
from fastapi import Depends
from kinloop_calendar.api.dependencies import get_sync_service

@router.post("/sync")
async def sync(service: CalendarSyncService = Depends(get_sync_service)):
    ...
```
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from kinloop_calendar.auth.google import GoogleOAuth
from kinloop_calendar.auth.tokens import TokenManager
from kinloop_calendar.calendar.sync import CalendarSyncService


def get_sync_service(request: Request) -> CalendarSyncService:
    """Return the application's sync service."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Calendar sync is not available",
        )
    return service


def get_token_manager(
    service: CalendarSyncService = Depends(get_sync_service),
) -> TokenManager:
    return service.tokens


def get_google_oauth(
    tokens: TokenManager = Depends(get_token_manager),
) -> GoogleOAuth:
    return tokens.oauth
