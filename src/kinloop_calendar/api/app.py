"""FastAPI application factory.

Creates and configures the FastAPI application with all routes and middleware.

## Usage

```python
from kinloop_calendar.api import create_app

app = create_app()

# Run with uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
```

## Configuration

The app is configured via environment variables. See `kinloop_calendar.config`
for available settings.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from kinloop_calendar.calendar.sync import CalendarSyncService, build_sync_service
from kinloop_calendar.config import configure_logging, get_settings
from kinloop_calendar.database.connection import close_db, get_session_factory, init_db
from kinloop_calendar.errors import (
    EventNotFound,
    InvalidOAuthState,
    ReconnectRequired,
    RemoteCalendarError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown tasks:
    - Initialize database connection
    - Build the sync service (unless one was injected)
    - Clean up on shutdown
    """
    settings = get_settings()
    configure_logging()

    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    owns_database = getattr(app.state, "sync_service", None) is None
    if owns_database:
        await init_db()
        app.state.sync_service = build_sync_service(settings, get_session_factory())

    yield

    # Shutdown
    logger.info("Shutting down")
    if owns_database:
        app.state.sync_service = None
        await close_db()


async def _reconnect_required(request: Request, exc: ReconnectRequired) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": str(exc), "reconnect": True},
    )


async def _event_not_found(request: Request, exc: EventNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


async def _invalid_state(request: Request, exc: InvalidOAuthState) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


async def _remote_error(request: Request, exc: RemoteCalendarError) -> JSONResponse:
    logger.error(f"Google Calendar request failed: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": f"Google Calendar request failed: {exc}"},
    )


def create_app(sync_service: CalendarSyncService | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        sync_service: Prebuilt service; when given, the app does not open its
            own database connection

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Google Calendar sync for KinLoop rooms",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.sync_service = sync_service

    app.add_exception_handler(ReconnectRequired, _reconnect_required)
    app.add_exception_handler(EventNotFound, _event_not_found)
    app.add_exception_handler(InvalidOAuthState, _invalid_state)
    app.add_exception_handler(RemoteCalendarError, _remote_error)

    # Include routers
    from kinloop_calendar.api.routes import google

    app.include_router(google.router, prefix="/api/google", tags=["Google Calendar"])

    # Health check endpoint
    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    return app
