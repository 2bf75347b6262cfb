"""Google Calendar routes.

Handles the Google connection of a room member and the sync operations.

## OAuth Flow

1. GET /api/google/auth - Redirect to Google consent screen
2. GET /api/google/callback - Exchange the code, store credentials
3. POST /api/google/disconnect - Revoke and forget the credentials

## Sync

- POST /api/google/sync - Import selected calendars into a room
- POST /api/google/export - Push (or remove) one room event
- POST /api/google/export-all - Push every room-authored event

Callers are identified by the `uid` they send; authenticating that uid is
the job of the gateway in front of this service.
"""

from __future__ import annotations

import logging
from datetime import datetime
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from kinloop_calendar.api.dependencies import (
    get_google_oauth,
    get_sync_service,
    get_token_manager,
)
from kinloop_calendar.auth.google import GoogleOAuth
from kinloop_calendar.auth.state import decode_oauth_state, encode_oauth_state
from kinloop_calendar.auth.tokens import TokenManager
from kinloop_calendar.calendar.sync import CalendarSyncService, ExportAction
from kinloop_calendar.errors import InvalidOAuthState, ReconnectRequired

logger = logging.getLogger(__name__)

router = APIRouter()

DASHBOARD_URL = "/dashboard"


class CamelModel(BaseModel):
    """Request body accepting the camelCase keys the web client sends."""

    model_config = ConfigDict(populate_by_name=True)


class RoomRequest(CamelModel):
    uid: str = Field(min_length=1)
    room_id: str = Field(min_length=1, alias="roomId")


class ExportRequest(RoomRequest):
    event_id: str = Field(min_length=1, alias="eventId")
    action: ExportAction = ExportAction.UPSERT


class SelectCalendarsRequest(CamelModel):
    uid: str = Field(min_length=1)
    calendar_ids: list[str] = Field(alias="calendarIds")


class DisconnectRequest(CamelModel):
    uid: str = Field(min_length=1)


class ConnectionStatusResponse(BaseModel):
    """Google connection status of a user."""

    connected: bool
    email: str | None = None
    calendar_ids: list[str] = []
    connected_at: datetime | None = None


class CalendarResponse(BaseModel):
    """A writable Google calendar."""

    id: str
    name: str
    primary: bool
    access_role: str
    background_color: str | None


class CalendarListResponse(BaseModel):
    calendars: list[CalendarResponse]
    selected: list[str]
    email: str | None


class SelectCalendarsResponse(BaseModel):
    success: bool
    selected: list[str]


class SyncResponse(BaseModel):
    """Import result."""

    success: bool
    imported: int
    updated: int
    removed: int
    total: int
    errors: list[str]
    synced_at: datetime


class ExportResponse(BaseModel):
    success: bool
    action: str
    remote_event_id: str | None
    remote_calendar_id: str | None


class ExportAllResponse(BaseModel):
    success: bool
    exported: int
    updated: int
    failed: int
    errors: list[str]


def _reconnect_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"detail": message, "reconnect": True},
    )


@router.get("/auth")
async def start_auth(
    uid: str,
    room_id: str | None = Query(default=None, alias="roomId"),
    oauth: GoogleOAuth = Depends(get_google_oauth),
) -> RedirectResponse:
    """Redirect the user to Google's consent screen.

    The user and room ids travel in a signed state parameter and come back
    to /api/google/callback.
    """
    if not oauth.is_configured:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Google OAuth not configured",
        )

    state = encode_oauth_state(uid, room_id)
    return RedirectResponse(url=oauth.get_authorization_url(state=state))


@router.get("/callback")
async def google_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    tokens: TokenManager = Depends(get_token_manager),
) -> RedirectResponse:
    """Handle Google's redirect after consent.

    Always answers with a redirect back into the web app; the `gcal` query
    parameter tells it how the connection went.
    """
    if error:
        logger.info(f"Google consent not granted: {error}")
        return RedirectResponse(url=f"{DASHBOARD_URL}?gcal=denied")

    if not code or not state:
        return RedirectResponse(url=f"{DASHBOARD_URL}?gcal=error")

    try:
        oauth_state = decode_oauth_state(state)
    except InvalidOAuthState as e:
        logger.warning(f"Rejected OAuth callback: {e}")
        return RedirectResponse(url=f"{DASHBOARD_URL}?gcal=error")

    try:
        google_tokens = await tokens.exchange_authorization_code(code)
        email = await tokens.oauth.get_user_email(google_tokens.access_token)
        await tokens.save_credentials(oauth_state.user_id, google_tokens, linked_email=email)
    except ReconnectRequired as e:
        logger.error(f"Google connection failed for user {oauth_state.user_id}: {e}")
        return RedirectResponse(url=f"{DASHBOARD_URL}?gcal=error")

    if oauth_state.room_id:
        return RedirectResponse(
            url=f"/room/{quote(oauth_state.room_id, safe='')}?tab=events&gcal=connected"
        )
    return RedirectResponse(url=f"{DASHBOARD_URL}?gcal=connected")


@router.get("/status", response_model=ConnectionStatusResponse)
async def connection_status(
    uid: str,
    tokens: TokenManager = Depends(get_token_manager),
) -> ConnectionStatusResponse:
    """Report whether the user has a Google connection."""
    connection = await tokens.connection_status(uid)
    return ConnectionStatusResponse(
        connected=connection.connected,
        email=connection.linked_email,
        calendar_ids=connection.selected_calendar_ids,
        connected_at=connection.connected_at,
    )


@router.get("/calendars", response_model=CalendarListResponse)
async def list_calendars(
    uid: str,
    service: CalendarSyncService = Depends(get_sync_service),
) -> CalendarListResponse:
    """List the user's writable calendars and the current selection."""
    listing = await service.list_calendars(uid)
    return CalendarListResponse(
        calendars=[
            CalendarResponse(
                id=c.id,
                name=c.name,
                primary=c.primary,
                access_role=c.access_role,
                background_color=c.background_color,
            )
            for c in listing.calendars
        ],
        selected=listing.selected_calendar_ids,
        email=listing.linked_email,
    )


@router.post("/calendars", response_model=SelectCalendarsResponse)
async def select_calendars(
    data: SelectCalendarsRequest,
    service: CalendarSyncService = Depends(get_sync_service),
) -> SelectCalendarsResponse:
    """Choose the calendars that sync imports from."""
    selected = await service.select_calendars(data.uid, data.calendar_ids)
    return SelectCalendarsResponse(success=True, selected=selected)


@router.post("/sync", response_model=SyncResponse)
async def sync_room(
    data: RoomRequest,
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Import the user's selected calendars into the room."""
    result = await service.sync(data.uid, data.room_id)

    if result.reauthorization_required and not result.calendars:
        return _reconnect_response(result.errors[0] if result.errors else "Reconnect required")

    return SyncResponse(
        success=result.success,
        imported=result.imported,
        updated=result.updated,
        removed=result.removed,
        total=result.total,
        errors=result.errors,
        synced_at=result.synced_at,
    )


@router.post("/export", response_model=ExportResponse)
async def export_event(
    data: ExportRequest,
    service: CalendarSyncService = Depends(get_sync_service),
) -> ExportResponse:
    """Push one room event to Google, or delete its Google copy."""
    try:
        outcome = await service.export_event(
            data.uid, data.room_id, data.event_id, action=data.action
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return ExportResponse(
        success=True,
        action=outcome.action,
        remote_event_id=outcome.remote_event_id,
        remote_calendar_id=outcome.remote_calendar_id,
    )


@router.post("/export-all", response_model=ExportAllResponse)
async def export_all(
    data: RoomRequest,
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Push every room-authored event to Google."""
    result = await service.export_all(data.uid, data.room_id)

    if result.reauthorization_required and result.failed == 0:
        return _reconnect_response(result.errors[0] if result.errors else "Reconnect required")

    return ExportAllResponse(
        success=result.success,
        exported=result.exported,
        updated=result.updated,
        failed=result.failed,
        errors=result.errors,
    )


@router.post("/disconnect")
async def disconnect(
    data: DisconnectRequest,
    tokens: TokenManager = Depends(get_token_manager),
) -> dict:
    """Revoke the Google grant and delete the stored credentials."""
    existed = await tokens.revoke_and_forget(data.uid)
    return {"success": True, "disconnected": existed}
