"""Pytest fixtures for calendar sync tests.

This module provides test fixtures that ensure:
1. No external API calls are made (Google OAuth, Google Calendar)
2. Every test gets its own SQLite database file, one connection per session
3. Isolated test environment with controlled configuration
"""

import copy
import itertools
import os
import time
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("SECRET_KEY", "test-secret-key-at-least-32-characters-long")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "true")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from tenacity import wait_none

from kinloop_calendar.auth.google import GoogleTokens
from kinloop_calendar.auth.tokens import TokenManager
from kinloop_calendar.calendar.google_calendar import (
    CalendarInfo,
    EventTime,
    RemoteEvent,
)
from kinloop_calendar.calendar.sync import CalendarSyncService
from kinloop_calendar.calendar.translator import EventTranslator
from kinloop_calendar.database.credentials import CredentialStore
from kinloop_calendar.database.events import EventStore
from kinloop_calendar.database.models import Base
from kinloop_calendar.errors import NotFound, TokenRefreshFailed, Unauthorized
from kinloop_calendar.models.credential import CredentialRecord

USER_ID = "user-1"
ROOM_ID = "room-1"
TIME_ZONE = "America/Los_Angeles"


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings cache before each test to ensure clean state."""
    from kinloop_calendar.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh database file with all tables.

    Each session opens its own connection, so concurrent syncs and exports
    get separate transactions as they would against PostgreSQL.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'calendar.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    await engine.dispose()


@pytest.fixture
def credential_store(session_factory) -> CredentialStore:
    return CredentialStore(session_factory)


@pytest.fixture
def event_store(session_factory) -> EventStore:
    return EventStore(session_factory)


# =============================================================================
# Google Doubles
# =============================================================================


class FakeOAuth:
    """Stands in for GoogleOAuth without any HTTP."""

    is_configured = True

    def __init__(self):
        self.refresh_calls = 0
        self.reject_refresh = False
        self.refresh_failures: list[Exception] = []
        self.revoked: list[str] = []
        self.exchanged: list[str] = []

    def get_authorization_url(self, state: str) -> str:
        return f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"

    async def exchange_code(self, code: str) -> GoogleTokens:
        self.exchanged.append(code)
        return GoogleTokens(
            access_token="access-token",
            refresh_token="refresh-token",
            token_type="Bearer",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scope="https://www.googleapis.com/auth/calendar email",
        )

    async def refresh_access_token(self, refresh_token: str) -> GoogleTokens:
        self.refresh_calls += 1
        if self.refresh_failures:
            raise self.refresh_failures.pop(0)
        if self.reject_refresh:
            raise TokenRefreshFailed("Token refresh rejected: 400", status_code=400)
        return GoogleTokens(
            access_token=f"refreshed-{self.refresh_calls}",
            refresh_token=refresh_token,
            token_type="Bearer",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            scope="",
        )

    async def get_user_email(self, access_token: str) -> str | None:
        return "member@example.com"

    async def revoke_token(self, token: str) -> bool:
        self.revoked.append(token)
        return True


class FakeCalendarClient:
    """In-memory Google Calendar with the GoogleCalendarClient interface.

    `fail(method, *errors)` queues exceptions raised by the next calls of
    `method`. `valid_tokens` limits the accepted access tokens (None accepts
    any token). `latency` slows down every successful call, and `call_times`
    records when each call arrived.
    """

    def __init__(self):
        self.calendars: dict[str, dict[str, RemoteEvent]] = {"primary": {}, "work": {}}
        self.calendar_infos = [
            CalendarInfo(id="primary", name="Family", primary=True, access_role="owner"),
            CalendarInfo(id="work", name="Work", access_role="writer"),
        ]
        self.valid_tokens: set[str] | None = None
        self.calls: list[tuple] = []
        self.call_times: list[tuple[str, float]] = []
        self.latency = 0.0
        self._failures: dict[str, list[Exception]] = {}
        self._ids = itertools.count(1)

    def fail(self, method: str, *errors: Exception) -> None:
        self._failures.setdefault(method, []).extend(errors)

    def calls_to(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == method]

    def times_of(self, method: str) -> list[float]:
        return [at for name, at in self.call_times if name == method]

    def add_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        self.calendars.setdefault(calendar_id, {})[event.id] = copy.deepcopy(event)
        return event

    def _enter(self, method: str, access_token: str, *args) -> None:
        self.calls.append((method, access_token, *args))
        self.call_times.append((method, time.monotonic()))
        queue = self._failures.get(method)
        if queue:
            raise queue.pop(0)
        if self.valid_tokens is not None and access_token not in self.valid_tokens:
            raise Unauthorized(f"Failed to {method}: 401", status_code=401)
        if self.latency:
            time.sleep(self.latency)

    def _calendar(self, calendar_id: str, method: str) -> dict[str, RemoteEvent]:
        if calendar_id not in self.calendars:
            raise NotFound(f"Failed to {method}: 404", status_code=404)
        return self.calendars[calendar_id]

    def list_calendars(self, access_token: str) -> list[CalendarInfo]:
        self._enter("list_calendars", access_token)
        return list(self.calendar_infos)

    def list_events(self, access_token, calendar_id, time_min, time_max) -> list[RemoteEvent]:
        self._enter("list_events", access_token, calendar_id, time_min, time_max)
        events = self._calendar(calendar_id, "list events")
        return [copy.deepcopy(event) for event in events.values()]

    def create_event(self, access_token, calendar_id, event) -> RemoteEvent:
        self._enter("create_event", access_token, calendar_id)
        created = copy.deepcopy(event)
        created.id = f"g{next(self._ids)}"
        self._calendar(calendar_id, "create event")[created.id] = created
        return copy.deepcopy(created)

    def update_event(self, access_token, calendar_id, remote_event_id, event) -> RemoteEvent:
        self._enter("update_event", access_token, calendar_id, remote_event_id)
        events = self._calendar(calendar_id, "update event")
        if remote_event_id not in events:
            raise NotFound("Failed to update event: 404", status_code=404)
        updated = copy.deepcopy(event)
        updated.id = remote_event_id
        events[remote_event_id] = updated
        return copy.deepcopy(updated)

    def delete_event(self, access_token, calendar_id, remote_event_id) -> None:
        self._enter("delete_event", access_token, calendar_id, remote_event_id)
        self._calendar(calendar_id, "delete event").pop(remote_event_id, None)


def timed_event(event_id: str, summary: str, day: str, start: str, end: str) -> RemoteEvent:
    """Google event with Pacific wall-clock times."""
    return RemoteEvent(
        id=event_id,
        summary=summary,
        start=EventTime(date_time=f"{day}T{start}:00", time_zone=TIME_ZONE),
        end=EventTime(date_time=f"{day}T{end}:00", time_zone=TIME_ZONE),
    )


@pytest.fixture
def fake_oauth() -> FakeOAuth:
    return FakeOAuth()


@pytest.fixture
def fake_client() -> FakeCalendarClient:
    return FakeCalendarClient()


@pytest.fixture
def token_manager(credential_store, fake_oauth) -> TokenManager:
    return TokenManager(credential_store, fake_oauth)


@pytest_asyncio.fixture
async def connected_user(credential_store) -> CredentialRecord:
    """A user with a valid access token and the primary calendar selected."""
    record = CredentialRecord(
        user_id=USER_ID,
        access_token="access-token",
        refresh_token="refresh-token",
        access_token_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        linked_email="member@example.com",
    )
    await credential_store.put(USER_ID, record)
    return record


@pytest.fixture
def sync_service(
    credential_store, event_store, token_manager, fake_client
) -> CalendarSyncService:
    return CalendarSyncService(
        credentials=credential_store,
        tokens=token_manager,
        client=fake_client,
        events=event_store,
        translator=EventTranslator(TIME_ZONE),
        retry_wait=wait_none(),
        rate_limit_pause=0,
    )
