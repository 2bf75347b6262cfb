"""Calendar synchronization service.

Keeps a room's events consistent with a user's Google Calendar.

## Import (`sync`)

1. Get a valid access token (refreshing it if needed, with the retry
   policy below)
2. For each selected calendar, concurrently:
   a. List Google events in the reconciliation window
   b. Load the room's mirror records for that calendar and user
   c. Create mirror records for new events, update changed ones and
      stamp the sync time on unchanged ones
   d. Delete mirror records whose event is gone from Google
3. Return counts and per-calendar errors

The mirror is re-read from the event store on every run, and mirror records
are keyed by (calendar id, Google event id), so repeating a sync is safe.
Calls for the same user and room are serialized.

## Export (`export_event`, `export_all`)

Room-authored events are created in the user's first selected calendar and
remember the Google id they were given ("linked"). Linked events are
patched on later exports; a delete export removes the Google copy and
unlinks the room event.

## Remote call policy

- Unauthorized: refresh the token once and retry once
- RateLimited / RemoteServerError: exponential backoff, bounded attempts;
  a rate limit also pauses every other call of the same run
- NotFound / RemoteClientError: no retry
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from kinloop_calendar.auth.google import GoogleOAuth
from kinloop_calendar.auth.tokens import TokenManager
from kinloop_calendar.calendar.google_calendar import (
    CalendarInfo,
    GoogleCalendarClient,
)
from kinloop_calendar.calendar.translator import EventTranslator
from kinloop_calendar.config import Settings
from kinloop_calendar.database.credentials import CredentialStore
from kinloop_calendar.database.events import EventStore
from kinloop_calendar.errors import (
    EventNotFound,
    RateLimited,
    ReauthorizationRequired,
    ReconnectRequired,
    RemoteCalendarError,
    RemoteClientError,
    RemoteServerError,
    TokenRefreshFailed,
    Unauthorized,
)
from kinloop_calendar.models.credential import CredentialRecord
from kinloop_calendar.models.event import (
    EventPatch,
    EventSource,
    LocalEvent,
    LocalEventFields,
)

logger = logging.getLogger(__name__)

CONTENT_FIELDS = set(LocalEventFields.model_fields)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _month_start(year: int, month: int) -> date:
    """First day of `month`, which may lie outside 1..12."""
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return date(year, month, 1)


@dataclass
class SyncWindow:
    """Half-open time range [start, end) that a sync covers."""

    start: datetime
    end: datetime


def reconciliation_window(
    today: date, months_back: int = 3, months_forward: int = 12
) -> SyncWindow:
    """Month-aligned window around `today`.

    With the defaults this runs from the first day of the month three months
    ago up to the end of the eleventh month after the current one.
    """
    start = _month_start(today.year, today.month - months_back)
    end = _month_start(today.year, today.month + months_forward)
    return SyncWindow(
        start=datetime(start.year, start.month, 1, tzinfo=timezone.utc),
        end=datetime(end.year, end.month, 1, tzinfo=timezone.utc),
    )


@dataclass
class CalendarSyncReport:
    """Outcome of reconciling one calendar."""

    calendar_id: str
    events_found: int = 0
    imported: int = 0
    updated: int = 0
    removed: int = 0
    errors: list[str] = field(default_factory=list)
    reauthorization_required: bool = False


@dataclass
class SyncResult:
    """Result of an import sync."""

    user_id: str
    room_id: str
    imported: int = 0
    updated: int = 0
    removed: int = 0
    errors: list[str] = field(default_factory=list)
    calendars: list[CalendarSyncReport] = field(default_factory=list)
    reauthorization_required: bool = False
    synced_at: datetime = field(default_factory=_utcnow)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def total(self) -> int:
        return self.imported + self.updated

    def add(self, report: CalendarSyncReport) -> None:
        self.calendars.append(report)
        self.imported += report.imported
        self.updated += report.updated
        self.removed += report.removed
        self.errors.extend(report.errors)
        if report.reauthorization_required:
            self.reauthorization_required = True


class ExportAction(str, Enum):
    """What an export should do with the Google copy of an event."""

    UPSERT = "upsert"
    DELETE = "delete"


@dataclass
class ExportOutcome:
    """Result of exporting one event."""

    event_id: str
    action: str  # created, updated, deleted, skipped
    remote_event_id: str | None = None
    remote_calendar_id: str | None = None


@dataclass
class ExportResult:
    """Result of exporting every local event of a room."""

    user_id: str
    room_id: str
    exported: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    reauthorization_required: bool = False

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


@dataclass
class CalendarListing:
    """A user's writable calendars and the current selection."""

    calendars: list[CalendarInfo]
    selected_calendar_ids: list[str]
    linked_email: str | None = None


class BackoffGate:
    """Pause shared by every remote call of one sync or export run."""

    def __init__(self) -> None:
        self._resume_at = 0.0

    def pause(self, seconds: float) -> None:
        loop = asyncio.get_running_loop()
        self._resume_at = max(self._resume_at, loop.time() + seconds)

    async def wait(self) -> None:
        delay = self._resume_at - asyncio.get_running_loop().time()
        if delay > 0:
            await asyncio.sleep(delay)


class _RemoteSession:
    """Token and backoff state for the remote calls of one run."""

    def __init__(self, user_id: str, token: str):
        self.user_id = user_id
        self.token = token
        self.gate = BackoffGate()
        self.connection_lost = False
        self._refresh_lock = asyncio.Lock()

    async def refresh(self, tokens: TokenManager, stale_token: str) -> str:
        """Force one refresh, shared by every call that saw `stale_token` rejected."""
        async with self._refresh_lock:
            if self.token == stale_token:
                self.token = await tokens.get_valid_access_token(
                    self.user_id, force_refresh=True
                )
            return self.token


class CalendarSyncService:
    """Reconciles room events with Google Calendar.

    Example:
        ```python
        service = CalendarSyncService(
            credentials=CredentialStore(session_factory),
            tokens=token_manager,
            client=GoogleCalendarClient(),
            events=EventStore(session_factory),
            translator=EventTranslator("Europe/Berlin"),
        )

        result = await service.sync(user_id, room_id)
        outcome = await service.export_event(user_id, room_id, event_id)
        ```
    """

    def __init__(
        self,
        credentials: CredentialStore,
        tokens: TokenManager,
        client: GoogleCalendarClient,
        events: EventStore,
        translator: EventTranslator,
        max_concurrency: int = 4,
        retry_attempts: int = 4,
        retry_wait: wait_base | None = None,
        rate_limit_pause: float = 1.0,
        months_back: int = 3,
        months_forward: int = 12,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the sync service.

        Args:
            credentials: Credential store
            tokens: Token lifecycle manager
            client: Google Calendar client
            events: Room event store
            translator: Event translator
            max_concurrency: Parallel calendars or exports per run
            retry_attempts: Attempts for rate-limited or failing calls
            retry_wait: tenacity wait strategy between attempts
            rate_limit_pause: Batch-wide pause when Google gives no Retry-After
            months_back: Months before the current one that sync covers
            months_forward: Months from the current one that sync covers
            clock: Source of the current time
        """
        self.credentials = credentials
        self.tokens = tokens
        self.client = client
        self.events = events
        self.translator = translator
        self.max_concurrency = max_concurrency
        self.retry_attempts = retry_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=30)
        self.rate_limit_pause = rate_limit_pause
        self.months_back = months_back
        self.months_forward = months_forward
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # -- calendars ---------------------------------------------------------

    async def list_calendars(self, user_id: str) -> CalendarListing:
        """List writable calendars together with the user's selection."""
        record, session = await self._open_session(user_id)
        calendars = await self._remote(session, self.client.list_calendars)
        return CalendarListing(
            calendars=calendars,
            selected_calendar_ids=record.selected_calendar_ids,
            linked_email=record.linked_email,
        )

    async def select_calendars(self, user_id: str, calendar_ids: list[str]) -> list[str]:
        """Choose which calendars `sync` imports from."""
        return await self.credentials.update_selected_calendars(user_id, calendar_ids)

    # -- import ------------------------------------------------------------

    async def sync(self, user_id: str, room_id: str) -> SyncResult:
        """Import the user's selected calendars into the room.

        Never raises for Google or token problems: they are reported in the
        result. Without a usable token the room is left untouched.
        """
        async with self._lock_for(user_id, room_id):
            return await self._sync(user_id, room_id)

    async def _sync(self, user_id: str, room_id: str) -> SyncResult:
        now = self._clock()
        result = SyncResult(user_id=user_id, room_id=room_id, synced_at=now)

        try:
            record, session = await self._open_session(user_id)
        except ReconnectRequired as e:
            logger.warning(f"Sync for user {user_id} needs reconnect: {e}")
            result.errors.append(str(e))
            result.reauthorization_required = True
            return result
        except RemoteCalendarError as e:
            logger.error(f"Sync for user {user_id} could not get a token: {e}")
            result.errors.append(str(e))
            return result

        window = reconciliation_window(now.date(), self.months_back, self.months_forward)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(calendar_id: str) -> CalendarSyncReport:
            async with semaphore:
                return await self._sync_calendar(session, room_id, calendar_id, window, now)

        reports = await asyncio.gather(
            *(run(calendar_id) for calendar_id in record.selected_calendar_ids)
        )
        for report in reports:
            result.add(report)

        logger.info(
            f"Synced room {room_id} for user {user_id}: "
            f"{result.imported} imported, {result.updated} updated, "
            f"{result.removed} removed, {len(result.errors)} errors"
        )
        return result

    async def _sync_calendar(
        self,
        session: _RemoteSession,
        room_id: str,
        calendar_id: str,
        window: SyncWindow,
        now: datetime,
    ) -> CalendarSyncReport:
        report = CalendarSyncReport(calendar_id=calendar_id)
        user_id = session.user_id

        try:
            remote_events = await self._remote(
                session, self.client.list_events, calendar_id, window.start, window.end
            )
            mirror = await self.events.query(
                room_id,
                source=EventSource.REMOTE_MIRROR,
                remote_calendar_id=calendar_id,
                created_by=user_id,
            )
            linked = await self.events.query(
                room_id,
                source=EventSource.LOCAL,
                remote_calendar_id=calendar_id,
                linked=True,
            )
        except ReconnectRequired as e:
            report.errors.append(f"Calendar {calendar_id}: {e}")
            report.reauthorization_required = True
            return report
        except Exception as e:
            logger.exception(f"Sync error for calendar {calendar_id}: {e}")
            report.errors.append(f"Calendar {calendar_id}: {e}")
            return report

        report.events_found = len(remote_events)

        by_remote_id: dict[str, LocalEvent] = {}
        duplicates: list[LocalEvent] = []
        for event in mirror:
            if event.remote_event_id in by_remote_id:
                duplicates.append(event)
            elif event.remote_event_id:
                by_remote_id[event.remote_event_id] = event

        # Events exported from this room come back in the listing
        exported_ids = {event.remote_event_id for event in linked}
        seen: set[str] = set()

        for remote in remote_events:
            if remote.is_cancelled or not remote.id or remote.id in seen:
                continue
            seen.add(remote.id)
            if remote.id in exported_ids:
                continue

            try:
                fields = self.translator.to_local(remote)
                existing = by_remote_id.get(remote.id)
                if existing is None:
                    await self.events.create(
                        room_id,
                        user_id,
                        fields,
                        source=EventSource.REMOTE_MIRROR,
                        remote_event_id=remote.id,
                        remote_calendar_id=calendar_id,
                        synced_at=now,
                    )
                    report.imported += 1
                elif _content(existing) != fields.model_dump():
                    await self.events.update(
                        room_id,
                        existing.id,
                        EventPatch.from_fields(fields, synced_at=now),
                    )
                    report.updated += 1
                else:
                    await self.events.update(room_id, existing.id, EventPatch(synced_at=now))
            except Exception as e:
                logger.exception(f"Failed to import event {remote.id}: {e}")
                report.errors.append(f"Calendar {calendar_id}: event {remote.id}: {e}")

        stale = [e for rid, e in by_remote_id.items() if rid not in seen] + duplicates
        for event in stale:
            try:
                if await self.events.delete(room_id, event.id):
                    report.removed += 1
            except Exception as e:
                logger.exception(f"Failed to remove event {event.id}: {e}")
                report.errors.append(f"Calendar {calendar_id}: event {event.id}: {e}")

        return report

    # -- export ------------------------------------------------------------

    async def export_event(
        self,
        user_id: str,
        room_id: str,
        event_id: str,
        action: ExportAction = ExportAction.UPSERT,
    ) -> ExportOutcome:
        """Push one room event to Google, or remove its Google copy.

        Raises:
            EventNotFound: If the event is not in the room
            ValueError: If the event was imported from Google
            ReconnectRequired: If the user has no usable connection
            RemoteCalendarError: If Google rejects the change
        """
        async with self._lock_for(user_id, room_id):
            event = await self.events.get(room_id, event_id)
            if event is None:
                raise EventNotFound(room_id, event_id)
            if event.source != EventSource.LOCAL:
                raise ValueError("Events imported from Google cannot be exported")

            record, session = await self._open_session(user_id)
            outcome = await self._export_one(session, record, room_id, event, ExportAction(action))

        logger.info(f"Export of event {event_id} in room {room_id}: {outcome.action}")
        return outcome

    async def export_all(self, user_id: str, room_id: str) -> ExportResult:
        """Push every room-authored event to Google.

        Unlinked events are created, linked ones updated. One failing event
        does not stop the others.
        """
        async with self._lock_for(user_id, room_id):
            result = ExportResult(user_id=user_id, room_id=room_id)

            try:
                record, session = await self._open_session(user_id)
            except ReconnectRequired as e:
                logger.warning(f"Export for user {user_id} needs reconnect: {e}")
                result.errors.append(str(e))
                result.reauthorization_required = True
                return result
            except RemoteCalendarError as e:
                logger.error(f"Export for user {user_id} could not get a token: {e}")
                result.errors.append(str(e))
                return result

            local_events = await self.events.query(room_id, source=EventSource.LOCAL)
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def run(event: LocalEvent) -> ExportOutcome | Exception:
                async with semaphore:
                    if session.connection_lost:
                        return TokenRefreshFailed("Google connection lost during export")
                    try:
                        return await self._export_one(
                            session, record, room_id, event, ExportAction.UPSERT
                        )
                    except ReconnectRequired as e:
                        session.connection_lost = True
                        return e
                    except Exception as e:
                        logger.exception(f"Failed to export event {event.id}: {e}")
                        return e

            outcomes = await asyncio.gather(*(run(event) for event in local_events))

        for event, outcome in zip(local_events, outcomes):
            if isinstance(outcome, Exception):
                result.failed += 1
                result.errors.append(f"Event {event.id}: {outcome}")
                if isinstance(outcome, ReconnectRequired):
                    result.reauthorization_required = True
            elif outcome.action == "created":
                result.exported += 1
            elif outcome.action == "updated":
                result.updated += 1

        logger.info(
            f"Exported room {room_id} for user {user_id}: "
            f"{result.exported} created, {result.updated} updated, {result.failed} failed"
        )
        return result

    async def _export_one(
        self,
        session: _RemoteSession,
        record: CredentialRecord,
        room_id: str,
        event: LocalEvent,
        action: ExportAction,
    ) -> ExportOutcome:
        now = self._clock()

        if action == ExportAction.DELETE:
            if not event.is_linked:
                return ExportOutcome(event_id=event.id, action="skipped")
            await self._remote(
                session,
                self.client.delete_event,
                event.remote_calendar_id or record.default_calendar_id,
                event.remote_event_id,
            )
            await self.events.update(
                room_id,
                event.id,
                EventPatch(remote_event_id=None, remote_calendar_id=None, synced_at=now),
            )
            return ExportOutcome(event_id=event.id, action="deleted")

        remote = self.translator.to_remote(event)

        if event.is_linked:
            calendar_id = event.remote_calendar_id or record.default_calendar_id
            saved = await self._remote(
                session, self.client.update_event, calendar_id, event.remote_event_id, remote
            )
            action_taken = "updated"
        else:
            calendar_id = record.default_calendar_id
            saved = await self._remote(session, self.client.create_event, calendar_id, remote)
            action_taken = "created"

        remote_event_id = saved.id or event.remote_event_id
        if not remote_event_id:
            raise RemoteClientError("Google did not return an event id")

        await self.events.update(
            room_id,
            event.id,
            EventPatch(
                remote_event_id=remote_event_id,
                remote_calendar_id=calendar_id,
                synced_at=now,
            ),
        )
        return ExportOutcome(
            event_id=event.id,
            action=action_taken,
            remote_event_id=remote_event_id,
            remote_calendar_id=calendar_id,
        )

    # -- plumbing ----------------------------------------------------------

    def _lock_for(self, user_id: str, room_id: str) -> asyncio.Lock:
        key = (user_id, room_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _open_session(self, user_id: str) -> tuple[CredentialRecord, _RemoteSession]:
        record = await self.credentials.get(user_id)
        if record is None:
            raise ReauthorizationRequired(user_id)
        token = None
        async for attempt in self._retrying():
            with attempt:
                token = await self.tokens.get_valid_access_token(user_id)
        return record, _RemoteSession(user_id, token)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception_type((RateLimited, RemoteServerError)),
            reraise=True,
        )

    async def _remote(self, session: _RemoteSession, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking client call with the retry policy."""
        result = None
        async for attempt in self._retrying():
            with attempt:
                await session.gate.wait()
                try:
                    result = await self._authorized(session, fn, *args)
                except RateLimited as e:
                    session.gate.pause(e.retry_after or self.rate_limit_pause)
                    logger.warning(f"Google rate limit hit, pausing run: {e}")
                    raise
        return result

    async def _authorized(self, session: _RemoteSession, fn: Callable[..., Any], *args: Any) -> Any:
        token = session.token
        try:
            return await asyncio.to_thread(fn, token, *args)
        except Unauthorized:
            logger.info(f"Access token rejected for user {session.user_id}, refreshing")

        token = await session.refresh(self.tokens, token)
        try:
            return await asyncio.to_thread(fn, token, *args)
        except Unauthorized as e:
            raise TokenRefreshFailed(
                "Google rejected the refreshed access token", status_code=e.status_code
            ) from e


def _content(event: LocalEvent) -> dict[str, Any]:
    return event.model_dump(include=CONTENT_FIELDS)


def build_sync_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    oauth: GoogleOAuth | None = None,
    client: GoogleCalendarClient | None = None,
    translator: EventTranslator | None = None,
) -> CalendarSyncService:
    """Wire the sync service from settings."""
    credentials = CredentialStore(session_factory)
    tokens = TokenManager(
        credentials,
        oauth or GoogleOAuth(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
            scopes=settings.google_calendar_scopes + ["email"],
        ),
        refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
    )
    return CalendarSyncService(
        credentials=credentials,
        tokens=tokens,
        client=client or GoogleCalendarClient(),
        events=EventStore(session_factory),
        translator=translator or EventTranslator(settings.default_timezone),
        max_concurrency=settings.sync_max_concurrency,
        retry_attempts=settings.sync_retry_attempts,
        retry_wait=wait_exponential(multiplier=1, min=1, max=settings.sync_backoff_max_seconds),
        months_back=settings.sync_months_back,
        months_forward=settings.sync_months_forward,
    )
