"""Room event store.

The document store the reconciliation engine reads and writes through:
query by filter, create, sparse update and delete. Each call is its own
transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kinloop_calendar.database.models import RoomEvent
from kinloop_calendar.errors import EventNotFound
from kinloop_calendar.models.event import (
    EventPatch,
    EventSource,
    LocalEvent,
    LocalEventFields,
)

logger = logging.getLogger(__name__)


class EventStore:
    """Persistence for room events."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, room_id: str, event_id: str) -> LocalEvent | None:
        async with self._session_factory() as session:
            row = await session.get(RoomEvent, event_id)
            if row is None or row.room_id != room_id:
                return None
            return LocalEvent.model_validate(row)

    async def query(
        self,
        room_id: str,
        source: EventSource | None = None,
        remote_calendar_id: str | None = None,
        created_by: str | None = None,
        linked: bool | None = None,
    ) -> list[LocalEvent]:
        """List room events matching every given filter.

        Args:
            room_id: Room to search
            source: Only events from this source
            remote_calendar_id: Only events linked to this Google calendar
            created_by: Only events created by this user
            linked: True for events carrying a remote id, False for the rest
        """
        stmt = select(RoomEvent).where(RoomEvent.room_id == room_id)
        if source is not None:
            stmt = stmt.where(RoomEvent.source == EventSource(source).value)
        if remote_calendar_id is not None:
            stmt = stmt.where(RoomEvent.remote_calendar_id == remote_calendar_id)
        if created_by is not None:
            stmt = stmt.where(RoomEvent.created_by == created_by)
        if linked is True:
            stmt = stmt.where(RoomEvent.remote_event_id.is_not(None))
        elif linked is False:
            stmt = stmt.where(RoomEvent.remote_event_id.is_(None))
        stmt = stmt.order_by(RoomEvent.date, RoomEvent.start_time, RoomEvent.id)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [LocalEvent.model_validate(row) for row in result.scalars()]

    async def create(
        self,
        room_id: str,
        created_by: str,
        fields: LocalEventFields,
        source: EventSource = EventSource.LOCAL,
        remote_event_id: str | None = None,
        remote_calendar_id: str | None = None,
        synced_at: datetime | None = None,
    ) -> LocalEvent:
        row = RoomEvent(
            room_id=room_id,
            created_by=created_by,
            source=EventSource(source).value,
            remote_event_id=remote_event_id,
            remote_calendar_id=remote_calendar_id,
            synced_at=synced_at,
            **fields.model_dump(include=set(LocalEventFields.model_fields)),
        )
        async with self._session_factory() as session, session.begin():
            session.add(row)
        return LocalEvent.model_validate(row)

    async def update(self, room_id: str, event_id: str, patch: EventPatch) -> LocalEvent:
        """Apply a sparse update.

        Raises:
            EventNotFound: If the event is not in this room
        """
        async with self._session_factory() as session, session.begin():
            row = await session.get(RoomEvent, event_id)
            if row is None or row.room_id != room_id:
                raise EventNotFound(room_id, event_id)
            for name, value in patch.changes().items():
                setattr(row, name, value)
        return LocalEvent.model_validate(row)

    async def delete(self, room_id: str, event_id: str) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(RoomEvent).where(
                    RoomEvent.id == event_id,
                    RoomEvent.room_id == room_id,
                )
            )
        return result.rowcount > 0
