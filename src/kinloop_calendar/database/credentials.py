"""Credential store for Google connections.

One row per user in `google_credentials`. Tokens are encrypted on the way in
and decrypted on the way out, so callers only ever see `CredentialRecord`.
Every write runs in its own transaction: a concurrent reader sees either the
old record or the new one, never a mix.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kinloop_calendar.database.encryption import decrypt_token, encrypt_token
from kinloop_calendar.database.models import GoogleCredential
from kinloop_calendar.errors import ReauthorizationRequired
from kinloop_calendar.models.credential import CredentialRecord, normalize_calendar_ids

logger = logging.getLogger(__name__)


class CredentialStore:
    """Persistence for per-user Google credentials."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, user_id: str) -> CredentialRecord | None:
        async with self._session_factory() as session:
            row = await session.get(GoogleCredential, user_id)
            if row is None:
                return None
            return _to_record(row)

    async def put(self, user_id: str, record: CredentialRecord) -> None:
        """Insert or fully replace the user's credentials."""
        async with self._session_factory() as session, session.begin():
            row = await session.get(GoogleCredential, user_id)
            if row is None:
                row = GoogleCredential(user_id=user_id)
                session.add(row)

            row.access_token_encrypted = encrypt_token(record.access_token)
            row.refresh_token_encrypted = encrypt_token(record.refresh_token)
            row.access_token_expiry = record.access_token_expiry
            row.scope = record.scope
            row.linked_email = record.linked_email
            row.selected_calendar_ids = list(record.selected_calendar_ids)
            row.connected_at = record.connected_at

        logger.debug(f"Stored Google credentials for user {user_id}")

    async def delete(self, user_id: str) -> bool:
        """Remove the user's credentials. Returns True if a row existed."""
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(GoogleCredential).where(GoogleCredential.user_id == user_id)
            )
        return result.rowcount > 0

    async def update_selected_calendars(
        self, user_id: str, calendar_ids: list[str]
    ) -> list[str]:
        """Replace the calendars to sync. Returns the normalized selection."""
        selected = normalize_calendar_ids(calendar_ids)
        await self._update(user_id, selected_calendar_ids=selected)
        return selected

    async def update_access_token(
        self, user_id: str, access_token: str, expiry: datetime
    ) -> None:
        """Store a refreshed access token and its expiry."""
        await self._update(
            user_id,
            access_token_encrypted=encrypt_token(access_token),
            access_token_expiry=expiry,
        )

    async def _update(self, user_id: str, **values) -> None:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(GoogleCredential)
                .where(GoogleCredential.user_id == user_id)
                .values(**values)
            )
        if result.rowcount == 0:
            raise ReauthorizationRequired(user_id)


def _to_record(row: GoogleCredential) -> CredentialRecord:
    return CredentialRecord(
        user_id=row.user_id,
        access_token=decrypt_token(row.access_token_encrypted),
        refresh_token=decrypt_token(row.refresh_token_encrypted),
        access_token_expiry=row.access_token_expiry,
        selected_calendar_ids=list(row.selected_calendar_ids or []),
        linked_email=row.linked_email,
        connected_at=row.connected_at,
        scope=row.scope,
    )
