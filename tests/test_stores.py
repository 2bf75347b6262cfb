"""Tests for the credential store and the room event store."""

from datetime import date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from kinloop_calendar.database.encryption import create_fernet, decrypt_token, encrypt_token
from kinloop_calendar.database.models import GoogleCredential
from kinloop_calendar.errors import EventNotFound, ReauthorizationRequired
from kinloop_calendar.models.credential import CredentialRecord, normalize_calendar_ids
from kinloop_calendar.models.event import EventPatch, EventSource, LocalEventFields

USER_ID = "user-1"
ROOM_ID = "room-1"


def _record(**overrides) -> CredentialRecord:
    values = dict(
        user_id=USER_ID,
        access_token="access-token",
        refresh_token="refresh-token",
        access_token_expiry=datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc),
        linked_email="ana@example.com",
    )
    values.update(overrides)
    return CredentialRecord(**values)


class TestCredentialRecord:
    """Tests for the credential model."""

    def test_refresh_token_is_required(self):
        with pytest.raises(ValueError):
            _record(refresh_token="")

    def test_selection_defaults_to_primary(self):
        assert _record(selected_calendar_ids=[]).selected_calendar_ids == ["primary"]

    def test_normalize_calendar_ids(self):
        assert normalize_calendar_ids([" work ", "", "work", "primary"]) == ["work", "primary"]
        assert normalize_calendar_ids(None) == ["primary"]

    def test_freshness_margin(self):
        record = _record()
        margin = timedelta(seconds=60)
        assert record.is_access_token_fresh(datetime(2025, 6, 1, 11, 58, tzinfo=timezone.utc), margin)
        assert not record.is_access_token_fresh(datetime(2025, 6, 1, 11, 59, 30, tzinfo=timezone.utc), margin)


class TestEncryption:
    """Tests for token encryption."""

    def test_round_trip(self):
        assert decrypt_token(encrypt_token("ya29.secret")) == "ya29.secret"

    def test_empty_stays_empty(self):
        assert encrypt_token("") == ""
        assert decrypt_token("") == ""

    def test_foreign_ciphertext_is_rejected(self):
        other = create_fernet("another-secret-key-that-is-32-chars-long", "salt")
        ciphertext = other.encrypt(b"token").decode()

        with pytest.raises(ValueError):
            decrypt_token(ciphertext)


@pytest.mark.asyncio
class TestCredentialStore:
    """Tests for CredentialStore."""

    async def test_put_and_get(self, credential_store):
        await credential_store.put(USER_ID, _record())

        stored = await credential_store.get(USER_ID)

        assert stored.access_token == "access-token"
        assert stored.refresh_token == "refresh-token"
        assert stored.access_token_expiry == datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
        assert stored.linked_email == "ana@example.com"
        assert stored.selected_calendar_ids == ["primary"]

    async def test_tokens_are_encrypted_at_rest(self, credential_store, session_factory):
        await credential_store.put(USER_ID, _record())

        async with session_factory() as session:
            row = (await session.execute(select(GoogleCredential))).scalar_one()

        assert row.access_token_encrypted != "access-token"
        assert "refresh-token" not in row.refresh_token_encrypted

    async def test_put_replaces_record(self, credential_store):
        await credential_store.put(USER_ID, _record())
        await credential_store.put(USER_ID, _record(access_token="second", linked_email=None))

        stored = await credential_store.get(USER_ID)
        assert stored.access_token == "second"
        assert stored.linked_email is None

    async def test_get_unknown_user(self, credential_store):
        assert await credential_store.get("nobody") is None

    async def test_delete(self, credential_store):
        await credential_store.put(USER_ID, _record())

        assert await credential_store.delete(USER_ID) is True
        assert await credential_store.delete(USER_ID) is False
        assert await credential_store.get(USER_ID) is None

    async def test_update_selected_calendars(self, credential_store):
        await credential_store.put(USER_ID, _record())

        selected = await credential_store.update_selected_calendars(USER_ID, ["work", "work", " "])

        assert selected == ["work"]
        assert (await credential_store.get(USER_ID)).selected_calendar_ids == ["work"]

    async def test_update_access_token(self, credential_store):
        await credential_store.put(USER_ID, _record())
        expiry = datetime(2025, 6, 1, 13, 0, tzinfo=timezone.utc)

        await credential_store.update_access_token(USER_ID, "refreshed", expiry)

        stored = await credential_store.get(USER_ID)
        assert stored.access_token == "refreshed"
        assert stored.access_token_expiry == expiry
        assert stored.refresh_token == "refresh-token"

    async def test_update_unknown_user(self, credential_store):
        with pytest.raises(ReauthorizationRequired):
            await credential_store.update_selected_calendars("nobody", ["primary"])


class TestEventModels:
    """Validation of event fields and patches."""

    def test_time_format(self):
        with pytest.raises(ValidationError):
            LocalEventFields(title="Bad", date=date(2025, 1, 1), start_time="25:00")

    def test_end_time_needs_start_time(self):
        with pytest.raises(ValidationError):
            LocalEventFields(title="Bad", date=date(2025, 1, 1), end_time="10:00")

    def test_start_time_needs_end_time(self):
        with pytest.raises(ValidationError):
            LocalEventFields(title="Call", date=date(2025, 6, 14), start_time="18:15")

    def test_event_without_times_is_all_day(self):
        fields = LocalEventFields(title="Trip", date=date(2025, 6, 14), all_day=False)
        assert fields.all_day is True

    def test_all_day_event_drops_times(self):
        fields = LocalEventFields(
            title="Camp", date=date(2025, 6, 14), start_time="09:00", end_time="17:00", all_day=True
        )
        assert fields.start_time is None
        assert fields.end_time is None

    def test_title_required(self):
        with pytest.raises(ValidationError):
            LocalEventFields(title="", date=date(2025, 1, 1))

    def test_participants_are_deduplicated(self):
        fields = LocalEventFields(title="Dinner", date=date(2025, 1, 1), participants=["a", "b", "a"])
        assert fields.participants == ["a", "b"]

    def test_patch_changes_only_set_fields(self):
        patch = EventPatch(description=None, synced_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert patch.changes() == {
            "description": None,
            "synced_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
        }

    def test_patch_cannot_clear_required_fields(self):
        with pytest.raises(ValidationError):
            EventPatch(title=None)

    def test_patch_from_fields_clears_absent_times(self):
        fields = LocalEventFields(title="Camping", date=date(2025, 7, 4), all_day=True)
        changes = EventPatch.from_fields(fields, source=EventSource.REMOTE_MIRROR).changes()

        assert changes["start_time"] is None
        assert changes["end_time"] is None
        assert changes["source"] == "remote-mirror"


@pytest.mark.asyncio
class TestEventStore:
    """Tests for EventStore."""

    async def test_create_and_get(self, event_store):
        created = await event_store.create(
            ROOM_ID,
            USER_ID,
            LocalEventFields(
                title="Soccer practice",
                date=date(2025, 6, 14),
                start_time="09:00",
                end_time="10:30",
                participants=["u-ana"],
            ),
        )

        fetched = await event_store.get(ROOM_ID, created.id)

        assert fetched.title == "Soccer practice"
        assert fetched.participants == ["u-ana"]
        assert fetched.source == EventSource.LOCAL
        assert fetched.is_linked is False
        assert fetched.created_at is not None

    async def test_get_checks_room(self, event_store):
        created = await event_store.create(
            ROOM_ID, USER_ID, LocalEventFields(title="Dentist", date=date(2025, 3, 10))
        )
        assert await event_store.get("room-2", created.id) is None

    async def test_query_filters(self, event_store):
        fields = LocalEventFields(title="Event", date=date(2025, 3, 10), all_day=True)
        await event_store.create(ROOM_ID, USER_ID, fields)
        await event_store.create(
            ROOM_ID,
            USER_ID,
            fields,
            source=EventSource.REMOTE_MIRROR,
            remote_event_id="g1",
            remote_calendar_id="primary",
        )
        await event_store.create(
            ROOM_ID,
            "user-2",
            fields,
            source=EventSource.REMOTE_MIRROR,
            remote_event_id="g1",
            remote_calendar_id="primary",
        )
        await event_store.create("room-2", USER_ID, fields)

        assert len(await event_store.query(ROOM_ID)) == 3
        assert len(await event_store.query(ROOM_ID, source=EventSource.LOCAL)) == 1
        mirror = await event_store.query(
            ROOM_ID,
            source=EventSource.REMOTE_MIRROR,
            remote_calendar_id="primary",
            created_by=USER_ID,
        )
        assert [e.remote_event_id for e in mirror] == ["g1"]
        assert len(await event_store.query(ROOM_ID, linked=False)) == 1

    async def test_query_orders_by_date_and_time(self, event_store):
        for day, start in [(12, "09:00"), (10, "18:00"), (10, "08:00")]:
            await event_store.create(
                ROOM_ID,
                USER_ID,
                LocalEventFields(
                    title=f"{day} {start}",
                    date=date(2025, 3, day),
                    start_time=start,
                    end_time=start,
                ),
            )

        titles = [e.title for e in await event_store.query(ROOM_ID)]
        assert titles == ["10 08:00", "10 18:00", "12 09:00"]

    async def test_sparse_update(self, event_store):
        created = await event_store.create(
            ROOM_ID,
            USER_ID,
            LocalEventFields(title="Dentist", date=date(2025, 3, 10), description="Bring card"),
        )

        updated = await event_store.update(
            ROOM_ID, created.id, EventPatch(description=None, remote_event_id="g1")
        )

        assert updated.title == "Dentist"
        assert updated.description is None
        assert updated.remote_event_id == "g1"

    async def test_update_unknown_event(self, event_store):
        with pytest.raises(EventNotFound):
            await event_store.update(ROOM_ID, "missing", EventPatch(title="x"))

    async def test_delete(self, event_store):
        created = await event_store.create(
            ROOM_ID, USER_ID, LocalEventFields(title="Dentist", date=date(2025, 3, 10))
        )

        assert await event_store.delete("room-2", created.id) is False
        assert await event_store.delete(ROOM_ID, created.id) is True
        assert await event_store.get(ROOM_ID, created.id) is None
