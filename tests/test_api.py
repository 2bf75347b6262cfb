"""Tests for the HTTP API.

Verifies status codes and response shapes. The app gets a sync service
wired to fakes, so no database server or Google endpoint is needed.
"""

from datetime import date
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio

from conftest import ROOM_ID, USER_ID, timed_event
from kinloop_calendar.api import create_app
from kinloop_calendar.auth.state import encode_oauth_state
from kinloop_calendar.errors import RemoteServerError
from kinloop_calendar.models.event import EventSource, LocalEventFields

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def api(sync_service):
    app = create_app(sync_service=sync_service)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client


class TestHealth:
    async def test_health(self, api):
        resp = await api.get("/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"


class TestConnection:
    """OAuth connect, status and disconnect."""

    async def test_auth_redirects_with_signed_state(self, api):
        resp = await api.get("/api/google/auth", params={"uid": USER_ID, "roomId": ROOM_ID})

        assert resp.status_code == 307
        location = resp.headers["location"]
        assert location.startswith("https://accounts.google.com/")
        assert parse_qs(urlparse(location).query)["state"][0]

    async def test_callback_connects_and_returns_to_room(
        self, api, credential_store, fake_oauth
    ):
        state = encode_oauth_state(USER_ID, ROOM_ID)

        resp = await api.get("/api/google/callback", params={"code": "auth-code", "state": state})

        assert resp.status_code == 307
        assert resp.headers["location"] == f"/room/{ROOM_ID}?tab=events&gcal=connected"
        assert fake_oauth.exchanged == ["auth-code"]
        stored = await credential_store.get(USER_ID)
        assert stored.linked_email == "member@example.com"

    async def test_callback_without_room_goes_to_dashboard(self, api):
        state = encode_oauth_state(USER_ID)

        resp = await api.get("/api/google/callback", params={"code": "c", "state": state})

        assert resp.headers["location"] == "/dashboard?gcal=connected"

    async def test_callback_denied(self, api):
        resp = await api.get("/api/google/callback", params={"error": "access_denied"})

        assert resp.headers["location"] == "/dashboard?gcal=denied"

    async def test_callback_with_bad_state(self, api, credential_store):
        resp = await api.get(
            "/api/google/callback", params={"code": "c", "state": "forged"}
        )

        assert resp.headers["location"] == "/dashboard?gcal=error"
        assert await credential_store.get(USER_ID) is None

    async def test_status(self, api, connected_user):
        resp = await api.get("/api/google/status", params={"uid": USER_ID})

        assert resp.status_code == 200
        body = resp.json()
        assert body["connected"] is True
        assert body["email"] == "member@example.com"
        assert body["calendar_ids"] == ["primary"]

    async def test_status_not_connected(self, api):
        resp = await api.get("/api/google/status", params={"uid": "nobody"})

        assert resp.json()["connected"] is False

    async def test_disconnect(self, api, connected_user, credential_store, fake_oauth):
        resp = await api.post("/api/google/disconnect", json={"uid": USER_ID})

        assert resp.status_code == 200
        assert resp.json() == {"success": True, "disconnected": True}
        assert fake_oauth.revoked == ["refresh-token"]
        assert await credential_store.get(USER_ID) is None


class TestCalendars:
    async def test_list(self, api, connected_user):
        resp = await api.get("/api/google/calendars", params={"uid": USER_ID})

        assert resp.status_code == 200
        body = resp.json()
        assert [c["id"] for c in body["calendars"]] == ["primary", "work"]
        assert body["selected"] == ["primary"]
        assert body["email"] == "member@example.com"

    async def test_select(self, api, connected_user, credential_store):
        resp = await api.post(
            "/api/google/calendars",
            json={"uid": USER_ID, "calendarIds": ["work", "work", "primary"]},
        )

        assert resp.json() == {"success": True, "selected": ["work", "primary"]}
        assert (await credential_store.get(USER_ID)).selected_calendar_ids == ["work", "primary"]

    async def test_not_connected_asks_for_reconnect(self, api):
        resp = await api.get("/api/google/calendars", params={"uid": "nobody"})

        assert resp.status_code == 401
        assert resp.json()["reconnect"] is True

    async def test_google_failure_is_bad_gateway(self, api, fake_client, connected_user):
        fake_client.fail(
            "list_calendars",
            *[RemoteServerError("Failed to list calendars: 503", status_code=503) for _ in range(4)],
        )

        resp = await api.get("/api/google/calendars", params={"uid": USER_ID})

        assert resp.status_code == 502


class TestSyncAndExport:
    async def test_sync(self, api, fake_client, connected_user):
        fake_client.add_event(
            "primary", timed_event("g123", "Soccer practice", "2025-06-14", "09:00", "10:30")
        )

        resp = await api.post("/api/google/sync", json={"uid": USER_ID, "roomId": ROOM_ID})

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["imported"] == 1
        assert body["total"] == 1

    async def test_sync_not_connected(self, api):
        resp = await api.post("/api/google/sync", json={"uid": "nobody", "roomId": ROOM_ID})

        assert resp.status_code == 401
        assert resp.json()["reconnect"] is True

    async def test_sync_requires_room(self, api):
        resp = await api.post("/api/google/sync", json={"uid": USER_ID})

        assert resp.status_code == 422

    async def test_export_and_delete(self, api, event_store, fake_client, connected_user):
        local = await event_store.create(
            ROOM_ID,
            USER_ID,
            LocalEventFields(title="Dentist", date=date(2025, 3, 10), all_day=True),
        )

        created = await api.post(
            "/api/google/export",
            json={"uid": USER_ID, "roomId": ROOM_ID, "eventId": local.id},
        )
        deleted = await api.post(
            "/api/google/export",
            json={"uid": USER_ID, "roomId": ROOM_ID, "eventId": local.id, "action": "delete"},
        )

        assert created.status_code == 200
        assert created.json()["action"] == "created"
        assert deleted.json()["action"] == "deleted"
        assert fake_client.calendars["primary"] == {}

    async def test_export_unknown_event(self, api, connected_user):
        resp = await api.post(
            "/api/google/export",
            json={"uid": USER_ID, "roomId": ROOM_ID, "eventId": "missing"},
        )

        assert resp.status_code == 404

    async def test_export_mirror_record(self, api, event_store, connected_user):
        mirror = await event_store.create(
            ROOM_ID,
            USER_ID,
            LocalEventFields(title="Imported", date=date(2025, 3, 10), all_day=True),
            source=EventSource.REMOTE_MIRROR,
            remote_event_id="g1",
            remote_calendar_id="primary",
        )

        resp = await api.post(
            "/api/google/export",
            json={"uid": USER_ID, "roomId": ROOM_ID, "eventId": mirror.id},
        )

        assert resp.status_code == 400

    async def test_export_all(self, api, event_store, connected_user):
        for title in ("Dentist", "Bake sale"):
            await event_store.create(
                ROOM_ID,
                USER_ID,
                LocalEventFields(title=title, date=date(2025, 3, 10), all_day=True),
            )

        resp = await api.post("/api/google/export-all", json={"uid": USER_ID, "roomId": ROOM_ID})

        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "exported": 2,
            "updated": 0,
            "failed": 0,
            "errors": [],
        }

    async def test_export_all_not_connected(self, api):
        resp = await api.post("/api/google/export-all", json={"uid": "nobody", "roomId": ROOM_ID})

        assert resp.status_code == 401
