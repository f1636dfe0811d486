"""Tests for the scheduling API endpoints.

The router runs against a real MeetingScheduler wired to the in-memory
stores and fake calendar provider from the shared conftest.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from plantracker.api.app import create_app
from plantracker.api.middleware import REQUEST_ID_HEADER
from plantracker.api.routers.scheduling import _get_scheduler
from plantracker.scheduling.errors import ProviderAuthError, ProviderRequestError
from plantracker.scheduling.models import CredentialStatus, LocalEvent, ProviderEvent, Recurrence

pytestmark = pytest.mark.unit


@pytest.fixture
def app(scheduler):
    app = create_app(manage_resources=False)
    app.dependency_overrides[_get_scheduler] = lambda: scheduler
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client


@pytest.fixture
def connect(credential_store, now):
    def _connect(*user_ids: str) -> None:
        for user_id in user_ids:
            credential_store.add(
                user_id,
                expires_at=now + timedelta(hours=1),
                account_email=f"{user_id}@example.com",
            )

    return _connect


# ---------------------------------------------------------------------------
# Health and plumbing
# ---------------------------------------------------------------------------


class TestPlumbing:
    async def test_health(self, client) -> None:
        resp = await client.get("/api/health")

        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    async def test_request_id_echoed(self, client) -> None:
        resp = await client.get("/api/health", headers={REQUEST_ID_HEADER: "req-123"})

        assert resp.headers[REQUEST_ID_HEADER] == "req-123"

    async def test_request_id_generated_when_missing(self, client) -> None:
        resp = await client.get("/api/health")

        assert len(resp.headers[REQUEST_ID_HEADER]) == 32

    async def test_unwired_scheduler_returns_500_envelope(self) -> None:
        app = create_app(manage_resources=False)

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            resp = await client.get("/api/scheduling/integrations/u1")

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "INTERNAL_ERROR"


# ---------------------------------------------------------------------------
# POST /api/scheduling/suggestions
# ---------------------------------------------------------------------------


class TestSuggestions:
    async def test_returns_ranked_slots(self, client, connect) -> None:
        connect("u1", "u2")

        resp = await client.post(
            "/api/scheduling/suggestions",
            json={
                "participant_ids": ["u1", "u2", "u3"],
                "start_date": "2025-12-09",
                "end_date": "2025-12-09",
                "duration_minutes": 30,
                "max_suggestions": 2,
            },
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["total_participants"] == 3
        assert data["participants_with_calendar"] == 2
        assert len(data["suggestions"]) == 2
        first = data["suggestions"][0]
        assert first["score"] == 100
        assert first["score_label"] == "Excellent"
        assert first["available_user_ids"] == ["u1", "u2"]
        assert first["start"].startswith("2025-12-09T09:00:00")
        assert data["checked_range"]["start"].startswith("2025-12-09T09:00:00")
        assert data["recommendations"]

    async def test_no_connected_participants_is_400(self, client, provider) -> None:
        resp = await client.post(
            "/api/scheduling/suggestions",
            json={
                "participant_ids": ["u1"],
                "start_date": "2025-12-09",
                "end_date": "2025-12-09",
            },
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "NO_AVAILABLE_PARTICIPANTS"
        assert provider.busy_calls == []

    async def test_weekend_range_is_400(self, client, connect) -> None:
        connect("u1")

        resp = await client.post(
            "/api/scheduling/suggestions",
            json={
                "participant_ids": ["u1"],
                "start_date": "2025-12-13",
                "end_date": "2025-12-14",
            },
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "NO_CANDIDATE_SLOTS"

    async def test_reversed_range_is_400(self, client) -> None:
        resp = await client.post(
            "/api/scheduling/suggestions",
            json={
                "participant_ids": ["u1"],
                "start_date": "2025-12-10",
                "end_date": "2025-12-09",
            },
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"participant_ids": []},
            {"duration_minutes": 10},
            {"duration_minutes": 500},
            {"max_suggestions": 0},
            {"start_date": "not-a-date"},
        ],
    )
    async def test_schema_violations_are_422(self, client, overrides) -> None:
        body = {
            "participant_ids": ["u1"],
            "start_date": "2025-12-09",
            "end_date": "2025-12-09",
        }
        body.update(overrides)

        resp = await client.post("/api/scheduling/suggestions", json=body)

        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# POST /api/scheduling/meetings
# ---------------------------------------------------------------------------


class TestBookMeeting:
    def _body(self, **overrides) -> dict:
        body = {
            "organizer_id": "organizer",
            "attendee_ids": ["u1"],
            "start": "2025-12-09T10:00:00+07:00",
            "end": "2025-12-09T11:00:00+07:00",
            "title": "Kickoff",
            "recurrence": "weekly",
        }
        body.update(overrides)
        return body

    async def test_books_meeting(self, client, connect, provider) -> None:
        connect("organizer")

        resp = await client.post("/api/scheduling/meetings", json=self._body())

        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["event_id"] == "evt-1"
        assert data["meet_link"] == "https://meet.google.com/abc-defg-hij"
        _, draft = provider.created[0]
        assert draft.recurrence is Recurrence.WEEKLY
        assert draft.attendee_emails == ["organizer@example.com", "u1@example.com"]

    async def test_organizer_without_calendar_is_400(self, client) -> None:
        resp = await client.post("/api/scheduling/meetings", json=self._body())

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "ORGANIZER_CALENDAR_UNAVAILABLE"

    async def test_provider_failure_is_502(self, client, connect, provider) -> None:
        connect("organizer")
        provider.fail_next(
            "create_event", ProviderRequestError(status_code=500, message="backend error")
        )

        resp = await client.post("/api/scheduling/meetings", json=self._body())

        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "PROVIDER_ERROR"

    async def test_end_before_start_is_400(self, client, connect) -> None:
        connect("organizer")

        resp = await client.post(
            "/api/scheduling/meetings",
            json=self._body(end="2025-12-09T09:00:00+07:00"),
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------


class TestIntegrations:
    async def test_status_connected(self, client, connect) -> None:
        connect("u1")

        resp = await client.get("/api/scheduling/integrations/u1")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["is_connected"] is True
        assert data["account_email"] == "u1@example.com"

    async def test_status_not_connected(self, client) -> None:
        resp = await client.get("/api/scheduling/integrations/u1")

        assert resp.json()["data"] == {
            "is_connected": False,
            "account_email": None,
            "last_sync_at": None,
        }

    async def test_authorize_returns_url(self, client) -> None:
        resp = await client.get("/api/scheduling/integrations/u1/authorize")

        assert resp.status_code == 200
        assert resp.json()["data"]["authorization_url"].endswith("state=u1")

    async def test_authorize_redirect(self, client) -> None:
        resp = await client.get("/api/scheduling/integrations/u1/authorize?redirect=true")

        assert resp.status_code == 302
        assert resp.headers["location"] == "https://consent.example/auth?state=u1"

    async def test_callback_connects_calendar(self, client, credential_store) -> None:
        resp = await client.post(
            "/api/scheduling/integrations/u1/callback", json={"code": "auth-code"}
        )

        assert resp.status_code == 200
        assert resp.json()["data"]["is_connected"] is True
        assert credential_store.get("u1").status is CredentialStatus.ACTIVE

    async def test_callback_rejected_code_is_400(self, client, provider) -> None:
        provider.fail_next(
            "exchange_code",
            ProviderAuthError(
                "Google OAuth token request failed (400): invalid_grant",
                status_code=400,
                error_code="invalid_grant",
            ),
        )

        resp = await client.post(
            "/api/scheduling/integrations/u1/callback", json={"code": "bad"}
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "AUTHORIZATION_FAILED"

    async def test_disconnect(self, client, connect, credential_store) -> None:
        connect("u1")

        resp = await client.post("/api/scheduling/integrations/u1/disconnect")

        assert resp.status_code == 200
        assert resp.json()["data"] == {"user_id": "u1", "status": "REVOKED"}
        assert credential_store.get("u1").status is CredentialStatus.REVOKED


# ---------------------------------------------------------------------------
# Local event sync
# ---------------------------------------------------------------------------


class TestEventSync:
    @pytest.fixture
    def local_event(self, local_events, now):
        return local_events.add(
            LocalEvent(
                id="event-1",
                organizer_id="organizer",
                title="Retro",
                start_at=now + timedelta(days=1),
                end_at=now + timedelta(days=1, hours=1),
                attendee_ids=["u1"],
            )
        )

    async def test_sync_and_unsync(self, client, connect, local_event, provider) -> None:
        connect("organizer")

        resp = await client.post("/api/scheduling/events/event-1/sync")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["synced"] is True
        assert data["provider_event_id"] == "evt-1"

        resp = await client.delete("/api/scheduling/events/event-1/sync")

        assert resp.status_code == 200
        assert resp.json()["data"] == {"local_event_id": "event-1", "removed": True}
        assert provider.deleted == [("access-organizer", "evt-1")]

    async def test_sync_without_organizer_calendar(self, client, local_event) -> None:
        resp = await client.post("/api/scheduling/events/event-1/sync")

        assert resp.status_code == 200
        assert resp.json()["data"]["synced"] is False

    async def test_sync_unknown_event_is_400(self, client) -> None:
        resp = await client.post("/api/scheduling/events/missing/sync")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "LOCAL_EVENT_NOT_FOUND"

    async def test_unsync_never_synced_event(self, client) -> None:
        resp = await client.delete("/api/scheduling/events/event-9/sync")

        assert resp.json()["data"]["removed"] is False

    async def test_unsync_passes_organizer(self, app) -> None:
        events = MagicMock()
        events.unsync_local_event = AsyncMock(return_value=True)
        scheduler = MagicMock()
        scheduler.events = events
        app.dependency_overrides[_get_scheduler] = lambda: scheduler

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            resp = await client.delete(
                "/api/scheduling/events/event-1/sync", params={"organizer_id": "organizer"}
            )

        assert resp.status_code == 200
        events.unsync_local_event.assert_awaited_once_with("event-1", organizer_id="organizer")


class TestProviderEvents:
    @pytest.fixture
    def listed(self, provider, now):
        provider.listed = [
            ProviderEvent(
                provider_event_id="g-1",
                title="Customer call",
                location="Room 4",
                start=now + timedelta(days=1),
                end=now + timedelta(days=1, hours=1),
            )
        ]
        return provider.listed

    def _window(self, now) -> dict:
        return {
            "start": now.isoformat(),
            "end": (now + timedelta(days=7)).isoformat(),
        }

    async def test_list_events(self, client, connect, listed, now) -> None:
        connect("organizer")

        resp = await client.get(
            "/api/scheduling/integrations/organizer/events", params=self._window(now)
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert [event["provider_event_id"] for event in data] == ["g-1"]
        assert data[0]["location"] == "Room 4"

    async def test_list_events_without_calendar_is_empty(self, client, listed, now) -> None:
        resp = await client.get(
            "/api/scheduling/integrations/organizer/events", params=self._window(now)
        )

        assert resp.status_code == 200
        assert resp.json()["data"] == []

    async def test_list_events_reversed_window_is_400(self, client, now) -> None:
        window = self._window(now)
        window["start"], window["end"] = window["end"], window["start"]

        resp = await client.get("/api/scheduling/integrations/organizer/events", params=window)

        assert resp.status_code == 400

    async def test_pull_creates_local_events(
        self, client, connect, listed, local_events, now
    ) -> None:
        connect("organizer")

        resp = await client.post(
            "/api/scheduling/integrations/organizer/events/pull",
            json={**self._window(now), "project_id": "project-9"},
        )

        assert resp.status_code == 200
        assert resp.json()["data"] == {
            "user_id": "organizer",
            "created": ["local-1"],
            "updated": [],
            "failed": [],
        }
        assert local_events.events["local-1"].title == "Customer call"
        assert local_events.project_ids["local-1"] == "project-9"

    async def test_pull_without_calendar_is_400(self, client, listed, now) -> None:
        resp = await client.post(
            "/api/scheduling/integrations/organizer/events/pull", json=self._window(now)
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "CALENDAR_NOT_CONNECTED"

    async def test_pull_listing_failure_is_502(self, client, connect, provider, now) -> None:
        connect("organizer")
        provider.fail_next(
            "list_events", ProviderRequestError(status_code=500, message="backend error")
        )

        resp = await client.post(
            "/api/scheduling/integrations/organizer/events/pull", json=self._window(now)
        )

        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "PROVIDER_ERROR"
