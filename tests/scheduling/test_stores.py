"""Unit tests for the asyncpg-backed scheduling stores.

All tests mock the asyncpg pool; no real database required.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from plantracker.scheduling.models import (
    Credential,
    CredentialStatus,
    ExternalEventMap,
    ProviderEvent,
    Recurrence,
)
from plantracker.scheduling.stores import (
    SCHEMA_STATEMENTS,
    PostgresCredentialStore,
    PostgresEventMapStore,
    PostgresLocalEventSource,
    PostgresLocalEventWriter,
    PostgresUserDirectory,
    _rows_affected,
)

pytestmark = pytest.mark.unit

_NOW = datetime(2025, 12, 8, 1, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_pool(
    *,
    fetchrow_return=None,
    fetch_return=None,
    fetchval_return=None,
    execute_return: str = "UPDATE 1",
) -> MagicMock:
    conn = AsyncMock()
    conn.fetchrow.return_value = fetchrow_return
    conn.fetchval.return_value = fetchval_return
    conn.fetch.return_value = fetch_return or []
    conn.execute.return_value = execute_return

    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=conn)
    cm.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.acquire.return_value = cm
    pool._conn = conn
    return pool


def _credential_row(**overrides) -> dict:
    row = {
        "user_id": "u1",
        "provider": "google_calendar",
        "access_token": "access",
        "refresh_token": "refresh",
        "expires_at": datetime(2025, 12, 8, 2, 0),
        "status": "ACTIVE",
        "account_email": "u1@example.com",
        "updated_at": _NOW,
    }
    row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_tables_are_keyed_per_provider(self) -> None:
        credentials_ddl, mapping_ddl, index_ddl = SCHEMA_STATEMENTS

        assert "PRIMARY KEY (user_id, provider)" in credentials_ddl
        assert "'ACTIVE', 'EXPIRED', 'REVOKED'" in credentials_ddl
        assert "PRIMARY KEY (local_event_id, provider)" in mapping_ddl
        assert "(provider, provider_event_id)" in index_ddl
        assert all("IF NOT EXISTS" in statement for statement in SCHEMA_STATEMENTS)

    @pytest.mark.parametrize(
        ("status", "expected"),
        [("DELETE 1", 1), ("UPDATE 0", 0), ("INSERT 0 3", 3), ("", 0), ("garbage", 0)],
    )
    def test_rows_affected(self, status, expected) -> None:
        assert _rows_affected(status) == expected


# ---------------------------------------------------------------------------
# PostgresCredentialStore
# ---------------------------------------------------------------------------


class TestCredentialStore:
    async def test_find_active_credential_maps_row(self) -> None:
        pool = _make_pool(fetchrow_return=_credential_row())
        store = PostgresCredentialStore(pool)

        credential = await store.find_active_credential("u1", "google_calendar")

        assert credential.user_id == "u1"
        assert credential.status is CredentialStatus.ACTIVE
        assert credential.expires_at == datetime(2025, 12, 8, 2, 0, tzinfo=UTC)
        sql, *args = pool._conn.fetchrow.call_args.args
        assert "status = 'ACTIVE'" in sql
        assert args == ["u1", "google_calendar"]

    async def test_find_active_credential_miss(self) -> None:
        store = PostgresCredentialStore(_make_pool(fetchrow_return=None))

        assert await store.find_active_credential("u1", "google_calendar") is None

    async def test_find_credential_returns_any_status(self) -> None:
        pool = _make_pool(fetchrow_return=_credential_row(status="REVOKED"))
        store = PostgresCredentialStore(pool)

        credential = await store.find_credential("u1", "google_calendar")

        assert credential.status is CredentialStatus.REVOKED
        sql = pool._conn.fetchrow.call_args.args[0]
        assert "status" not in sql.split("WHERE", 1)[1]

    async def test_upsert_uses_on_conflict(self) -> None:
        pool = _make_pool(execute_return="INSERT 0 1")
        store = PostgresCredentialStore(pool)
        credential = Credential(
            user_id="u1",
            access_token="access",
            refresh_token="refresh",
            expires_at=_NOW,
            account_email=None,
        )

        await store.upsert_credential(credential)

        sql, *args = pool._conn.execute.call_args.args
        assert "ON CONFLICT (user_id, provider) DO UPDATE" in sql
        assert "COALESCE(EXCLUDED.account_email" in sql
        assert args == ["u1", "google_calendar", "access", "refresh", _NOW, "ACTIVE", None]

    async def test_update_tokens_keeps_refresh_token_when_omitted(self) -> None:
        pool = _make_pool()
        store = PostgresCredentialStore(pool)

        await store.update_tokens("u1", "google_calendar", access_token="new", expires_at=_NOW)

        sql, *args = pool._conn.execute.call_args.args
        assert "COALESCE($5, refresh_token)" in sql
        assert args == ["u1", "google_calendar", "new", _NOW, None]

    @pytest.mark.parametrize(
        ("method", "status"),
        [("mark_expired", "EXPIRED"), ("mark_revoked", "REVOKED")],
    )
    async def test_status_transitions(self, method, status) -> None:
        pool = _make_pool(execute_return="UPDATE 1")
        store = PostgresCredentialStore(pool)

        await getattr(store, method)("u1", "google_calendar")

        args = pool._conn.execute.call_args.args[1:]
        assert args == ("u1", "google_calendar", status)

    async def test_tokens_never_logged(self, caplog) -> None:
        store = PostgresCredentialStore(_make_pool(execute_return="INSERT 0 1"))
        credential = Credential(
            user_id="u1", access_token="secret-access", refresh_token="secret-refresh"
        )

        with caplog.at_level("DEBUG"):
            await store.upsert_credential(credential)

        assert "secret-access" not in caplog.text
        assert "secret-refresh" not in caplog.text

    def test_credential_repr_is_redacted(self) -> None:
        credential = Credential(user_id="u1", access_token="secret-access", refresh_token="r")

        assert "secret-access" not in repr(credential)
        assert "<REDACTED>" in str(credential)


# ---------------------------------------------------------------------------
# PostgresEventMapStore
# ---------------------------------------------------------------------------


class TestEventMapStore:
    async def test_find_mapping(self) -> None:
        pool = _make_pool(
            fetchrow_return={
                "local_event_id": "event-1",
                "provider": "google_calendar",
                "provider_event_id": "evt-1",
                "etag": '"1"',
                "html_link": None,
                "last_synced_at": _NOW,
            }
        )
        store = PostgresEventMapStore(pool)

        mapping = await store.find_mapping("event-1", "google_calendar")

        assert mapping.provider_event_id == "evt-1"
        assert mapping.last_synced_at == _NOW

    async def test_find_mapping_by_provider_event_is_scoped_to_owner(self) -> None:
        pool = _make_pool(
            fetchrow_return={
                "local_event_id": "event-1",
                "provider": "google_calendar",
                "provider_event_id": "g-1",
                "etag": None,
                "html_link": None,
                "last_synced_at": datetime(2025, 12, 8, 1, 0),
            }
        )
        store = PostgresEventMapStore(pool)

        mapping = await store.find_mapping_by_provider_event(
            "google_calendar", "g-1", owner_id="u1"
        )

        assert mapping.local_event_id == "event-1"
        assert mapping.last_synced_at == _NOW
        sql, *args = pool._conn.fetchrow.call_args.args
        assert "JOIN events e ON e.id::text = m.local_event_id" in sql
        assert "e.created_by::text = $3" in sql
        assert args == ["google_calendar", "g-1", "u1"]

    async def test_find_mapping_by_provider_event_miss(self) -> None:
        store = PostgresEventMapStore(_make_pool(fetchrow_return=None))

        assert (
            await store.find_mapping_by_provider_event("google_calendar", "g-1", owner_id="u1")
            is None
        )

    async def test_create_mapping_upserts(self) -> None:
        pool = _make_pool(execute_return="INSERT 0 1")
        store = PostgresEventMapStore(pool)

        await store.create_mapping(
            ExternalEventMap(local_event_id="event-1", provider_event_id="evt-1", last_synced_at=_NOW)
        )

        sql, *args = pool._conn.execute.call_args.args
        assert "ON CONFLICT (local_event_id, provider) DO UPDATE" in sql
        assert args[:3] == ["event-1", "google_calendar", "evt-1"]

    async def test_touch_mapping_keeps_etag_when_none(self) -> None:
        pool = _make_pool()
        store = PostgresEventMapStore(pool)

        await store.touch_mapping("event-1", "google_calendar", etag=None, synced_at=_NOW)

        sql, *args = pool._conn.execute.call_args.args
        assert "COALESCE($3, etag)" in sql
        assert args == ["event-1", "google_calendar", None, _NOW]

    @pytest.mark.parametrize(("status", "expected"), [("DELETE 1", True), ("DELETE 0", False)])
    async def test_delete_mapping_reports_row_count(self, status, expected) -> None:
        store = PostgresEventMapStore(_make_pool(execute_return=status))

        assert await store.delete_mapping("event-1", "google_calendar") is expected


# ---------------------------------------------------------------------------
# Application tables
# ---------------------------------------------------------------------------


class TestUserDirectory:
    async def test_resolves_known_emails(self) -> None:
        pool = _make_pool(
            fetch_return=[
                {"id": "u1", "email": "u1@example.com"},
                {"id": "u2", "email": None},
            ]
        )
        directory = PostgresUserDirectory(pool)

        emails = await directory.resolve_emails(["u1", "u2", "u1"])

        assert emails == {"u1": "u1@example.com"}
        assert pool._conn.fetch.call_args.args[1] == ["u1", "u2"]

    async def test_empty_input_skips_query(self) -> None:
        pool = _make_pool()

        assert await PostgresUserDirectory(pool).resolve_emails([]) == {}
        pool.acquire.assert_not_called()


class TestLocalEventSource:
    async def test_maps_event_and_participants(self) -> None:
        pool = _make_pool(
            fetchrow_return={
                "id": "event-1",
                "organizer_id": "organizer",
                "title": "Review",
                "description": None,
                "start_at": _NOW,
                "end_at": _NOW.replace(hour=2),
                "recurrence": "WEEKLY",
                "meet_link": "https://meet.google.com/a",
            },
            fetch_return=[{"user_id": "u1"}, {"user_id": "u2"}],
        )

        event = await PostgresLocalEventSource(pool).get_local_event("event-1")

        assert event.organizer_id == "organizer"
        assert event.attendee_ids == ["u1", "u2"]
        assert event.recurrence is Recurrence.WEEKLY
        assert event.wants_conferencing is True

    async def test_null_recurrence_and_meet_link(self) -> None:
        pool = _make_pool(
            fetchrow_return={
                "id": "event-1",
                "organizer_id": "organizer",
                "title": "Review",
                "description": "notes",
                "start_at": _NOW,
                "end_at": _NOW.replace(hour=2),
                "recurrence": None,
                "meet_link": None,
            }
        )

        event = await PostgresLocalEventSource(pool).get_local_event("event-1")

        assert event.recurrence is Recurrence.NONE
        assert event.wants_conferencing is False
        assert event.attendee_ids == []

    async def test_missing_event(self) -> None:
        pool = _make_pool(fetchrow_return=None)

        assert await PostgresLocalEventSource(pool).get_local_event("nope") is None
        pool._conn.fetch.assert_not_called()


class TestLocalEventWriter:
    def _event(self, **overrides) -> ProviderEvent:
        fields = {
            "provider_event_id": "g-1",
            "title": "Imported",
            "location": "Room 4",
            "start": datetime(2025, 12, 10, 2, 0, tzinfo=UTC),
            "end": datetime(2025, 12, 10, 3, 0, tzinfo=UTC),
        }
        fields.update(overrides)
        return ProviderEvent(**fields)

    async def test_create_returns_new_id(self) -> None:
        pool = _make_pool(fetchval_return="event-42")
        writer = PostgresLocalEventWriter(pool)

        local_event_id = await writer.create_from_provider(
            "u1", self._event(), project_id="project-9"
        )

        assert local_event_id == "event-42"
        sql, *args = pool._conn.fetchval.call_args.args
        assert "INSERT INTO events" in sql
        assert "RETURNING id::text" in sql
        assert args[0] == "project-9"
        assert args[1] == "Imported"
        assert args[-2:] == ["Room 4", "u1"]

    @pytest.mark.parametrize(("status", "expected"), [("UPDATE 1", True), ("UPDATE 0", False)])
    async def test_update_is_scoped_to_owner(self, status, expected) -> None:
        pool = _make_pool(execute_return=status)
        writer = PostgresLocalEventWriter(pool)

        assert await writer.update_from_provider("event-1", "u1", self._event()) is expected
        sql, *args = pool._conn.execute.call_args.args
        assert "WHERE id::text = $1 AND created_by::text = $2" in sql
        assert args[:3] == ["event-1", "u1", "Imported"]

    async def test_discard_deletes_row(self) -> None:
        pool = _make_pool(execute_return="DELETE 1")

        await PostgresLocalEventWriter(pool).discard_local_event("event-1")

        sql, *args = pool._conn.execute.call_args.args
        assert sql.startswith("DELETE FROM events")
        assert args == ["event-1"]
