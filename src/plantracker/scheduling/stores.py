"""Persistence interfaces and asyncpg-backed stores for the scheduling engine.

Two tables are owned here:

- ``calendar_credentials``: one OAuth credential per (user, provider).
- ``external_event_map``: one provider-side event per (local event, provider).

The scheduling components depend only on the ``Protocol`` classes below, so the
application may plug in its own data-access layer.  The asyncpg classes are the
default implementation.

Token values are never logged.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from plantracker.scheduling.models import (
    DEFAULT_PROVIDER,
    Credential,
    CredentialStatus,
    ExternalEventMap,
    LocalEvent,
    ProviderEvent,
    Recurrence,
)

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

CREDENTIALS_TABLE = "calendar_credentials"
EVENT_MAP_TABLE = "external_event_map"

CREDENTIALS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {CREDENTIALS_TABLE} (
    user_id       TEXT NOT NULL,
    provider      TEXT NOT NULL,
    access_token  TEXT NOT NULL,
    refresh_token TEXT,
    expires_at    TIMESTAMPTZ,
    status        TEXT NOT NULL DEFAULT 'ACTIVE',
    account_email TEXT,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, provider),
    CONSTRAINT ck_calendar_credentials_status
        CHECK (status IN ('ACTIVE', 'EXPIRED', 'REVOKED'))
)
"""

EVENT_MAP_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {EVENT_MAP_TABLE} (
    local_event_id    TEXT NOT NULL,
    provider          TEXT NOT NULL,
    provider_event_id TEXT NOT NULL,
    etag              TEXT,
    html_link         TEXT,
    last_synced_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (local_event_id, provider)
)
"""

EVENT_MAP_PROVIDER_INDEX_DDL = f"""
CREATE INDEX IF NOT EXISTS ix_external_event_map_provider_event
ON {EVENT_MAP_TABLE} (provider, provider_event_id)
"""

SCHEMA_STATEMENTS: tuple[str, ...] = (
    CREDENTIALS_TABLE_DDL,
    EVENT_MAP_TABLE_DDL,
    EVENT_MAP_PROVIDER_INDEX_DDL,
)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class CredentialRepository(Protocol):
    async def find_active_credential(self, user_id: str, provider: str) -> Credential | None: ...

    async def find_credential(self, user_id: str, provider: str) -> Credential | None: ...

    async def upsert_credential(self, credential: Credential) -> None: ...

    async def update_tokens(
        self,
        user_id: str,
        provider: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None: ...

    async def mark_expired(self, user_id: str, provider: str) -> None: ...

    async def mark_revoked(self, user_id: str, provider: str) -> None: ...


class EventMapRepository(Protocol):
    async def find_mapping(self, local_event_id: str, provider: str) -> ExternalEventMap | None: ...

    async def find_mapping_by_provider_event(
        self, provider: str, provider_event_id: str, *, owner_id: str
    ) -> ExternalEventMap | None: ...

    async def create_mapping(self, mapping: ExternalEventMap) -> None: ...

    async def touch_mapping(
        self,
        local_event_id: str,
        provider: str,
        *,
        etag: str | None,
        synced_at: datetime,
    ) -> None: ...

    async def delete_mapping(self, local_event_id: str, provider: str) -> bool: ...


class UserDirectory(Protocol):
    async def resolve_emails(self, user_ids: Iterable[str]) -> dict[str, str]: ...


class LocalEventSource(Protocol):
    async def get_local_event(self, local_event_id: str) -> LocalEvent | None: ...


class LocalEventWriter(Protocol):
    """Writes local events on behalf of an inbound provider pull."""

    async def create_from_provider(
        self, owner_id: str, event: ProviderEvent, *, project_id: str | None = None
    ) -> str: ...

    async def update_from_provider(
        self, local_event_id: str, owner_id: str, event: ProviderEvent
    ) -> bool: ...

    async def discard_local_event(self, local_event_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _credential_from_row(row: Mapping[str, Any]) -> Credential:
    return Credential(
        user_id=row["user_id"],
        provider=row["provider"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        expires_at=_ensure_utc(row["expires_at"]),
        status=CredentialStatus(row["status"]),
        account_email=row["account_email"],
        updated_at=_ensure_utc(row["updated_at"]),
    )


def _mapping_from_row(row: Mapping[str, Any]) -> ExternalEventMap:
    return ExternalEventMap(
        local_event_id=row["local_event_id"],
        provider=row["provider"],
        provider_event_id=row["provider_event_id"],
        etag=row["etag"],
        html_link=row["html_link"],
        last_synced_at=_ensure_utc(row["last_synced_at"]),
    )


def _rows_affected(status: str) -> int:
    """Parse the trailing row count of an asyncpg command status string."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


_CREDENTIAL_COLUMNS = (
    "user_id, provider, access_token, refresh_token, expires_at, status, "
    "account_email, updated_at"
)


# ---------------------------------------------------------------------------
# asyncpg implementations
# ---------------------------------------------------------------------------


class PostgresCredentialStore:
    """Credential repository backed by the ``calendar_credentials`` table.

    Each row is written only by the token lifecycle manager.  Concurrent
    writers for the same row resolve as last-writer-wins, which is safe because
    every refresh converges on the provider's current token.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def find_active_credential(
        self, user_id: str, provider: str = DEFAULT_PROVIDER
    ) -> Credential | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_CREDENTIAL_COLUMNS} FROM {CREDENTIALS_TABLE} "
                "WHERE user_id = $1 AND provider = $2 AND status = 'ACTIVE'",
                user_id,
                provider,
            )
        return None if row is None else _credential_from_row(row)

    async def find_credential(
        self, user_id: str, provider: str = DEFAULT_PROVIDER
    ) -> Credential | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_CREDENTIAL_COLUMNS} FROM {CREDENTIALS_TABLE} "
                "WHERE user_id = $1 AND provider = $2",
                user_id,
                provider,
            )
        return None if row is None else _credential_from_row(row)

    async def upsert_credential(self, credential: Credential) -> None:
        """Insert or replace the credential for (user, provider)."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {CREDENTIALS_TABLE}
                    (user_id, provider, access_token, refresh_token, expires_at,
                     status, account_email)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (user_id, provider) DO UPDATE SET
                    access_token  = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    expires_at    = EXCLUDED.expires_at,
                    status        = EXCLUDED.status,
                    account_email = COALESCE(EXCLUDED.account_email,
                                             {CREDENTIALS_TABLE}.account_email),
                    updated_at    = now()
                """,
                credential.user_id,
                credential.provider,
                credential.access_token,
                credential.refresh_token,
                credential.expires_at,
                credential.status.value,
                credential.account_email,
            )
        logger.info(
            "Credential stored: user_id=%r provider=%r status=%s",
            credential.user_id,
            credential.provider,
            credential.status.value,
        )

    async def update_tokens(
        self,
        user_id: str,
        provider: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {CREDENTIALS_TABLE} SET
                    access_token  = $3,
                    expires_at    = $4,
                    refresh_token = COALESCE($5, refresh_token),
                    updated_at    = now()
                WHERE user_id = $1 AND provider = $2
                """,
                user_id,
                provider,
                access_token,
                expires_at,
                refresh_token,
            )

    async def mark_expired(self, user_id: str, provider: str = DEFAULT_PROVIDER) -> None:
        await self._set_status(user_id, provider, CredentialStatus.EXPIRED)

    async def mark_revoked(self, user_id: str, provider: str = DEFAULT_PROVIDER) -> None:
        await self._set_status(user_id, provider, CredentialStatus.REVOKED)

    async def _set_status(self, user_id: str, provider: str, status: CredentialStatus) -> None:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"UPDATE {CREDENTIALS_TABLE} SET status = $3, updated_at = now() "
                "WHERE user_id = $1 AND provider = $2",
                user_id,
                provider,
                status.value,
            )
        logger.info(
            "Credential status set: user_id=%r provider=%r status=%s rows=%d",
            user_id,
            provider,
            status.value,
            _rows_affected(result),
        )

    def __repr__(self) -> str:
        return f"PostgresCredentialStore(pool={self.pool!r})"


class PostgresEventMapStore:
    """Event mapping repository backed by the ``external_event_map`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def find_mapping(
        self, local_event_id: str, provider: str = DEFAULT_PROVIDER
    ) -> ExternalEventMap | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT local_event_id, provider, provider_event_id, etag, html_link, "
                f"last_synced_at FROM {EVENT_MAP_TABLE} "
                "WHERE local_event_id = $1 AND provider = $2",
                local_event_id,
                provider,
            )
        return None if row is None else _mapping_from_row(row)

    async def find_mapping_by_provider_event(
        self, provider: str, provider_event_id: str, *, owner_id: str
    ) -> ExternalEventMap | None:
        """Find the mapping of a provider event among local events owned by ``owner_id``."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT m.local_event_id, m.provider, m.provider_event_id, m.etag,
                       m.html_link, m.last_synced_at
                FROM {EVENT_MAP_TABLE} m
                JOIN events e ON e.id::text = m.local_event_id
                WHERE m.provider = $1 AND m.provider_event_id = $2
                  AND e.created_by::text = $3
                ORDER BY m.last_synced_at DESC
                LIMIT 1
                """,
                provider,
                provider_event_id,
                owner_id,
            )
        return None if row is None else _mapping_from_row(row)

    async def create_mapping(self, mapping: ExternalEventMap) -> None:
        """Persist a mapping; an existing row for the same key is replaced."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {EVENT_MAP_TABLE}
                    (local_event_id, provider, provider_event_id, etag, html_link,
                     last_synced_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (local_event_id, provider) DO UPDATE SET
                    provider_event_id = EXCLUDED.provider_event_id,
                    etag              = EXCLUDED.etag,
                    html_link         = EXCLUDED.html_link,
                    last_synced_at    = EXCLUDED.last_synced_at
                """,
                mapping.local_event_id,
                mapping.provider,
                mapping.provider_event_id,
                mapping.etag,
                mapping.html_link,
                mapping.last_synced_at,
            )

    async def touch_mapping(
        self,
        local_event_id: str,
        provider: str,
        *,
        etag: str | None,
        synced_at: datetime,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {EVENT_MAP_TABLE} SET
                    etag           = COALESCE($3, etag),
                    last_synced_at = $4
                WHERE local_event_id = $1 AND provider = $2
                """,
                local_event_id,
                provider,
                etag,
                synced_at,
            )

    async def delete_mapping(self, local_event_id: str, provider: str = DEFAULT_PROVIDER) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {EVENT_MAP_TABLE} WHERE local_event_id = $1 AND provider = $2",
                local_event_id,
                provider,
            )
        return _rows_affected(result) > 0


class PostgresUserDirectory:
    """Resolve participant emails from the application's ``users`` table."""

    def __init__(self, pool: asyncpg.Pool, *, table: str = "users") -> None:
        self.pool = pool
        self._table = table

    async def resolve_emails(self, user_ids: Iterable[str]) -> dict[str, str]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT id::text AS id, email FROM {self._table} WHERE id::text = ANY($1::text[])",
                ids,
            )
        return {row["id"]: row["email"] for row in rows if row["email"]}


class PostgresLocalEventSource:
    """Read application events and their participants for calendar sync.

    Expects the application's ``events`` table (``created_by`` is the
    organizer, ``recurrence`` holds the recurrence choice, a non-null
    ``meet_link`` requests conferencing) and its ``participants`` table.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def get_local_event(self, local_event_id: str) -> LocalEvent | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id::text AS id, created_by::text AS organizer_id, title, description,
                       start_at, end_at, recurrence, meet_link
                FROM events
                WHERE id::text = $1
                """,
                local_event_id,
            )
            if row is None:
                return None
            participant_rows = await conn.fetch(
                "SELECT user_id::text AS user_id FROM participants "
                "WHERE event_id::text = $1 AND user_id IS NOT NULL",
                local_event_id,
            )
        return LocalEvent(
            id=row["id"],
            organizer_id=row["organizer_id"],
            title=row["title"],
            description=row["description"],
            start_at=_ensure_utc(row["start_at"]),
            end_at=_ensure_utc(row["end_at"]),
            attendee_ids=[p["user_id"] for p in participant_rows],
            recurrence=Recurrence(row["recurrence"] or Recurrence.NONE),
            wants_conferencing=row["meet_link"] is not None,
        )


class PostgresLocalEventWriter:
    """Create and update application events from provider calendar events.

    Only the fields the provider owns are written: title, description,
    location and the time range. Participants and recurrence stay local.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def create_from_provider(
        self, owner_id: str, event: ProviderEvent, *, project_id: str | None = None
    ) -> str:
        async with self.pool.acquire() as conn:
            local_event_id = await conn.fetchval(
                """
                INSERT INTO events
                    (project_id, title, description, start_at, end_at, location, created_by)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING id::text
                """,
                project_id,
                event.title,
                event.description,
                event.start,
                event.end,
                event.location,
                owner_id,
            )
        return local_event_id

    async def update_from_provider(
        self, local_event_id: str, owner_id: str, event: ProviderEvent
    ) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE events SET
                    title       = $3,
                    description = $4,
                    start_at    = $5,
                    end_at      = $6,
                    location    = $7,
                    updated_at  = now()
                WHERE id::text = $1 AND created_by::text = $2
                """,
                local_event_id,
                owner_id,
                event.title,
                event.description,
                event.start,
                event.end,
                event.location,
            )
        return _rows_affected(result) > 0

    async def discard_local_event(self, local_event_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("DELETE FROM events WHERE id::text = $1", local_event_id)
