"""Shared fixtures for the scheduling test suite.

The stores, user directory, local event source and calendar provider are
replaced by in-memory doubles so no database or network is needed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

import pytest

from plantracker.scheduling.errors import ProviderAuthError, ProviderRequestError
from plantracker.scheduling.events import EventMaterializer
from plantracker.scheduling.freebusy import FreeBusyAggregator
from plantracker.scheduling.models import (
    DEFAULT_PROVIDER,
    BusyInterval,
    Credential,
    CredentialStatus,
    EventDraft,
    EventPatch,
    ExternalEventMap,
    LocalEvent,
    MaterializedEvent,
    ProviderEvent,
    TokenGrant,
)
from plantracker.scheduling.provider import CalendarProvider
from plantracker.scheduling.service import MeetingScheduler
from plantracker.scheduling.tokens import TokenLifecycleManager

# Monday 2025-12-08 08:00 in Asia/Ho_Chi_Minh.
NOW = datetime(2025, 12, 8, 1, 0, tzinfo=UTC)


def access_token_for(user_id: str) -> str:
    return f"access-{user_id}"


def refresh_token_for(user_id: str) -> str:
    return f"refresh-{user_id}"


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class InMemoryCredentialStore:
    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], Credential] = {}
        self.update_calls: list[str] = []
        self.fail_lookups_for: set[str] = set()

    def add(
        self,
        user_id: str,
        *,
        expires_at: datetime | None,
        refresh_token: str | None = "default",
        status: CredentialStatus = CredentialStatus.ACTIVE,
        account_email: str | None = None,
    ) -> Credential:
        credential = Credential(
            user_id=user_id,
            provider=DEFAULT_PROVIDER,
            access_token=access_token_for(user_id),
            refresh_token=refresh_token_for(user_id) if refresh_token == "default" else refresh_token,
            expires_at=expires_at,
            status=status,
            account_email=account_email,
            updated_at=NOW,
        )
        self.rows[(user_id, DEFAULT_PROVIDER)] = credential
        return credential

    def get(self, user_id: str) -> Credential | None:
        return self.rows.get((user_id, DEFAULT_PROVIDER))

    async def find_active_credential(self, user_id: str, provider: str) -> Credential | None:
        if user_id in self.fail_lookups_for:
            raise ConnectionError("database unavailable")
        credential = self.rows.get((user_id, provider))
        if credential is None or credential.status is not CredentialStatus.ACTIVE:
            return None
        return credential

    async def find_credential(self, user_id: str, provider: str) -> Credential | None:
        return self.rows.get((user_id, provider))

    async def upsert_credential(self, credential: Credential) -> None:
        self.rows[(credential.user_id, credential.provider)] = credential

    async def update_tokens(
        self,
        user_id: str,
        provider: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        self.update_calls.append(user_id)
        current = self.rows[(user_id, provider)]
        self.rows[(user_id, provider)] = current.model_copy(
            update={
                "access_token": access_token,
                "expires_at": expires_at,
                "refresh_token": refresh_token or current.refresh_token,
            }
        )

    async def _set_status(self, user_id: str, provider: str, status: CredentialStatus) -> None:
        current = self.rows.get((user_id, provider))
        if current is not None:
            self.rows[(user_id, provider)] = current.model_copy(update={"status": status})

    async def mark_expired(self, user_id: str, provider: str) -> None:
        await self._set_status(user_id, provider, CredentialStatus.EXPIRED)

    async def mark_revoked(self, user_id: str, provider: str) -> None:
        await self._set_status(user_id, provider, CredentialStatus.REVOKED)


class InMemoryEventMapStore:
    def __init__(self, local_events: InMemoryLocalEvents | None = None) -> None:
        self.rows: dict[tuple[str, str], ExternalEventMap] = {}
        self.create_errors: list[Exception] = []
        self._local_events = local_events

    async def find_mapping(self, local_event_id: str, provider: str) -> ExternalEventMap | None:
        return self.rows.get((local_event_id, provider))

    async def find_mapping_by_provider_event(
        self, provider: str, provider_event_id: str, *, owner_id: str
    ) -> ExternalEventMap | None:
        owned = self._local_events.events if self._local_events is not None else {}
        matches = [
            mapping
            for mapping in self.rows.values()
            if mapping.provider == provider
            and mapping.provider_event_id == provider_event_id
            and mapping.local_event_id in owned
            and owned[mapping.local_event_id].organizer_id == owner_id
        ]
        return max(matches, key=lambda mapping: mapping.last_synced_at, default=None)

    async def create_mapping(self, mapping: ExternalEventMap) -> None:
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.rows[(mapping.local_event_id, mapping.provider)] = mapping

    async def touch_mapping(
        self,
        local_event_id: str,
        provider: str,
        *,
        etag: str | None,
        synced_at: datetime,
    ) -> None:
        current = self.rows[(local_event_id, provider)]
        self.rows[(local_event_id, provider)] = current.model_copy(
            update={"etag": etag or current.etag, "last_synced_at": synced_at}
        )

    async def delete_mapping(self, local_event_id: str, provider: str) -> bool:
        return self.rows.pop((local_event_id, provider), None) is not None


class StaticUserDirectory:
    def __init__(self, emails: dict[str, str] | None = None) -> None:
        self.emails = emails or {}

    async def resolve_emails(self, user_ids: Iterable[str]) -> dict[str, str]:
        return {user_id: self.emails[user_id] for user_id in user_ids if user_id in self.emails}


class InMemoryLocalEvents:
    """Local event source and writer in one; pulled events get ids ``local-N``."""

    def __init__(self) -> None:
        self.events: dict[str, LocalEvent] = {}
        self.locations: dict[str, str | None] = {}
        self.project_ids: dict[str, str | None] = {}
        self.discarded: list[str] = []
        self._counter = 0

    def add(self, event: LocalEvent) -> LocalEvent:
        self.events[event.id] = event
        return event

    async def get_local_event(self, local_event_id: str) -> LocalEvent | None:
        return self.events.get(local_event_id)

    async def create_from_provider(
        self, owner_id: str, event: ProviderEvent, *, project_id: str | None = None
    ) -> str:
        self._counter += 1
        local_event_id = f"local-{self._counter}"
        self.events[local_event_id] = LocalEvent(
            id=local_event_id,
            organizer_id=owner_id,
            title=event.title,
            description=event.description,
            start_at=event.start,
            end_at=event.end,
        )
        self.locations[local_event_id] = event.location
        self.project_ids[local_event_id] = project_id
        return local_event_id

    async def update_from_provider(
        self, local_event_id: str, owner_id: str, event: ProviderEvent
    ) -> bool:
        current = self.events.get(local_event_id)
        if current is None or current.organizer_id != owner_id:
            return False
        self.events[local_event_id] = current.model_copy(
            update={
                "title": event.title,
                "description": event.description,
                "start_at": event.start,
                "end_at": event.end,
            }
        )
        self.locations[local_event_id] = event.location
        return True

    async def discard_local_event(self, local_event_id: str) -> None:
        self.discarded.append(local_event_id)
        self.events.pop(local_event_id, None)
        self.locations.pop(local_event_id, None)
        self.project_ids.pop(local_event_id, None)


class FakeCalendarProvider(CalendarProvider):
    """Records every call; failures are queued per operation name."""

    def __init__(self) -> None:
        self.refresh_calls: list[str] = []
        self.rejected_refresh_tokens: set[str] = set()
        self.transient_refresh_tokens: set[str] = set()
        self.exchange_calls: list[str] = []
        self.exchange_grant = TokenGrant(
            access_token="access-from-code",
            expires_at=NOW + timedelta(hours=1),
            refresh_token="refresh-from-code",
        )
        self.account_email: str | None = "owner@example.com"
        self.busy: dict[str, list[BusyInterval]] = {}
        self.busy_calls: list[str] = []
        self.busy_errors: set[str] = set()
        self.busy_delay = 0.0
        self.created: list[tuple[str, EventDraft]] = []
        self.updated: list[tuple[str, str, EventPatch]] = []
        self.deleted: list[tuple[str, str]] = []
        self.listed: list[ProviderEvent] = []
        self.list_calls: list[tuple[str, datetime, datetime]] = []
        self.errors: dict[str, list[Exception]] = {}
        self._event_counter = 0

    @property
    def name(self) -> str:
        return DEFAULT_PROVIDER

    def fail_next(self, operation: str, exc: Exception) -> None:
        self.errors.setdefault(operation, []).append(exc)

    def _maybe_fail(self, operation: str) -> None:
        queued = self.errors.get(operation)
        if queued:
            raise queued.pop(0)

    def authorization_url(self, *, state: str | None = None) -> str:
        return f"https://consent.example/auth?state={state}"

    async def exchange_code(self, code: str) -> TokenGrant:
        self.exchange_calls.append(code)
        self._maybe_fail("exchange_code")
        return self.exchange_grant

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        if refresh_token in self.rejected_refresh_tokens:
            raise ProviderAuthError(
                "invalid_grant", status_code=400, error_code="invalid_grant"
            )
        if refresh_token in self.transient_refresh_tokens:
            raise ProviderAuthError("upstream unavailable", status_code=503, retryable=True)
        return TokenGrant(
            access_token=refresh_token.replace("refresh-", "access-", 1),
            expires_at=NOW + timedelta(hours=1),
        )

    async def fetch_account_email(self, access_token: str) -> str | None:
        self._maybe_fail("fetch_account_email")
        return self.account_email

    async def query_busy(
        self,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[BusyInterval]:
        self.busy_calls.append(access_token)
        if self.busy_delay:
            await asyncio.sleep(self.busy_delay)
        if access_token in self.busy_errors:
            raise ProviderRequestError(status_code=500, message="backend error")
        return self.busy.get(access_token, [])

    async def list_events(
        self,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ProviderEvent]:
        self.list_calls.append((access_token, window_start, window_end))
        self._maybe_fail("list_events")
        return list(self.listed)

    async def create_event(self, access_token: str, draft: EventDraft) -> MaterializedEvent:
        self.created.append((access_token, draft))
        self._maybe_fail("create_event")
        self._event_counter += 1
        event_id = f"evt-{self._event_counter}"
        return MaterializedEvent(
            provider_event_id=event_id,
            meet_link="https://meet.google.com/abc-defg-hij" if draft.wants_conferencing else None,
            html_link=f"https://calendar.google.com/event?eid={event_id}",
            etag=f'"etag-{self._event_counter}"',
        )

    async def update_event(
        self,
        access_token: str,
        provider_event_id: str,
        patch: EventPatch,
    ) -> str | None:
        self.updated.append((access_token, provider_event_id, patch))
        self._maybe_fail("update_event")
        return f'"etag-updated-{len(self.updated)}"'

    async def delete_event(self, access_token: str, provider_event_id: str) -> None:
        self.deleted.append((access_token, provider_event_id))
        self._maybe_fail("delete_event")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def provider() -> FakeCalendarProvider:
    return FakeCalendarProvider()


@pytest.fixture
def mapping_store(local_events) -> InMemoryEventMapStore:
    return InMemoryEventMapStore(local_events)


@pytest.fixture
def user_directory() -> StaticUserDirectory:
    return StaticUserDirectory(
        {
            "u1": "u1@example.com",
            "u2": "u2@example.com",
            "u3": "u3@example.com",
            "organizer": "organizer@example.com",
        }
    )


@pytest.fixture
def local_events() -> InMemoryLocalEvents:
    return InMemoryLocalEvents()


@pytest.fixture
def tokens(credential_store, provider) -> TokenLifecycleManager:
    return TokenLifecycleManager(credential_store, provider, clock=lambda: NOW)


@pytest.fixture
def freebusy(credential_store, provider) -> FreeBusyAggregator:
    return FreeBusyAggregator(credential_store, provider)


@pytest.fixture
def materializer(
    tokens, provider, mapping_store, user_directory, local_events
) -> EventMaterializer:
    return EventMaterializer(
        tokens,
        provider,
        mapping_store,
        users=user_directory,
        local_events=local_events,
        local_event_writer=local_events,
        clock=lambda: NOW,
    )


@pytest.fixture
def scheduler(tokens, freebusy, materializer) -> MeetingScheduler:
    return MeetingScheduler(tokens, freebusy, materializer, clock=lambda: NOW)
