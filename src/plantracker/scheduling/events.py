"""Provider-side event materialization and local event mapping.

Every outbound operation refreshes the acting user's credential first and
fails closed: a missing integration, a failed refresh or a provider failure
yields ``None``/``False`` instead of an exception.

``pull_provider_events`` runs the other way, reconciling provider events into
local events by their (provider, provider event id) mapping. It is an
explicit user action, so a disconnected calendar or a failed listing raises.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from typing import TypeVar

from plantracker.core.metrics import SchedulingMetrics
from plantracker.scheduling.errors import (
    CalendarNotConnectedError,
    LocalEventNotFoundError,
    ProviderError,
    ProviderRequestError,
    SchedulingError,
)
from plantracker.scheduling.models import (
    EventDraft,
    EventPatch,
    EventPullResult,
    ExternalEventMap,
    LocalEvent,
    MaterializedEvent,
    ProviderEvent,
)
from plantracker.scheduling.provider import CalendarProvider
from plantracker.scheduling.stores import (
    EventMapRepository,
    LocalEventSource,
    LocalEventWriter,
    UserDirectory,
)
from plantracker.scheduling.tokens import Clock, TokenLifecycleManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _AccessTokenUnavailable(SchedulingError):
    pass


class EventMaterializer:
    """Create, update and delete provider events and keep the event mapping current."""

    def __init__(
        self,
        tokens: TokenLifecycleManager,
        provider: CalendarProvider,
        mappings: EventMapRepository,
        *,
        users: UserDirectory,
        local_events: LocalEventSource,
        local_event_writer: LocalEventWriter | None = None,
        clock: Clock | None = None,
        metrics: SchedulingMetrics | None = None,
    ) -> None:
        self._tokens = tokens
        self._provider = provider
        self._mappings = mappings
        self._users = users
        self._local_events = local_events
        self._local_event_writer = local_event_writer
        self._clock = clock or (lambda: datetime.now(UTC))
        self._metrics = metrics or SchedulingMetrics(provider.name)
        self._sync_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # -- provider operations -------------------------------------------------

    async def _with_access_token(
        self, user_id: str, operation: Callable[[str], Awaitable[T]]
    ) -> T:
        """Run ``operation`` with the user's token, retrying once after a forced refresh on 401."""
        access_token = await self._tokens.access_token(user_id)
        if access_token is None:
            raise _AccessTokenUnavailable(user_id)
        try:
            return await operation(access_token)
        except ProviderRequestError as exc:
            if exc.status_code != 401:
                raise
            logger.info("Provider rejected access token, forcing refresh: user_id=%r", user_id)
            if not await self._tokens.refresh(user_id, force=True):
                raise
            access_token = await self._tokens.access_token(user_id)
            if access_token is None:
                raise
            return await operation(access_token)

    async def create(self, user_id: str, draft: EventDraft) -> MaterializedEvent | None:
        if not await self._tokens.refresh(user_id):
            logger.info("Skipping event create, calendar unavailable: user_id=%r", user_id)
            self._metrics.record_event_operation("create", "skipped")
            return None
        try:
            event = await self._with_access_token(
                user_id, lambda token: self._provider.create_event(token, draft)
            )
        except _AccessTokenUnavailable:
            self._metrics.record_event_operation("create", "skipped")
            return None
        except ProviderError as exc:
            logger.warning("Event create failed: user_id=%r error=%s", user_id, exc)
            self._metrics.record_event_operation("create", "failure")
            return None
        self._metrics.record_event_operation("create", "success")
        logger.info(
            "Event created: user_id=%r provider_event_id=%r conferencing=%s",
            user_id,
            event.provider_event_id,
            event.meet_link is not None,
        )
        return event

    async def _update(
        self, user_id: str, provider_event_id: str, patch: EventPatch
    ) -> tuple[bool, str | None]:
        if not await self._tokens.refresh(user_id):
            logger.info("Skipping event update, calendar unavailable: user_id=%r", user_id)
            self._metrics.record_event_operation("update", "skipped")
            return False, None
        if patch.is_empty():
            return True, None
        try:
            etag = await self._with_access_token(
                user_id,
                lambda token: self._provider.update_event(token, provider_event_id, patch),
            )
        except _AccessTokenUnavailable:
            self._metrics.record_event_operation("update", "skipped")
            return False, None
        except ProviderError as exc:
            logger.warning(
                "Event update failed: user_id=%r provider_event_id=%r error=%s",
                user_id,
                provider_event_id,
                exc,
            )
            self._metrics.record_event_operation("update", "failure")
            return False, None
        self._metrics.record_event_operation("update", "success")
        return True, etag

    async def update(self, user_id: str, provider_event_id: str, patch: EventPatch) -> bool:
        updated, _ = await self._update(user_id, provider_event_id, patch)
        return updated

    async def delete(self, user_id: str, provider_event_id: str) -> bool:
        if not await self._tokens.refresh(user_id):
            logger.info("Skipping event delete, calendar unavailable: user_id=%r", user_id)
            self._metrics.record_event_operation("delete", "skipped")
            return False
        try:
            await self._with_access_token(
                user_id, lambda token: self._provider.delete_event(token, provider_event_id)
            )
        except _AccessTokenUnavailable:
            self._metrics.record_event_operation("delete", "skipped")
            return False
        except ProviderError as exc:
            logger.warning(
                "Event delete failed: user_id=%r provider_event_id=%r error=%s",
                user_id,
                provider_event_id,
                exc,
            )
            self._metrics.record_event_operation("delete", "failure")
            return False
        self._metrics.record_event_operation("delete", "success")
        return True

    async def list_provider_events(
        self, user_id: str, window_start: datetime, window_end: datetime
    ) -> list[ProviderEvent]:
        """Read the user's provider events in the window; ``[]`` when unavailable."""
        if not await self._tokens.refresh(user_id):
            return []
        try:
            return await self._with_access_token(
                user_id,
                lambda token: self._provider.list_events(token, window_start, window_end),
            )
        except _AccessTokenUnavailable:
            return []
        except ProviderError as exc:
            logger.warning("Event listing failed: user_id=%r error=%s", user_id, exc)
            return []

    # -- local event sync ----------------------------------------------------

    def _lock_for(self, local_event_id: str) -> asyncio.Lock:
        lock = self._sync_locks.get(local_event_id)
        if lock is None:
            lock = asyncio.Lock()
            self._sync_locks[local_event_id] = lock
        return lock

    async def resolve_attendee_emails(self, user_ids: Iterable[str]) -> list[str]:
        """Resolve ``user_ids`` to emails in order, skipping unknown users."""
        ordered = list(dict.fromkeys(user_ids))
        emails = await self._users.resolve_emails(ordered)
        missing = [user_id for user_id in ordered if user_id not in emails]
        if missing:
            logger.info("No email on record for %d participant(s)", len(missing))
        return list(dict.fromkeys(emails[user_id] for user_id in ordered if user_id in emails))

    async def sync_local_event(self, local_event_id: str) -> ExternalEventMap | None:
        """Create or update the provider copy of a local event.

        Calls for the same event id are serialized, so a repeated call
        updates the existing provider event instead of creating a second one.

        Raises
        ------
        LocalEventNotFoundError
            If no local event has ``local_event_id``.
        """
        async with self._lock_for(local_event_id):
            event = await self._local_events.get_local_event(local_event_id)
            if event is None:
                raise LocalEventNotFoundError(f"Local event {local_event_id!r} does not exist")

            attendee_emails = await self.resolve_attendee_emails(
                [event.organizer_id, *event.attendee_ids]
            )
            mapping = await self._mappings.find_mapping(local_event_id, self._provider.name)
            if mapping is not None:
                return await self._sync_existing(event, mapping, attendee_emails)
            return await self._sync_new(event, attendee_emails)

    async def _sync_existing(
        self,
        event: LocalEvent,
        mapping: ExternalEventMap,
        attendee_emails: list[str],
    ) -> ExternalEventMap | None:
        patch = EventPatch(
            title=event.title,
            description=event.description,
            start=event.start_at,
            end=event.end_at,
            attendee_emails=attendee_emails,
            recurrence=event.recurrence,
        )
        updated, etag = await self._update(event.organizer_id, mapping.provider_event_id, patch)
        if not updated:
            return None

        synced_at = self._clock()
        await self._mappings.touch_mapping(
            mapping.local_event_id,
            mapping.provider,
            etag=etag,
            synced_at=synced_at,
        )
        logger.info(
            "Local event re-synced: local_event_id=%r provider_event_id=%r",
            mapping.local_event_id,
            mapping.provider_event_id,
        )
        return mapping.model_copy(
            update={"etag": etag or mapping.etag, "last_synced_at": synced_at}
        )

    async def _sync_new(
        self, event: LocalEvent, attendee_emails: list[str]
    ) -> ExternalEventMap | None:
        draft = EventDraft(
            title=event.title,
            description=event.description,
            start=event.start_at,
            end=event.end_at,
            attendee_emails=attendee_emails,
            wants_conferencing=event.wants_conferencing,
            recurrence=event.recurrence,
        )
        created = await self.create(event.organizer_id, draft)
        if created is None:
            return None

        mapping = ExternalEventMap(
            local_event_id=event.id,
            provider=self._provider.name,
            provider_event_id=created.provider_event_id,
            etag=created.etag,
            html_link=created.html_link,
            last_synced_at=self._clock(),
        )
        try:
            await self._mappings.create_mapping(mapping)
        except Exception:
            logger.exception(
                "Mapping write failed, removing provider event: local_event_id=%r "
                "provider_event_id=%r",
                event.id,
                created.provider_event_id,
            )
            await self.delete(event.organizer_id, created.provider_event_id)
            raise
        logger.info(
            "Local event synced: local_event_id=%r provider_event_id=%r",
            event.id,
            created.provider_event_id,
        )
        return mapping

    async def unsync_local_event(
        self, local_event_id: str, *, organizer_id: str | None = None
    ) -> bool:
        """Delete the provider copy of a local event and drop its mapping.

        A never-synced event is a no-op returning ``False``. ``organizer_id``
        is needed when the local event record is already gone. When the
        provider delete fails the mapping is kept so the call can be retried.
        """
        async with self._lock_for(local_event_id):
            mapping = await self._mappings.find_mapping(local_event_id, self._provider.name)
            if mapping is None:
                return False

            if organizer_id is None:
                event = await self._local_events.get_local_event(local_event_id)
                organizer_id = event.organizer_id if event is not None else None

            if organizer_id is None:
                logger.warning(
                    "Organizer unknown, dropping mapping without provider delete: "
                    "local_event_id=%r",
                    local_event_id,
                )
            elif not await self.delete(organizer_id, mapping.provider_event_id):
                return False

            await self._mappings.delete_mapping(local_event_id, self._provider.name)
            logger.info("Local event unsynced: local_event_id=%r", local_event_id)
            return True

    # -- inbound pull --------------------------------------------------------

    async def pull_provider_events(
        self,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        *,
        project_id: str | None = None,
    ) -> EventPullResult:
        """Create or update local events from the user's provider events in the window.

        A provider event already mapped to one of the user's local events
        updates that event; any other becomes a new local event owned by the
        user, with a mapping. Events that fail individually are logged and
        reported in ``failed`` without stopping the pull. Pulls for the same
        user are serialized.

        Raises
        ------
        CalendarNotConnectedError
            If the user has no usable calendar integration.
        ProviderError
            If the provider events cannot be listed.
        """
        if self._local_event_writer is None:
            raise RuntimeError("pull_provider_events needs a local event writer")
        writer = self._local_event_writer
        if window_end <= window_start:
            raise ValueError("window_end must be after window_start")

        async with self._lock_for(f"pull:{user_id}"):
            if not await self._tokens.refresh(user_id):
                self._metrics.record_event_operation("pull", "skipped")
                raise CalendarNotConnectedError(f"User {user_id!r} has no connected calendar")
            try:
                events = await self._with_access_token(
                    user_id,
                    lambda token: self._provider.list_events(token, window_start, window_end),
                )
            except _AccessTokenUnavailable as exc:
                self._metrics.record_event_operation("pull", "skipped")
                raise CalendarNotConnectedError(
                    f"User {user_id!r} has no connected calendar"
                ) from exc
            except ProviderError as exc:
                logger.warning("Event pull failed: user_id=%r error=%s", user_id, exc)
                self._metrics.record_event_operation("pull", "failure")
                raise

            result = EventPullResult()
            for event in events:
                try:
                    await self._reconcile(writer, user_id, event, project_id, result)
                except Exception:
                    logger.exception(
                        "Skipping provider event: user_id=%r provider_event_id=%r",
                        user_id,
                        event.provider_event_id,
                    )
                    result.failed.append(event.provider_event_id)

        self._metrics.record_event_operation("pull", "success")
        logger.info(
            "Provider events pulled: user_id=%r listed=%d created=%d updated=%d failed=%d",
            user_id,
            len(events),
            len(result.created),
            len(result.updated),
            len(result.failed),
        )
        return result

    async def _reconcile(
        self,
        writer: LocalEventWriter,
        user_id: str,
        event: ProviderEvent,
        project_id: str | None,
        result: EventPullResult,
    ) -> None:
        mapping = await self._mappings.find_mapping_by_provider_event(
            self._provider.name, event.provider_event_id, owner_id=user_id
        )
        if mapping is not None:
            async with self._lock_for(mapping.local_event_id):
                if not await writer.update_from_provider(mapping.local_event_id, user_id, event):
                    raise LocalEventNotFoundError(
                        f"Local event {mapping.local_event_id!r} does not exist"
                    )
                await self._mappings.touch_mapping(
                    mapping.local_event_id,
                    mapping.provider,
                    etag=event.etag,
                    synced_at=self._clock(),
                )
            result.updated.append(mapping.local_event_id)
            return

        local_event_id = await writer.create_from_provider(
            user_id, event, project_id=project_id
        )
        mapping = ExternalEventMap(
            local_event_id=local_event_id,
            provider=self._provider.name,
            provider_event_id=event.provider_event_id,
            etag=event.etag,
            html_link=event.html_link,
            last_synced_at=self._clock(),
        )
        try:
            await self._mappings.create_mapping(mapping)
        except Exception:
            await writer.discard_local_event(local_event_id)
            raise
        result.created.append(local_event_id)
