"""Wiring of the scheduling engine for the HTTP application."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

import asyncpg
import httpx

from plantracker.config import PlanTrackerConfig
from plantracker.scheduling.events import EventMaterializer
from plantracker.scheduling.freebusy import FreeBusyAggregator
from plantracker.scheduling.provider import CalendarProvider, GoogleCalendarProvider
from plantracker.scheduling.service import MeetingScheduler
from plantracker.scheduling.stores import (
    PostgresCredentialStore,
    PostgresEventMapStore,
    PostgresLocalEventSource,
    PostgresLocalEventWriter,
    PostgresUserDirectory,
)
from plantracker.scheduling.tokens import TokenLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class SchedulingComponents:
    scheduler: MeetingScheduler
    provider: CalendarProvider

    async def shutdown(self) -> None:
        await self.provider.shutdown()


def build_provider(
    config: PlanTrackerConfig, *, http_client: httpx.AsyncClient | None = None
) -> CalendarProvider:
    google = config.google
    if not google.client_id or not google.client_secret:
        logger.warning("Google OAuth client is not configured; calendar calls will fail")
    return GoogleCalendarProvider(
        client_id=google.client_id,
        client_secret=google.client_secret,
        redirect_uri=google.redirect_uri,
        calendar_id=google.calendar_id,
        timezone=config.scheduling.timezone,
        http_client=http_client,
    )


def build_scheduler(
    config: PlanTrackerConfig,
    pool: asyncpg.Pool,
    *,
    provider: CalendarProvider | None = None,
) -> SchedulingComponents:
    """Assemble the scheduler with asyncpg-backed stores."""
    settings = config.scheduling
    provider = provider or build_provider(config)
    credentials = PostgresCredentialStore(pool)

    tokens = TokenLifecycleManager(
        credentials,
        provider,
        refresh_margin=timedelta(minutes=settings.refresh_margin_minutes),
        max_concurrency=settings.max_concurrency,
    )
    freebusy = FreeBusyAggregator(credentials, provider, max_concurrency=settings.max_concurrency)
    events = EventMaterializer(
        tokens,
        provider,
        PostgresEventMapStore(pool),
        users=PostgresUserDirectory(pool),
        local_events=PostgresLocalEventSource(pool),
        local_event_writer=PostgresLocalEventWriter(pool),
    )
    scheduler = MeetingScheduler(
        tokens,
        freebusy,
        events,
        timezone=settings.timezone,
        working_hours=(settings.working_hours_start, settings.working_hours_end),
        default_duration_minutes=settings.default_duration_minutes,
        default_max_suggestions=settings.default_max_suggestions,
        request_timeout=settings.request_timeout_seconds,
    )
    return SchedulingComponents(scheduler=scheduler, provider=provider)
