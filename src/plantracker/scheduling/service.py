"""Meeting scheduler: the surface the rest of the application calls.

``suggest_meeting_times`` runs three phases strictly in sequence, each one
parallel across participants:

1. refresh every participant's credential,
2. fetch busy intervals for the participants whose refresh succeeded,
3. score and rank candidate slots.

The whole request runs under one deadline. When it expires, outstanding
provider calls are cancelled and nothing partial is returned.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, date, datetime

from plantracker.core.metrics import SchedulingMetrics
from plantracker.scheduling.errors import (
    NoAvailableParticipantsError,
    OrganizerCalendarUnavailableError,
    ProviderError,
    SchedulingTimeoutError,
)
from plantracker.scheduling.events import EventMaterializer
from plantracker.scheduling.freebusy import FreeBusyAggregator
from plantracker.scheduling.models import (
    BookingResult,
    CheckedRange,
    EventDraft,
    MeetingSuggestions,
    Recurrence,
    SlotChoice,
    TimeSlot,
)
from plantracker.scheduling.slots import (
    DEFAULT_DURATION_MINUTES,
    DEFAULT_MAX_SUGGESTIONS,
    DEFAULT_TIMEZONE,
    DEFAULT_WORKING_HOURS,
    SCORE_THRESHOLD,
    RankedSlots,
    local_date,
    rank_slots,
    resolve_timezone,
    search_window,
    validate_slot_request,
    validate_working_hours,
)
from plantracker.scheduling.tokens import Clock, TokenLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


def _plural(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


def build_recommendations(
    *,
    total_participants: int,
    participants_with_calendar: int,
    ranked: RankedSlots,
) -> list[str]:
    """Human-readable notes explaining why results may be degraded."""
    recommendations: list[str] = []

    without_calendar = total_participants - participants_with_calendar
    if without_calendar > 0:
        recommendations.append(
            f"{_plural(without_calendar, 'participant has', 'participants have')} "
            "no connected calendar; their availability is unknown."
        )

    unreachable = participants_with_calendar - len(ranked.considered_user_ids)
    if unreachable > 0:
        recommendations.append(
            f"{_plural(unreachable, 'calendar', 'calendars')} could not be reached "
            "and were left out of scoring."
        )

    if ranked.threshold_relaxed:
        recommendations.append(
            f"No time slot suits at least {SCORE_THRESHOLD}% of participants; "
            "showing the best options available. Consider a wider date range "
            "or a shorter meeting."
        )
    elif ranked.slots and ranked.slots[0].score < 100:
        recommendations.append(
            "No time slot suits everyone; consider a wider date range or a shorter meeting."
        )
    return recommendations


class MeetingScheduler:
    """Suggest meeting times and book the chosen slot."""

    def __init__(
        self,
        tokens: TokenLifecycleManager,
        freebusy: FreeBusyAggregator,
        events: EventMaterializer,
        *,
        timezone: str = DEFAULT_TIMEZONE,
        working_hours: tuple[int, int] = DEFAULT_WORKING_HOURS,
        default_duration_minutes: int = DEFAULT_DURATION_MINUTES,
        default_max_suggestions: int = DEFAULT_MAX_SUGGESTIONS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        clock: Clock | None = None,
        metrics: SchedulingMetrics | None = None,
    ) -> None:
        validate_working_hours(working_hours)
        self.tokens = tokens
        self.freebusy = freebusy
        self.events = events
        self._timezone = timezone
        self._tz = resolve_timezone(timezone)
        self._working_hours = working_hours
        self._default_duration_minutes = default_duration_minutes
        self._default_max_suggestions = default_max_suggestions
        self._request_timeout = request_timeout
        self._clock = clock or (lambda: datetime.now(UTC))
        self._metrics = metrics or SchedulingMetrics(tokens.provider_name)

    async def suggest_meeting_times(
        self,
        participant_ids: Sequence[str],
        start_date: date | datetime,
        end_date: date | datetime,
        duration_minutes: int | None = None,
        max_suggestions: int | None = None,
    ) -> MeetingSuggestions:
        """Return ranked meeting slots for ``participant_ids``.

        Raises
        ------
        ValueError
            If the request is malformed.
        NoAvailableParticipantsError
            If no participant has a usable calendar.
        NoCandidateSlotsError
            If the range contains no schedulable slot.
        SchedulingTimeoutError
            If the request exceeds its deadline.
        """
        distinct_ids = [user_id for user_id in dict.fromkeys(participant_ids) if user_id]
        if not distinct_ids:
            raise ValueError("participant_ids must contain at least one user id")

        duration = (
            duration_minutes if duration_minutes is not None else self._default_duration_minutes
        )
        limit = max_suggestions if max_suggestions is not None else self._default_max_suggestions
        validate_slot_request(duration, limit)

        first_day = local_date(start_date, self._tz)
        last_day = local_date(end_date, self._tz)
        if last_day < first_day:
            raise ValueError("end_date must not be before start_date")

        outcome = "error"
        with self._metrics.track_suggestion(lambda: outcome):
            try:
                async with asyncio.timeout(self._request_timeout):
                    suggestions = await self._suggest(
                        distinct_ids, first_day, last_day, duration, limit
                    )
            except TimeoutError as exc:
                outcome = "timeout"
                logger.warning(
                    "Meeting suggestion timed out after %.1fs for %d participant(s)",
                    self._request_timeout,
                    len(distinct_ids),
                )
                raise SchedulingTimeoutError("Scheduling request timed out") from exc
            outcome = "success"
        return suggestions

    async def _suggest(
        self,
        participant_ids: list[str],
        first_day: date,
        last_day: date,
        duration_minutes: int,
        max_suggestions: int,
    ) -> MeetingSuggestions:
        refreshed = await self.tokens.refresh_many(participant_ids)
        connected = [user_id for user_id in participant_ids if refreshed.get(user_id)]
        if not connected:
            raise NoAvailableParticipantsError(
                "None of the participants has a connected calendar"
            )

        window_start, window_end = search_window(
            first_day, last_day, working_hours=self._working_hours, tz=self._tz
        )
        busy_map = await self.freebusy.get_busy(connected, window_start, window_end)
        ranked = rank_slots(
            busy_map,
            connected,
            first_day,
            last_day,
            now=self._clock(),
            duration_minutes=duration_minutes,
            max_suggestions=max_suggestions,
            working_hours=self._working_hours,
            timezone=self._timezone,
        )

        logger.info(
            "Meeting suggestions ready: participants=%d connected=%d considered=%d "
            "candidates=%d returned=%d",
            len(participant_ids),
            len(connected),
            len(ranked.considered_user_ids),
            ranked.candidate_count,
            len(ranked.slots),
        )
        return MeetingSuggestions(
            suggestions=ranked.slots,
            total_participants=len(participant_ids),
            participants_with_calendar=len(connected),
            checked_range=CheckedRange(start=window_start, end=window_end),
            recommendations=build_recommendations(
                total_participants=len(participant_ids),
                participants_with_calendar=len(connected),
                ranked=ranked,
            ),
        )

    async def book_meeting(
        self,
        organizer_id: str,
        attendee_ids: Sequence[str],
        chosen_slot: TimeSlot | SlotChoice,
        title: str,
        description: str | None = None,
        recurrence: Recurrence = Recurrence.NONE,
        wants_conferencing: bool = True,
    ) -> BookingResult:
        """Create the provider event for a previously suggested slot.

        Raises
        ------
        OrganizerCalendarUnavailableError
            If the organizer has no usable calendar integration.
        ProviderError
            If the provider fails to create the event.
        """
        try:
            async with asyncio.timeout(self._request_timeout):
                return await self._book(
                    organizer_id,
                    attendee_ids,
                    chosen_slot,
                    title,
                    description,
                    recurrence,
                    wants_conferencing,
                )
        except TimeoutError as exc:
            raise SchedulingTimeoutError("Booking request timed out") from exc

    async def _book(
        self,
        organizer_id: str,
        attendee_ids: Sequence[str],
        chosen_slot: TimeSlot | SlotChoice,
        title: str,
        description: str | None,
        recurrence: Recurrence,
        wants_conferencing: bool,
    ) -> BookingResult:
        if not await self.tokens.refresh(organizer_id):
            raise OrganizerCalendarUnavailableError(
                "The organizer has no connected calendar; connect one before booking"
            )

        attendee_emails = await self.events.resolve_attendee_emails(
            [organizer_id, *attendee_ids]
        )
        draft = EventDraft(
            title=title,
            description=description,
            start=chosen_slot.start,
            end=chosen_slot.end,
            attendee_emails=attendee_emails,
            wants_conferencing=wants_conferencing,
            recurrence=recurrence,
        )
        created = await self.events.create(organizer_id, draft)
        if created is None:
            raise ProviderError("Calendar provider did not create the event")

        return BookingResult(
            event_id=created.provider_event_id,
            meet_link=created.meet_link,
            html_link=created.html_link,
        )

    async def disconnect(self, user_id: str) -> None:
        await self.tokens.disconnect(user_id)
