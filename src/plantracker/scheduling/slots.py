"""Candidate slot generation, scoring and ranking.

Slots start every 30 minutes from the working-hour start and must end no
later than the working-hour end, on weekdays only, in the reference time
zone. Each participant that could be reached is either available or not for
a slot; participants whose calendar was unreachable are left out of the score
denominator.

A slot is kept when at least half of the considered participants can attend.
When no slot reaches that bar the cutoff is dropped and every candidate is
ranked, so callers never get an empty list while candidates exist.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from plantracker.scheduling.errors import NoAvailableParticipantsError, NoCandidateSlotsError
from plantracker.scheduling.models import FreeBusy, TimeSlot

logger = logging.getLogger(__name__)

SLOT_GRANULARITY = timedelta(minutes=30)
MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 480
MIN_SUGGESTIONS = 1
MAX_SUGGESTIONS = 10
SCORE_THRESHOLD = 50
DEFAULT_DURATION_MINUTES = 60
DEFAULT_MAX_SUGGESTIONS = 5
DEFAULT_WORKING_HOURS = (9, 18)
DEFAULT_TIMEZONE = "Asia/Ho_Chi_Minh"

_WEEKEND = {5, 6}


@dataclass(frozen=True)
class RankedSlots:
    """Ranking outcome plus the facts needed to explain degraded results."""

    slots: list[TimeSlot]
    candidate_count: int
    considered_user_ids: tuple[str, ...]
    threshold_relaxed: bool


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone: {name!r}") from exc


def validate_working_hours(working_hours: tuple[int, int]) -> None:
    start_hour, end_hour = working_hours
    if not 0 <= start_hour < end_hour <= 24:
        raise ValueError("working hours must satisfy 0 <= start < end <= 24")


def validate_slot_request(duration_minutes: int, max_suggestions: int) -> None:
    if not MIN_DURATION_MINUTES <= duration_minutes <= MAX_DURATION_MINUTES:
        raise ValueError(
            f"duration_minutes must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES}"
        )
    if not MIN_SUGGESTIONS <= max_suggestions <= MAX_SUGGESTIONS:
        raise ValueError(
            f"max_suggestions must be between {MIN_SUGGESTIONS} and {MAX_SUGGESTIONS}"
        )


def local_date(value: date | datetime, tz: ZoneInfo) -> date:
    """Return the calendar date of ``value`` in ``tz``; naive datetimes are taken as local."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(tz).date()
    return value


def _working_bounds(day: date, working_hours: tuple[int, int], tz: ZoneInfo) -> tuple[datetime, datetime]:
    midnight = datetime.combine(day, time.min, tzinfo=tz)
    return (
        midnight + timedelta(hours=working_hours[0]),
        midnight + timedelta(hours=working_hours[1]),
    )


def search_window(
    start_date: date,
    end_date: date,
    *,
    working_hours: tuple[int, int] = DEFAULT_WORKING_HOURS,
    tz: ZoneInfo,
) -> tuple[datetime, datetime]:
    """Return the span from the first day's opening to the last day's closing."""
    window_start, _ = _working_bounds(start_date, working_hours, tz)
    _, window_end = _working_bounds(end_date, working_hours, tz)
    return window_start, window_end


def iter_candidate_slots(
    start_date: date,
    end_date: date,
    *,
    duration: timedelta,
    working_hours: tuple[int, int] = DEFAULT_WORKING_HOURS,
    tz: ZoneInfo,
) -> Iterator[tuple[datetime, datetime]]:
    """Yield ``(start, end)`` pairs for every weekday slot that fits working hours."""
    day = start_date
    while day <= end_date:
        if day.weekday() not in _WEEKEND:
            opening, closing = _working_bounds(day, working_hours, tz)
            slot_start = opening
            while slot_start + duration <= closing:
                yield slot_start, slot_start + duration
                slot_start += SLOT_GRANULARITY
        day += timedelta(days=1)


def availability_score(available: int, considered: int) -> int:
    """``round(100 * available / considered)`` with halves rounded up."""
    if considered <= 0:
        raise ValueError("considered must be positive")
    return (200 * available + considered) // (2 * considered)


def considered_participants(
    participant_ids: Sequence[str], busy_map: Mapping[str, FreeBusy]
) -> list[str]:
    """Participants whose free/busy data is usable, in request order."""
    considered: list[str] = []
    for user_id in dict.fromkeys(participant_ids):
        entry = busy_map.get(user_id)
        if entry is not None and entry.available:
            considered.append(user_id)
    return considered


def score_slot(
    slot_start: datetime,
    slot_end: datetime,
    considered_ids: Sequence[str],
    busy_map: Mapping[str, FreeBusy],
) -> TimeSlot:
    available: list[str] = []
    unavailable: list[str] = []
    for user_id in considered_ids:
        busy = busy_map[user_id].busy
        if any(interval.overlaps(slot_start, slot_end) for interval in busy):
            unavailable.append(user_id)
        else:
            available.append(user_id)
    return TimeSlot(
        start=slot_start,
        end=slot_end,
        available_user_ids=tuple(available),
        unavailable_user_ids=tuple(unavailable),
        score=availability_score(len(available), len(considered_ids)),
    )


def rank_slots(
    busy_map: Mapping[str, FreeBusy],
    participant_ids: Sequence[str],
    start_date: date | datetime,
    end_date: date | datetime,
    *,
    now: datetime,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
    max_suggestions: int = DEFAULT_MAX_SUGGESTIONS,
    working_hours: tuple[int, int] = DEFAULT_WORKING_HOURS,
    timezone: str = DEFAULT_TIMEZONE,
) -> RankedSlots:
    """Enumerate, score and rank candidate slots.

    Raises
    ------
    ValueError
        If the inputs are out of bounds.
    NoAvailableParticipantsError
        If no participant has usable free/busy data.
    NoCandidateSlotsError
        If the range holds no schedulable slot at all.
    """
    validate_slot_request(duration_minutes, max_suggestions)
    validate_working_hours(working_hours)
    tz = resolve_timezone(timezone)
    first_day = local_date(start_date, tz)
    last_day = local_date(end_date, tz)
    if last_day < first_day:
        raise ValueError("end_date must not be before start_date")

    considered = considered_participants(participant_ids, busy_map)
    if not considered:
        raise NoAvailableParticipantsError("No participant has a reachable calendar")

    scored = [
        score_slot(slot_start, slot_end, considered, busy_map)
        for slot_start, slot_end in iter_candidate_slots(
            first_day,
            last_day,
            duration=timedelta(minutes=duration_minutes),
            working_hours=working_hours,
            tz=tz,
        )
        if slot_start >= now
    ]
    if not scored:
        raise NoCandidateSlotsError("No schedulable slot exists in the requested range")

    qualifying = [slot for slot in scored if slot.score >= SCORE_THRESHOLD]
    relaxed = not qualifying
    if relaxed:
        logger.info(
            "No slot reached the %d%% threshold; ranking all %d candidates",
            SCORE_THRESHOLD,
            len(scored),
        )
        qualifying = scored

    qualifying.sort(key=lambda slot: (-slot.score, slot.start))
    return RankedSlots(
        slots=qualifying[:max_suggestions],
        candidate_count=len(scored),
        considered_user_ids=tuple(considered),
        threshold_relaxed=relaxed,
    )
