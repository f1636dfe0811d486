"""Typed values exchanged between the scheduling components."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_PROVIDER = "google_calendar"


class CredentialStatus(StrEnum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class Recurrence(StrEnum):
    """Recurrence choices offered to users, mapped to RFC 5545 rules."""

    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"

    @classmethod
    def _missing_(cls, value: object) -> Recurrence | None:
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    def to_rrule(self) -> str | None:
        return _RRULES.get(self)


_RRULES: dict[Recurrence, str] = {
    Recurrence.DAILY: "RRULE:FREQ=DAILY",
    Recurrence.WEEKLY: "RRULE:FREQ=WEEKLY",
    Recurrence.BIWEEKLY: "RRULE:FREQ=WEEKLY;INTERVAL=2",
    Recurrence.MONTHLY: "RRULE:FREQ=MONTHLY",
}

ScoreLabel = Literal["Excellent", "Good", "Fair", "Poor"]


def _ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    """Stored OAuth token pair for one user's calendar integration."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    provider: str = DEFAULT_PROVIDER
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    status: CredentialStatus = CredentialStatus.ACTIVE
    account_email: str | None = None
    updated_at: datetime | None = None

    @field_validator("expires_at", "updated_at")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return None if value is None else _ensure_aware(value)

    @field_validator("refresh_token")
    @classmethod
    def _normalize_refresh_token(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @property
    def can_refresh(self) -> bool:
        return self.status is CredentialStatus.ACTIVE and self.refresh_token is not None

    def __repr__(self) -> str:
        return (
            f"Credential("
            f"user_id={self.user_id!r}, "
            f"provider={self.provider!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r}, "
            f"status={self.status.value!r})"
        )

    __str__ = __repr__


class TokenGrant(BaseModel):
    """Result of a successful token endpoint exchange."""

    access_token: str = Field(min_length=1)
    expires_at: datetime
    refresh_token: str | None = None
    scope: str | None = None

    def __repr__(self) -> str:
        return f"TokenGrant(access_token=<REDACTED>, expires_at={self.expires_at!r})"

    __str__ = __repr__


class IntegrationStatus(BaseModel):
    is_connected: bool
    account_email: str | None = None
    last_sync_at: datetime | None = None


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


class BusyInterval(BaseModel):
    """Half-open ``[start, end)`` range during which a user is busy."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize_boundary(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


class FreeBusy(BaseModel):
    busy: list[BusyInterval] = Field(default_factory=list)
    available: bool = True


class TimeSlot(BaseModel):
    """Candidate meeting slot with its availability score."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    available_user_ids: tuple[str, ...] = ()
    unavailable_user_ids: tuple[str, ...] = ()
    score: int = Field(ge=0, le=100)

    @property
    def score_label(self) -> ScoreLabel:
        return score_label(self.score)


def score_label(score: int) -> ScoreLabel:
    if score >= 90:
        return "Excellent"
    if score >= 70:
        return "Good"
    if score >= 50:
        return "Fair"
    return "Poor"


class CheckedRange(BaseModel):
    start: datetime
    end: datetime


class SlotChoice(BaseModel):
    """A slot re-submitted by the caller for booking."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize_boundary(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    @model_validator(mode="after")
    def _validate_range(self) -> SlotChoice:
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class MeetingSuggestions(BaseModel):
    suggestions: list[TimeSlot]
    total_participants: int
    participants_with_calendar: int
    checked_range: CheckedRange
    recommendations: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class EventDraft(BaseModel):
    """Fields needed to create a provider-side event."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    description: str | None = None
    start: datetime
    end: datetime
    attendee_emails: list[str] = Field(default_factory=list)
    wants_conferencing: bool = False
    recurrence: Recurrence = Recurrence.NONE

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("start", "end")
    @classmethod
    def _normalize_boundary(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    @model_validator(mode="after")
    def _validate_range(self) -> EventDraft:
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class EventPatch(BaseModel):
    """Partial event update; unset fields are left untouched at the provider."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    description: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    attendee_emails: list[str] | None = None
    recurrence: Recurrence | None = None

    @model_validator(mode="after")
    def _validate_range(self) -> EventPatch:
        if self.start is not None and self.end is not None and self.end <= self.start:
            raise ValueError("end must be after start")
        return self

    def is_empty(self) -> bool:
        return not self.model_fields_set


class MaterializedEvent(BaseModel):
    provider_event_id: str
    meet_link: str | None = None
    html_link: str | None = None
    etag: str | None = None


class ExternalEventMap(BaseModel):
    """Durable link between a local event and its provider-side copy."""

    local_event_id: str
    provider: str = DEFAULT_PROVIDER
    provider_event_id: str
    etag: str | None = None
    html_link: str | None = None
    last_synced_at: datetime

    @field_validator("last_synced_at")
    @classmethod
    def _normalize_synced(cls, value: datetime) -> datetime:
        return _ensure_aware(value)


class LocalEvent(BaseModel):
    """Read-only view of an application event record."""

    id: str
    organizer_id: str
    title: str
    description: str | None = None
    start_at: datetime
    end_at: datetime
    attendee_ids: list[str] = Field(default_factory=list)
    recurrence: Recurrence = Recurrence.NONE
    wants_conferencing: bool = False


class ProviderEvent(BaseModel):
    """An event as read back from the provider calendar."""

    provider_event_id: str
    title: str
    description: str | None = None
    location: str | None = None
    start: datetime
    end: datetime
    etag: str | None = None
    html_link: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_bounds(cls, value: datetime) -> datetime:
        return _ensure_aware(value)


class EventPullResult(BaseModel):
    """Outcome of reconciling provider events into local events.

    ``created`` and ``updated`` hold local event ids; ``failed`` holds the
    provider event ids that could not be reconciled.
    """

    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class BookingResult(BaseModel):
    event_id: str
    meet_link: str | None = None
    html_link: str | None = None
