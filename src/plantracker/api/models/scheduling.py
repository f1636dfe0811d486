"""Request/response models for the scheduling endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from plantracker.scheduling.models import (
    EventPullResult,
    ExternalEventMap,
    MeetingSuggestions,
    ProviderEvent,
    Recurrence,
    ScoreLabel,
    TimeSlot,
)


class SuggestionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    participant_ids: list[str] = Field(min_length=1)
    start_date: date
    end_date: date
    duration_minutes: int | None = Field(default=None, ge=15, le=480)
    max_suggestions: int | None = Field(default=None, ge=1, le=10)


class SlotResponse(BaseModel):
    start: datetime
    end: datetime
    available_user_ids: list[str]
    unavailable_user_ids: list[str]
    score: int
    score_label: ScoreLabel

    @classmethod
    def from_slot(cls, slot: TimeSlot) -> SlotResponse:
        return cls(
            start=slot.start,
            end=slot.end,
            available_user_ids=list(slot.available_user_ids),
            unavailable_user_ids=list(slot.unavailable_user_ids),
            score=slot.score,
            score_label=slot.score_label,
        )


class CheckedRangeResponse(BaseModel):
    start: datetime
    end: datetime


class SuggestionResponse(BaseModel):
    suggestions: list[SlotResponse]
    total_participants: int
    participants_with_calendar: int
    checked_range: CheckedRangeResponse
    recommendations: list[str]

    @classmethod
    def from_result(cls, result: MeetingSuggestions) -> SuggestionResponse:
        return cls(
            suggestions=[SlotResponse.from_slot(slot) for slot in result.suggestions],
            total_participants=result.total_participants,
            participants_with_calendar=result.participants_with_calendar,
            checked_range=CheckedRangeResponse(
                start=result.checked_range.start, end=result.checked_range.end
            ),
            recommendations=result.recommendations,
        )


class BookingRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    organizer_id: str = Field(min_length=1)
    attendee_ids: list[str] = Field(default_factory=list)
    start: datetime
    end: datetime
    title: str = Field(min_length=1)
    description: str | None = None
    recurrence: Recurrence = Recurrence.NONE
    wants_conferencing: bool = True


class BookingResponse(BaseModel):
    event_id: str
    meet_link: str | None = None
    html_link: str | None = None


class IntegrationStatusResponse(BaseModel):
    is_connected: bool
    account_email: str | None = None
    last_sync_at: datetime | None = None


class AuthorizationUrlResponse(BaseModel):
    authorization_url: str


class AuthorizationCallbackRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str = Field(min_length=1)


class SyncResponse(BaseModel):
    local_event_id: str
    synced: bool
    provider_event_id: str | None = None
    html_link: str | None = None
    last_synced_at: datetime | None = None

    @classmethod
    def from_mapping(cls, local_event_id: str, mapping: ExternalEventMap | None) -> SyncResponse:
        if mapping is None:
            return cls(local_event_id=local_event_id, synced=False)
        return cls(
            local_event_id=local_event_id,
            synced=True,
            provider_event_id=mapping.provider_event_id,
            html_link=mapping.html_link,
            last_synced_at=mapping.last_synced_at,
        )


class UnsyncResponse(BaseModel):
    local_event_id: str
    removed: bool


class DisconnectResponse(BaseModel):
    user_id: str
    status: str = "REVOKED"


class ProviderEventResponse(BaseModel):
    provider_event_id: str
    title: str
    description: str | None = None
    location: str | None = None
    start: datetime
    end: datetime
    html_link: str | None = None

    @classmethod
    def from_event(cls, event: ProviderEvent) -> ProviderEventResponse:
        return cls(
            provider_event_id=event.provider_event_id,
            title=event.title,
            description=event.description,
            location=event.location,
            start=event.start,
            end=event.end,
            html_link=event.html_link,
        )


class EventPullRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: datetime
    end: datetime
    project_id: str | None = None


class EventPullResponse(BaseModel):
    user_id: str
    created: list[str]
    updated: list[str]
    failed: list[str]

    @classmethod
    def from_result(cls, user_id: str, result: EventPullResult) -> EventPullResponse:
        return cls(
            user_id=user_id,
            created=result.created,
            updated=result.updated,
            failed=result.failed,
        )
