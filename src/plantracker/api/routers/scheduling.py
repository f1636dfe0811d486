"""Meeting suggestion, booking, calendar integration and event sync endpoints."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse, Response

from plantracker.api.models import ApiResponse
from plantracker.api.models.scheduling import (
    AuthorizationCallbackRequest,
    AuthorizationUrlResponse,
    BookingRequest,
    BookingResponse,
    DisconnectResponse,
    EventPullRequest,
    EventPullResponse,
    IntegrationStatusResponse,
    ProviderEventResponse,
    SuggestionRequest,
    SuggestionResponse,
    SyncResponse,
    UnsyncResponse,
)
from plantracker.scheduling.models import SlotChoice
from plantracker.scheduling.service import MeetingScheduler

router = APIRouter(prefix="/api/scheduling", tags=["scheduling"])
logger = logging.getLogger(__name__)


def _get_scheduler() -> MeetingScheduler:
    """Dependency stub, overridden at app startup or in tests."""
    raise RuntimeError("MeetingScheduler not initialized")


# ---------------------------------------------------------------------------
# Meetings
# ---------------------------------------------------------------------------


@router.post("/suggestions", response_model=ApiResponse[SuggestionResponse])
async def suggest_meeting_times(
    body: SuggestionRequest,
    scheduler: MeetingScheduler = Depends(_get_scheduler),
) -> ApiResponse[SuggestionResponse]:
    result = await scheduler.suggest_meeting_times(
        body.participant_ids,
        body.start_date,
        body.end_date,
        duration_minutes=body.duration_minutes,
        max_suggestions=body.max_suggestions,
    )
    return ApiResponse[SuggestionResponse](data=SuggestionResponse.from_result(result))


@router.post("/meetings", response_model=ApiResponse[BookingResponse], status_code=201)
async def book_meeting(
    body: BookingRequest,
    scheduler: MeetingScheduler = Depends(_get_scheduler),
) -> ApiResponse[BookingResponse]:
    result = await scheduler.book_meeting(
        body.organizer_id,
        body.attendee_ids,
        SlotChoice(start=body.start, end=body.end),
        body.title,
        description=body.description,
        recurrence=body.recurrence,
        wants_conferencing=body.wants_conferencing,
    )
    return ApiResponse[BookingResponse](
        data=BookingResponse(
            event_id=result.event_id,
            meet_link=result.meet_link,
            html_link=result.html_link,
        )
    )


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------


@router.get("/integrations/{user_id}", response_model=ApiResponse[IntegrationStatusResponse])
async def integration_status(
    user_id: str,
    scheduler: MeetingScheduler = Depends(_get_scheduler),
) -> ApiResponse[IntegrationStatusResponse]:
    status = await scheduler.tokens.integration_status(user_id)
    return ApiResponse[IntegrationStatusResponse](
        data=IntegrationStatusResponse(**status.model_dump())
    )


@router.get("/integrations/{user_id}/authorize")
async def authorize_start(
    user_id: str,
    redirect: bool = Query(
        default=False,
        description="If true, redirect to the provider consent page instead of returning JSON.",
    ),
    scheduler: MeetingScheduler = Depends(_get_scheduler),
) -> Response:
    authorization_url = scheduler.tokens.authorization_url(user_id)
    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)
    payload = ApiResponse[AuthorizationUrlResponse](
        data=AuthorizationUrlResponse(authorization_url=authorization_url)
    )
    return Response(content=payload.model_dump_json(), media_type="application/json")


@router.post(
    "/integrations/{user_id}/callback",
    response_model=ApiResponse[IntegrationStatusResponse],
)
async def authorize_callback(
    user_id: str,
    body: AuthorizationCallbackRequest,
    scheduler: MeetingScheduler = Depends(_get_scheduler),
) -> ApiResponse[IntegrationStatusResponse]:
    credential = await scheduler.tokens.authorize(user_id, body.code)
    return ApiResponse[IntegrationStatusResponse](
        data=IntegrationStatusResponse(
            is_connected=True,
            account_email=credential.account_email,
            last_sync_at=credential.updated_at,
        )
    )


@router.post("/integrations/{user_id}/disconnect", response_model=ApiResponse[DisconnectResponse])
async def disconnect(
    user_id: str,
    scheduler: MeetingScheduler = Depends(_get_scheduler),
) -> ApiResponse[DisconnectResponse]:
    await scheduler.disconnect(user_id)
    return ApiResponse[DisconnectResponse](data=DisconnectResponse(user_id=user_id))


# ---------------------------------------------------------------------------
# Local event sync
# ---------------------------------------------------------------------------


@router.post("/events/{local_event_id}/sync", response_model=ApiResponse[SyncResponse])
async def sync_local_event(
    local_event_id: str,
    scheduler: MeetingScheduler = Depends(_get_scheduler),
) -> ApiResponse[SyncResponse]:
    mapping = await scheduler.events.sync_local_event(local_event_id)
    return ApiResponse[SyncResponse](data=SyncResponse.from_mapping(local_event_id, mapping))


@router.delete("/events/{local_event_id}/sync", response_model=ApiResponse[UnsyncResponse])
async def unsync_local_event(
    local_event_id: str,
    organizer_id: str | None = Query(default=None),
    scheduler: MeetingScheduler = Depends(_get_scheduler),
) -> ApiResponse[UnsyncResponse]:
    removed = await scheduler.events.unsync_local_event(local_event_id, organizer_id=organizer_id)
    return ApiResponse[UnsyncResponse](
        data=UnsyncResponse(local_event_id=local_event_id, removed=removed)
    )


# ---------------------------------------------------------------------------
# Provider events
# ---------------------------------------------------------------------------


@router.get(
    "/integrations/{user_id}/events",
    response_model=ApiResponse[list[ProviderEventResponse]],
)
async def list_provider_events(
    user_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    scheduler: MeetingScheduler = Depends(_get_scheduler),
) -> ApiResponse[list[ProviderEventResponse]]:
    if end <= start:
        raise ValueError("end must be after start")
    events = await scheduler.events.list_provider_events(user_id, start, end)
    return ApiResponse[list[ProviderEventResponse]](
        data=[ProviderEventResponse.from_event(event) for event in events]
    )


@router.post(
    "/integrations/{user_id}/events/pull",
    response_model=ApiResponse[EventPullResponse],
)
async def pull_provider_events(
    user_id: str,
    body: EventPullRequest,
    scheduler: MeetingScheduler = Depends(_get_scheduler),
) -> ApiResponse[EventPullResponse]:
    result = await scheduler.events.pull_provider_events(
        user_id, body.start, body.end, project_id=body.project_id
    )
    return ApiResponse[EventPullResponse](data=EventPullResponse.from_result(user_id, result))
