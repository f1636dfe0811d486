"""Calendar provider abstraction and the Google Calendar implementation.

The provider is stateless with respect to users: every call receives the
access token to use. Token caching, refresh decisions and persistence belong
to :mod:`plantracker.scheduling.tokens`.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo

import httpx

from plantracker.core.metrics import SchedulingMetrics
from plantracker.scheduling.errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRequestError,
    sanitize_error_message,
)
from plantracker.scheduling.models import (
    DEFAULT_PROVIDER,
    BusyInterval,
    EventDraft,
    EventPatch,
    MaterializedEvent,
    ProviderEvent,
    Recurrence,
    TokenGrant,
)

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_TOKEN_TTL_SECONDS = 3600
LIST_EVENTS_PAGE_SIZE = 250
LIST_EVENTS_MAX_PAGES = 20


class CalendarProvider(abc.ABC):
    """Provider abstraction used by the scheduling engine."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier stored alongside credentials and mappings."""
        ...

    @abc.abstractmethod
    def authorization_url(self, *, state: str | None = None) -> str:
        """Return the consent URL a user visits to connect their calendar."""
        ...

    @abc.abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for tokens.

        Raises ``ProviderAuthError`` when the exchange fails.
        """
        ...

    @abc.abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Perform one refresh handshake. Never retried.

        Raises ``ProviderAuthError``; ``retryable`` tells a rejection apart
        from a transient failure.
        """
        ...

    @abc.abstractmethod
    async def fetch_account_email(self, access_token: str) -> str | None:
        """Return the email of the account that owns ``access_token``."""
        ...

    @abc.abstractmethod
    async def query_busy(
        self,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[BusyInterval]:
        """Return the busy intervals of the token owner's calendar in the window."""
        ...

    @abc.abstractmethod
    async def list_events(
        self,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ProviderEvent]:
        """Return the non-cancelled events of the token owner's calendar in the window.

        Recurring events are expanded into single instances.
        """
        ...

    @abc.abstractmethod
    async def create_event(self, access_token: str, draft: EventDraft) -> MaterializedEvent:
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        access_token: str,
        provider_event_id: str,
        patch: EventPatch,
    ) -> str | None:
        """Apply ``patch`` and return the new etag, if the provider reports one."""
        ...

    @abc.abstractmethod
    async def delete_event(self, access_token: str, provider_event_id: str) -> None:
        """Delete an event. An already-absent event is not an error."""
        ...

    async def shutdown(self) -> None:
        """Release any network resources held by the provider."""


# ---------------------------------------------------------------------------
# Google helpers
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_TTL_SECONDS
    return DEFAULT_TOKEN_TTL_SECONDS


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return sanitize_error_message(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return sanitize_error_message(f"{error_payload}: {description}")
            return sanitize_error_message(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return sanitize_error_message(raw_text)
    return "Request failed without an error payload"


def _oauth_error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return None


def _zoned_boundary(value: datetime, timezone: str) -> dict[str, str]:
    localized = value.astimezone(ZoneInfo(timezone))
    return {"dateTime": localized.isoformat(), "timeZone": timezone}


def _extract_meet_link(payload: dict[str, Any]) -> str | None:
    conference = payload.get("conferenceData")
    if isinstance(conference, dict):
        for entry_point in conference.get("entryPoints") or []:
            if (
                isinstance(entry_point, dict)
                and entry_point.get("entryPointType") == "video"
                and isinstance(entry_point.get("uri"), str)
            ):
                return entry_point["uri"]
    hangout_link = payload.get("hangoutLink")
    return hangout_link if isinstance(hangout_link, str) else None


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_google_event_boundary(payload: Any, *, fallback_timezone: str) -> datetime:
    """Parse an event ``start``/``end`` object; all-day dates become local midnight."""
    if not isinstance(payload, dict):
        raise ValueError("Google Calendar event is missing a start/end object")

    date_time = _optional_text(payload.get("dateTime"))
    if date_time is not None:
        return _parse_google_datetime(date_time)

    date_value = _optional_text(payload.get("date"))
    if date_value is None:
        raise ValueError("Google Calendar event is missing start/end dateTime or date values")
    try:
        parsed_date = date.fromisoformat(date_value)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid date value: {date_value}") from exc

    timezone = _optional_text(payload.get("timeZone")) or fallback_timezone
    try:
        tzinfo = ZoneInfo(timezone)
    except (ValueError, KeyError):
        tzinfo = ZoneInfo(fallback_timezone)
    return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=tzinfo)


def _google_event_to_provider_event(
    payload: dict[str, Any], *, fallback_timezone: str
) -> ProviderEvent | None:
    """Convert one ``events.list`` item; ``None`` for cancelled instances."""
    status = payload.get("status")
    if isinstance(status, str) and status.lower() == "cancelled":
        return None

    event_id = _optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    return ProviderEvent(
        provider_event_id=event_id,
        title=_optional_text(payload.get("summary")) or "Untitled Event",
        description=_optional_text(payload.get("description")),
        location=_optional_text(payload.get("location")),
        start=_parse_google_event_boundary(
            payload.get("start"), fallback_timezone=fallback_timezone
        ),
        end=_parse_google_event_boundary(payload.get("end"), fallback_timezone=fallback_timezone),
        etag=_optional_text(payload.get("etag")),
        html_link=_optional_text(payload.get("htmlLink")),
    )


def build_google_event_body(draft: EventDraft, *, timezone: str) -> dict[str, Any]:
    """Translate an :class:`EventDraft` into a Google Calendar event body."""
    body: dict[str, Any] = {
        "summary": draft.title,
        "start": _zoned_boundary(draft.start, timezone),
        "end": _zoned_boundary(draft.end, timezone),
        "attendees": [
            {"email": email, "responseStatus": "needsAction"}
            for email in dict.fromkeys(draft.attendee_emails)
        ],
        "reminders": {"useDefault": True},
        "guestsCanModify": False,
        "guestsCanInviteOthers": False,
        "guestsCanSeeOtherGuests": True,
    }
    if draft.description is not None:
        body["description"] = draft.description

    rrule = draft.recurrence.to_rrule()
    if rrule is not None:
        body["recurrence"] = [rrule]

    if draft.wants_conferencing:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": uuid.uuid4().hex,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


def build_google_event_patch_body(patch: EventPatch, *, timezone: str) -> dict[str, Any]:
    """Translate an :class:`EventPatch` into a PATCH body with only the provided fields."""
    body: dict[str, Any] = {}
    provided = patch.model_fields_set

    if "title" in provided and patch.title is not None:
        body["summary"] = patch.title
    if "description" in provided:
        body["description"] = patch.description
    if "start" in provided and patch.start is not None:
        body["start"] = _zoned_boundary(patch.start, timezone)
    if "end" in provided and patch.end is not None:
        body["end"] = _zoned_boundary(patch.end, timezone)
    if "attendee_emails" in provided and patch.attendee_emails is not None:
        body["attendees"] = [
            {"email": email, "responseStatus": "needsAction"}
            for email in dict.fromkeys(patch.attendee_emails)
        ]
    if "recurrence" in provided:
        recurrence = patch.recurrence or Recurrence.NONE
        rrule = recurrence.to_rrule()
        body["recurrence"] = [rrule] if rrule is not None else []
    return body


# ---------------------------------------------------------------------------
# Google provider
# ---------------------------------------------------------------------------


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar over its REST API, with 429/503 backoff on API calls."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        calendar_id: str = "primary",
        timezone: str = "Asia/Ho_Chi_Minh",
        http_client: httpx.AsyncClient | None = None,
        base_backoff_seconds: float = RATE_LIMIT_BASE_BACKOFF_SECONDS,
        metrics: SchedulingMetrics | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._calendar_id = calendar_id
        self._timezone = timezone
        self._base_backoff_seconds = base_backoff_seconds
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._metrics = metrics or SchedulingMetrics(DEFAULT_PROVIDER)

    @property
    def name(self) -> str:
        return DEFAULT_PROVIDER

    # -- OAuth ---------------------------------------------------------------

    def authorization_url(self, *, state: str | None = None) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        return await self._token_request(
            {
                "code": code,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
                "grant_type": "authorization_code",
            }
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        return await self._token_request(
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )

    async def _token_request(self, data: dict[str, str]) -> TokenGrant:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ProviderAuthError(
                f"Google OAuth token request failed: {sanitize_error_message(str(exc))}",
                retryable=True,
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderAuthError(
                "Google OAuth token request failed "
                f"({response.status_code}): {_safe_google_error_message(response)}",
                status_code=response.status_code,
                error_code=_oauth_error_code(response),
                retryable=response.status_code >= 500,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderAuthError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise ProviderAuthError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        return TokenGrant(
            access_token=access_token.strip(),
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in_seconds),
            refresh_token=refresh_token if isinstance(refresh_token, str) else None,
            scope=scope if isinstance(scope, str) else None,
        )

    async def fetch_account_email(self, access_token: str) -> str | None:
        payload = await self._request_google_json(
            access_token,
            "GET",
            f"/calendars/{quote(self._calendar_id, safe='')}",
        )
        account_id = payload.get("id")
        return account_id if isinstance(account_id, str) and "@" in account_id else None

    # -- Calendar API --------------------------------------------------------

    async def query_busy(
        self,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[BusyInterval]:
        if window_end <= window_start:
            raise ValueError("window_end must be after window_start")

        payload = await self._request_google_json(
            access_token,
            "POST",
            "/freeBusy",
            json_body={
                "timeMin": _google_rfc3339(window_start),
                "timeMax": _google_rfc3339(window_end),
                "timeZone": self._timezone,
                "items": [{"id": self._calendar_id}],
            },
        )
        calendars_payload = payload.get("calendars")
        if not isinstance(calendars_payload, dict):
            raise ProviderError("Google Calendar freeBusy response missing calendars object")

        calendar_payload = calendars_payload.get(self._calendar_id)
        if not isinstance(calendar_payload, dict) and len(calendars_payload) == 1:
            calendar_payload = next(iter(calendars_payload.values()))
        if not isinstance(calendar_payload, dict):
            raise ProviderError(
                "Google Calendar freeBusy response missing calendar entry for requested id"
            )

        errors = calendar_payload.get("errors")
        if isinstance(errors, list) and errors:
            reasons = ", ".join(
                str(error.get("reason", "unknown")) for error in errors if isinstance(error, dict)
            )
            raise ProviderRequestError(
                status_code=200,
                message=sanitize_error_message(f"freeBusy calendar errors: {reasons}"),
            )

        busy_payload = calendar_payload.get("busy", [])
        if not isinstance(busy_payload, list):
            raise ProviderError("Google Calendar freeBusy response busy field is not an array")

        intervals: list[BusyInterval] = []
        for window in busy_payload:
            if not isinstance(window, dict):
                continue
            start_raw = window.get("start")
            end_raw = window.get("end")
            if not isinstance(start_raw, str) or not isinstance(end_raw, str):
                raise ProviderError("Google Calendar freeBusy busy windows must include start/end")
            start_at = _parse_google_datetime(start_raw)
            end_at = _parse_google_datetime(end_raw)
            if end_at <= start_at:
                continue
            intervals.append(BusyInterval(start=start_at, end=end_at))
        return intervals

    async def list_events(
        self,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ProviderEvent]:
        if window_end <= window_start:
            raise ValueError("window_end must be after window_start")

        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": LIST_EVENTS_PAGE_SIZE,
            "timeMin": _google_rfc3339(window_start),
            "timeMax": _google_rfc3339(window_end),
        }
        path = f"/calendars/{quote(self._calendar_id, safe='')}/events"

        events: list[ProviderEvent] = []
        for _ in range(LIST_EVENTS_MAX_PAGES):
            payload = await self._request_google_json(access_token, "GET", path, params=params)
            items = payload.get("items")
            if not isinstance(items, list):
                raise ProviderError("Google Calendar list_events response missing items array")

            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    event = _google_event_to_provider_event(
                        item, fallback_timezone=self._timezone
                    )
                except ValueError as exc:
                    logger.warning("Skipping unreadable calendar event: %s", exc)
                    continue
                if event is not None:
                    events.append(event)

            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                break
            params = {**params, "pageToken": page_token}
        else:
            logger.warning(
                "list_events stopped after %d pages; remaining events were not read",
                LIST_EVENTS_MAX_PAGES,
            )
        return events

    async def create_event(self, access_token: str, draft: EventDraft) -> MaterializedEvent:
        params: dict[str, Any] = {"sendUpdates": "all"}
        if draft.wants_conferencing:
            params["conferenceDataVersion"] = 1

        payload = await self._request_google_json(
            access_token,
            "POST",
            f"/calendars/{quote(self._calendar_id, safe='')}/events",
            params=params,
            json_body=build_google_event_body(draft, timezone=self._timezone),
        )
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise ProviderError("Google Calendar create response is missing an event id")

        html_link = payload.get("htmlLink")
        etag = payload.get("etag")
        return MaterializedEvent(
            provider_event_id=event_id,
            meet_link=_extract_meet_link(payload) if draft.wants_conferencing else None,
            html_link=html_link if isinstance(html_link, str) else None,
            etag=etag if isinstance(etag, str) else None,
        )

    async def update_event(
        self,
        access_token: str,
        provider_event_id: str,
        patch: EventPatch,
    ) -> str | None:
        normalized_event_id = provider_event_id.strip()
        if not normalized_event_id:
            raise ValueError("provider_event_id must be a non-empty string")

        payload = await self._request_google_json(
            access_token,
            "PATCH",
            f"/calendars/{quote(self._calendar_id, safe='')}/events/"
            f"{quote(normalized_event_id, safe='')}",
            params={"sendUpdates": "all"},
            json_body=build_google_event_patch_body(patch, timezone=self._timezone),
        )
        etag = payload.get("etag")
        return etag if isinstance(etag, str) else None

    async def delete_event(self, access_token: str, provider_event_id: str) -> None:
        normalized_event_id = provider_event_id.strip()
        if not normalized_event_id:
            raise ValueError("provider_event_id must be a non-empty string")

        response = await self._request_with_retry(
            access_token,
            "DELETE",
            f"/calendars/{quote(self._calendar_id, safe='')}/events/"
            f"{quote(normalized_event_id, safe='')}",
            params={"sendUpdates": "all"},
        )
        # 404/410 means the event is already gone.
        if response.status_code in (404, 410):
            logger.debug(
                "delete_event: event %r not found (already deleted); treating as success",
                normalized_event_id,
            )
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # -- transport -----------------------------------------------------------

    async def _request_google_json(
        self,
        access_token: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_retry(
            access_token,
            method,
            path,
            params=params,
            json_body=json_body,
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise ProviderError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_retry(
        self,
        access_token: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(access_token, method, url, params, json_body)

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = self._base_backoff_seconds * (2**retry)
            retry_after_header = response.headers.get("Retry-After")
            if retry_after_header is not None:
                try:
                    backoff = max(float(retry_after_header), 0.0)
                except ValueError:
                    pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(access_token, method, url, params, json_body)
            retry += 1

        return response

    async def _request_once(
        self,
        access_token: str,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            response = await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            self._metrics.record_api_call(method, None)
            raise ProviderError(
                f"Google Calendar request failed: {sanitize_error_message(str(exc))}"
            ) from exc
        self._metrics.record_api_call(method, response.status_code)
        return response
