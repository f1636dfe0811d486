"""Error hierarchy for the scheduling engine.

Only a small part of this hierarchy ever escapes to callers. Credential and
provider failures inside a fan-out are converted into per-user result flags;
the client-visible errors below are raised only when no useful output can be
produced at all.
"""

from __future__ import annotations

import re


class SchedulingError(RuntimeError):
    """Base error raised by the scheduling engine."""


class ProviderError(SchedulingError):
    """Base error for calendar provider failures."""


class ProviderAuthError(ProviderError):
    """Raised when the provider token endpoint rejects or fails an exchange.

    ``retryable`` is False when the provider explicitly rejected the grant
    (4xx or a malformed success payload). Transport failures and 5xx answers
    are retryable and must not demote the stored credential.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        retryable: bool = False,
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(message)


class ProviderRequestError(ProviderError):
    """Raised when a calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar API request failed ({status_code}): {message}")


class SchedulingClientError(SchedulingError):
    """Raised when a request cannot produce any useful output."""

    code = "SCHEDULING_ERROR"


class NoAvailableParticipantsError(SchedulingClientError):
    """Raised when no participant has a usable calendar."""

    code = "NO_AVAILABLE_PARTICIPANTS"


class NoCandidateSlotsError(SchedulingClientError):
    """Raised when the requested range contains no schedulable slot."""

    code = "NO_CANDIDATE_SLOTS"


class OrganizerCalendarUnavailableError(SchedulingClientError):
    """Raised when the organizer cannot book because their calendar is unusable."""

    code = "ORGANIZER_CALENDAR_UNAVAILABLE"


class LocalEventNotFoundError(SchedulingClientError):
    """Raised when a sync targets a local event that does not exist."""

    code = "LOCAL_EVENT_NOT_FOUND"


class CalendarNotConnectedError(SchedulingClientError):
    """Raised when a user without a usable calendar asks to pull provider events."""

    code = "CALENDAR_NOT_CONNECTED"


class SchedulingTimeoutError(SchedulingError):
    """Raised when a scheduling request exceeds its deadline."""


_CREDENTIAL_KEYS = r"client_secret|refresh_token|access_token|code|token"


def sanitize_error_message(message: str, *, limit: int = 200) -> str:
    """Redact credential-looking values, collapse whitespace and truncate."""
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_CREDENTIAL_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        r"(?i)\bBearer\s+[A-Za-z0-9._\-]+",
        "Bearer [REDACTED]",
        redacted,
    )
    return " ".join(redacted.split())[:limit]
