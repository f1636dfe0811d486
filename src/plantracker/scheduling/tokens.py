"""Token lifecycle management for calendar credentials.

The manager is the only component that writes credential rows. It decides
whether an access token needs refreshing, performs the refresh handshake,
persists the result, and demotes credentials the provider has rejected.

Refresh decisions
-----------------
- No ACTIVE credential: ``False`` (the user has no integration).
- ``expires_at`` at least ``refresh_margin`` in the future: ``True`` without
  contacting the provider. Exactly the margin counts as fresh.
- ``expires_at`` null, past, or within the margin: one refresh handshake.
  A provider rejection marks the credential EXPIRED. Transport errors and
  provider 5xx answers leave the credential untouched.

``refresh`` never raises for provider or store failures.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

from plantracker.core.metrics import SchedulingMetrics
from plantracker.scheduling.errors import ProviderAuthError, ProviderError
from plantracker.scheduling.models import Credential, CredentialStatus, IntegrationStatus
from plantracker.scheduling.provider import CalendarProvider
from plantracker.scheduling.stores import CredentialRepository

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_MAX_CONCURRENCY = 20

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenLifecycleManager:
    """Refresh, authorize and revoke per-user calendar credentials."""

    def __init__(
        self,
        store: CredentialRepository,
        provider: CalendarProvider,
        *,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        clock: Clock | None = None,
        metrics: SchedulingMetrics | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._store = store
        self._provider = provider
        self._refresh_margin = refresh_margin
        self._max_concurrency = max_concurrency
        self._clock = clock or _utcnow
        self._metrics = metrics or SchedulingMetrics(provider.name)

    @property
    def provider_name(self) -> str:
        return self._provider.name

    def needs_refresh(self, credential: Credential) -> bool:
        if credential.expires_at is None:
            return True
        return credential.expires_at - self._clock() < self._refresh_margin

    async def refresh(self, user_id: str, *, force: bool = False) -> bool:
        """Ensure ``user_id`` holds a usable access token.

        ``force`` skips the freshness fast path; it is used after the provider
        answered 401 to a token that looked valid.
        """
        outcome = await self._refresh(user_id, force=force)
        self._metrics.record_token_refresh(outcome)
        return outcome in ("fresh", "refreshed")

    async def _refresh(self, user_id: str, *, force: bool) -> str:
        provider_name = self._provider.name
        try:
            credential = await self._store.find_active_credential(user_id, provider_name)
        except Exception:
            logger.exception("Credential lookup failed: user_id=%r", user_id)
            return "error"

        if credential is None:
            return "missing"
        if not force and not self.needs_refresh(credential):
            return "fresh"
        if credential.refresh_token is None:
            logger.info("Credential has no refresh token: user_id=%r", user_id)
            return "no_refresh_token"

        try:
            grant = await self._provider.refresh_access_token(credential.refresh_token)
        except ProviderAuthError as exc:
            if exc.retryable:
                logger.warning("Token refresh failed transiently: user_id=%r error=%s", user_id, exc)
                return "transient"
            logger.warning(
                "Token refresh rejected, marking credential expired: user_id=%r "
                "status_code=%s error_code=%s",
                user_id,
                exc.status_code,
                exc.error_code,
            )
            await self._mark_expired(user_id)
            return "rejected"
        except Exception:
            logger.exception("Token refresh failed unexpectedly: user_id=%r", user_id)
            return "error"

        try:
            await self._store.update_tokens(
                user_id,
                provider_name,
                access_token=grant.access_token,
                expires_at=grant.expires_at,
                refresh_token=grant.refresh_token,
            )
        except Exception:
            logger.exception("Failed to persist refreshed token: user_id=%r", user_id)
            return "error"

        logger.debug("Token refreshed: user_id=%r expires_at=%s", user_id, grant.expires_at)
        return "refreshed"

    async def _mark_expired(self, user_id: str) -> None:
        try:
            await self._store.mark_expired(user_id, self._provider.name)
        except Exception:
            logger.exception("Failed to mark credential expired: user_id=%r", user_id)

    async def refresh_many(self, user_ids: Iterable[str]) -> dict[str, bool]:
        """Refresh every distinct user concurrently, one result per user."""
        distinct_ids = list(dict.fromkeys(user_ids))
        if not distinct_ids:
            return {}

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _refresh_one(user_id: str) -> tuple[str, bool]:
            async with semaphore:
                try:
                    return user_id, await self.refresh(user_id)
                except Exception:
                    logger.exception("Token refresh crashed: user_id=%r", user_id)
                    return user_id, False

        results = await asyncio.gather(*(_refresh_one(user_id) for user_id in distinct_ids))
        return dict(results)

    async def access_token(self, user_id: str) -> str | None:
        """Return the stored access token of the user's ACTIVE credential."""
        credential = await self._store.find_active_credential(user_id, self._provider.name)
        return None if credential is None else credential.access_token

    # -- authorization handshake ---------------------------------------------

    def authorization_url(self, user_id: str, state: str | None = None) -> str:
        return self._provider.authorization_url(state=state or user_id)

    async def authorize(self, user_id: str, code: str) -> Credential:
        """Exchange ``code`` and store the resulting credential as ACTIVE.

        When the provider omits a refresh token the previous one is kept.

        Raises
        ------
        ProviderAuthError
            If the provider rejects the authorization code.
        """
        if not code or not code.strip():
            raise ValueError("authorization code must be a non-empty string")

        provider_name = self._provider.name
        grant = await self._provider.exchange_code(code.strip())
        existing = await self._store.find_credential(user_id, provider_name)

        refresh_token = grant.refresh_token
        if refresh_token is None and existing is not None:
            refresh_token = existing.refresh_token

        try:
            account_email = await self._provider.fetch_account_email(grant.access_token)
        except ProviderError as exc:
            logger.warning("Could not resolve calendar account email: user_id=%r error=%s", user_id, exc)
            account_email = None
        if account_email is None and existing is not None:
            account_email = existing.account_email

        credential = Credential(
            user_id=user_id,
            provider=provider_name,
            access_token=grant.access_token,
            refresh_token=refresh_token,
            expires_at=grant.expires_at,
            status=CredentialStatus.ACTIVE,
            account_email=account_email,
            updated_at=self._clock(),
        )
        await self._store.upsert_credential(credential)
        logger.info("Calendar connected: user_id=%r provider=%r", user_id, provider_name)
        return credential

    async def disconnect(self, user_id: str) -> None:
        await self._store.mark_revoked(user_id, self._provider.name)
        logger.info("Calendar disconnected: user_id=%r", user_id)

    async def integration_status(self, user_id: str) -> IntegrationStatus:
        credential = await self._store.find_active_credential(user_id, self._provider.name)
        if credential is None:
            return IntegrationStatus(is_connected=False)
        return IntegrationStatus(
            is_connected=True,
            account_email=credential.account_email,
            last_sync_at=credential.updated_at,
        )
