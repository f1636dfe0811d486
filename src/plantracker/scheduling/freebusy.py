"""Per-user busy interval aggregation with failure isolation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime

from plantracker.scheduling.models import FreeBusy
from plantracker.scheduling.provider import CalendarProvider
from plantracker.scheduling.stores import CredentialRepository
from plantracker.scheduling.tokens import DEFAULT_MAX_CONCURRENCY

logger = logging.getLogger(__name__)


class FreeBusyAggregator:
    """Fetch busy intervals for many users; one user's failure never aborts the batch.

    A user without a credential is reported as available with no known
    conflicts. A user whose query fails is reported as ``available=False`` so
    scoring can leave them out.
    """

    def __init__(
        self,
        store: CredentialRepository,
        provider: CalendarProvider,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self._store = store
        self._provider = provider
        self._max_concurrency = max_concurrency

    async def get_busy(
        self,
        user_ids: Iterable[str],
        window_start: datetime,
        window_end: datetime,
    ) -> dict[str, FreeBusy]:
        if window_end <= window_start:
            raise ValueError("window_end must be after window_start")

        distinct_ids = list(dict.fromkeys(user_ids))
        if not distinct_ids:
            return {}

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _query_one(user_id: str) -> tuple[str, FreeBusy]:
            async with semaphore:
                try:
                    credential = await self._store.find_active_credential(
                        user_id, self._provider.name
                    )
                    if credential is None:
                        return user_id, FreeBusy(available=True)
                    busy = await self._provider.query_busy(
                        credential.access_token, window_start, window_end
                    )
                    return user_id, FreeBusy(busy=busy, available=True)
                except Exception as exc:
                    logger.warning("Free/busy query failed: user_id=%r error=%s", user_id, exc)
                    return user_id, FreeBusy(available=False)

        results = await asyncio.gather(*(_query_one(user_id) for user_id in distinct_ids))
        return dict(results)
