"""Prometheus metrics for the scheduling engine.

Metrics exported:
- plantracker_token_refresh_total: Counter of refresh decisions by outcome
- plantracker_provider_api_calls_total: Counter of calendar API calls by status
- plantracker_event_operations_total: Counter of event create/update/delete/pull results
- plantracker_suggestion_latency_seconds: Histogram of suggest_meeting_times latency

All metrics carry a ``provider`` label so several calendar providers can share
one registry.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

token_refresh_total = Counter(
    "plantracker_token_refresh_total",
    "Total number of token refresh decisions",
    labelnames=["provider", "outcome"],
)

provider_api_calls_total = Counter(
    "plantracker_provider_api_calls_total",
    "Total number of calendar provider API calls",
    labelnames=["provider", "operation", "status"],
)

event_operations_total = Counter(
    "plantracker_event_operations_total",
    "Total number of provider event operations",
    labelnames=["provider", "operation", "result"],
)

suggestion_latency_seconds = Histogram(
    "plantracker_suggestion_latency_seconds",
    "Latency of meeting time suggestions in seconds",
    labelnames=["provider", "outcome"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


def status_class(status_code: int | None) -> str:
    """Collapse an HTTP status code into a low-cardinality label."""
    if status_code is None:
        return "transport_error"
    if status_code in (429, 503):
        return "rate_limited"
    return f"{status_code // 100}xx"


class SchedulingMetrics:
    """Metrics recorder bound to one provider label."""

    def __init__(self, provider: str) -> None:
        self._provider = provider

    def record_token_refresh(self, outcome: str) -> None:
        """Record a refresh decision.

        Args:
            outcome: "fresh", "refreshed", "rejected", "transient", "no_refresh_token",
                "missing" or "error".
        """
        token_refresh_total.labels(provider=self._provider, outcome=outcome).inc()

    def record_api_call(self, operation: str, status_code: int | None) -> None:
        provider_api_calls_total.labels(
            provider=self._provider,
            operation=operation,
            status=status_class(status_code),
        ).inc()

    def record_event_operation(self, operation: str, result: str) -> None:
        event_operations_total.labels(
            provider=self._provider, operation=operation, result=result
        ).inc()

    @contextmanager
    def track_suggestion(self, outcome_callback: Callable[[], str]) -> Iterator[None]:
        """Time a suggestion request; the outcome label is read when it finishes.

        Example:
            with metrics.track_suggestion(lambda: outcome):
                result = await self._suggest(...)
        """
        start_time = time.perf_counter()
        try:
            yield
        finally:
            suggestion_latency_seconds.labels(
                provider=self._provider, outcome=outcome_callback()
            ).observe(time.perf_counter() - start_time)
