"""Tests for scheduler wiring from configuration."""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest

from plantracker.api.deps import build_provider, build_scheduler
from plantracker.config import parse_config
from plantracker.scheduling.provider import GoogleCalendarProvider

pytestmark = pytest.mark.unit


@pytest.fixture
def config():
    return parse_config(
        {
            "scheduling": {
                "timezone": "Asia/Singapore",
                "working_hours_start": 8,
                "working_hours_end": 16,
                "default_max_suggestions": 4,
            },
            "google": {"client_id": "cid", "client_secret": "secret"},
        }
    )


def test_build_provider_uses_google_settings(config) -> None:
    provider = build_provider(config, http_client=httpx.AsyncClient())

    assert isinstance(provider, GoogleCalendarProvider)
    assert "client_id=cid" in provider.authorization_url(state="u1")


async def test_build_scheduler_shares_provider(config, provider) -> None:
    components = build_scheduler(config, MagicMock(), provider=provider)

    scheduler = components.scheduler
    assert components.provider is provider
    assert scheduler.tokens.provider_name == "google_calendar"
    assert scheduler.events is not None

    await components.shutdown()
