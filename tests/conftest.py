"""Shared test fixtures."""

from __future__ import annotations

import pytest

from opencode_bridge.config import RetrySettings, ServerSettings, Settings, SupervisorSettings


class RecordingSleep:
    """Stand-in for `asyncio.sleep` that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        server=ServerSettings(base_url="http://127.0.0.1:4096"),
        retry=RetrySettings(
            max_attempts=3,
            base_delay_seconds=0.5,
            max_delay_seconds=8.0,
            request_timeout_seconds=5.0,
            connect_timeout_seconds=1.0,
        ),
        supervisor=SupervisorSettings(auto_serve=True, max_reconnects=3),
    )
