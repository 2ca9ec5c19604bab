import os
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any nearbuy imports, so the
# settings object is built with the in-memory backends and test secrets.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), ".env.test"))

from nearbuy.config.settings import settings  # noqa: E402
from nearbuy.main import app  # noqa: E402
from nearbuy.services.whatsapp_service import WhatsAppService  # noqa: E402
from nearbuy.utils.lifecycle import ServiceContainer  # noqa: E402

# Monday 2026-01-05 11:30 in Asia/Kolkata, well outside quiet hours.
BASE_TIME = datetime(2026, 1, 5, 6, 0, tzinfo=timezone.utc)


class FakeClock:
    """Epoch-seconds clock for the rate budget and lease store; sleep advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def base_time():
    return BASE_TIME


@pytest.fixture
def whatsapp_client():
    """A WhatsAppService stand-in that still runs the caller's rate-budget hook."""
    client = AsyncMock(spec=WhatsAppService)
    counter = {"n": 0}

    async def fake_send(message, before_attempt=None):
        if before_attempt:
            await before_attempt()
        counter["n"] += 1
        return f"wamid.test{counter['n']}"

    client.send.side_effect = fake_send
    return client


@pytest.fixture
def flow_router():
    router = AsyncMock()
    router.route = AsyncMock()
    return router


@pytest.fixture
def services(whatsapp_client, flow_router):
    """The full pipeline on in-memory backends with the WhatsApp client mocked."""
    return ServiceContainer(settings, router=flow_router, whatsapp=whatsapp_client)


@pytest.fixture(scope="function")
def test_client(services):
    """
    Provides a TestClient for API integration tests. The app's lifespan
    (startup/shutdown events) is managed by the TestClient and reuses the
    services built above.
    """
    app.state.services = services
    with TestClient(app) as client:
        yield client
    del app.state.services
