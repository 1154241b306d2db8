"""
Shared fixtures.

No test touches the network: Redis and aiohttp sessions are replaced by the
fakes in tests/helpers.py.
"""

from unittest.mock import AsyncMock

import pytest

from streamwatch.lib.config import PlatformConfig
from streamwatch.lib.dedup import RecentlySeen
from streamwatch.lib.retry import RetryConfig, RetryPolicyEngine
from streamwatch.services.event_bus import EventBus
from streamwatch.services.reconciler import StateReconciler
from streamwatch.services.repository import InMemoryRepository
from streamwatch.services.tracking import TrackingRegistry
from tests.helpers import FakeClock, FakeRedis


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def event_bus(fake_redis):
    return EventBus(fake_redis, channel_prefix="streams")


@pytest.fixture
def recent():
    return RecentlySeen(max_size=1000)


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def registry():
    return TrackingRegistry()


@pytest.fixture
def reconciler(event_bus, recent, repository):
    return StateReconciler(event_bus, recent, repository=repository, debounce_seconds=0.05)


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def retry_engine(no_sleep):
    return RetryPolicyEngine("youtube", RetryConfig(max_attempts=3, base_delay=2.0, max_delay=60.0), sleep=no_sleep)


@pytest.fixture
def youtube_config():
    return PlatformConfig(
        platform="youtube",
        credentials=["key-a", "key-b"],
        poll_interval=0.01,
        schedule_interval=0.01,
        title_interval=0.01,
        subscription_interval=0.01,
        debounce_seconds=0.05,
    )


@pytest.fixture
def twitch_config():
    return PlatformConfig(
        platform="twitch",
        client_id="client",
        client_secret="secret",
        poll_interval=0.01,
        title_interval=0.01,
        subscription_interval=0.01,
        debounce_seconds=0.05,
        batch_size=100,
        offline_grace_seconds=180.0,
    )
