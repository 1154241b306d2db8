"""
In-process fakes for Redis, aiohttp sessions and the wall clock.
"""

import asyncio
import json
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Tuple

from redis.exceptions import ConnectionError as RedisConnectionError


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakePubSub:
    """Minimal redis.asyncio PubSub stand-in."""

    def __init__(self):
        self.channels: List[str] = []
        self.pending: List[Dict[str, Any]] = []
        self.closed = False
        self.fail = False

    async def subscribe(self, *channels: str) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")
        self.channels.extend(channels)

    async def unsubscribe(self, *channels: str) -> None:
        self.channels = []

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        if self.pending:
            return self.pending.pop(0)
        await asyncio.sleep(0.01)
        return None

    async def aclose(self) -> None:
        self.closed = True

    def push(self, channel: str, data: Any) -> None:
        self.pending.append({"type": "message", "channel": channel, "data": data})


class FakeRedis:
    """Records publishes; ``fail`` simulates an unreachable broker."""

    def __init__(self, receivers: int = 1):
        self.published: List[Tuple[str, str]] = []
        self.receivers = receivers
        self.fail = False
        self.closed = False
        self._pubsub = FakePubSub()

    async def ping(self) -> bool:
        if self.fail:
            raise RedisConnectionError("Connection refused")
        return True

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise RedisConnectionError("Connection refused")
        self.published.append((channel, message))
        return self.receivers

    def pubsub(self) -> FakePubSub:
        return self._pubsub

    async def aclose(self) -> None:
        self.closed = True

    def messages_on(self, channel: str) -> List[Any]:
        return [json.loads(message) if message.startswith("{") else message
                for ch, message in self.published if ch == channel]


class FakeResponse:
    """aiohttp response stand-in usable with ``async with``."""

    def __init__(self, status: int = 200, json_data: Any = None, text: str = "",
                 headers: Optional[Dict[str, str]] = None):
        self.status = status
        self._json = json_data
        self._text = text
        self.headers = headers or {}

    async def json(self, content_type: Optional[str] = "application/json") -> Any:
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    async def text(self) -> str:
        if self._text:
            return self._text
        return json.dumps(self._json) if self._json is not None else ""

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class FakeSession:
    """Returns queued responses in call order and records every call."""

    def __init__(self, responses: Optional[List[FakeResponse]] = None):
        self.responses = list(responses or [])
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.closed = False

    def _next(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        if not self.responses:
            raise AssertionError(f"Unexpected {method} {url}")
        return self.responses.pop(0)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("POST", url, **kwargs)

    def delete(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("DELETE", url, **kwargs)

    async def close(self) -> None:
        self.closed = True



def dummy_config(platform: str = "dummy", **overrides: Any):
    from streamwatch.lib.config import PlatformConfig

    settings = dict(
        platform=platform,
        poll_interval=0.01,
        title_interval=0.01,
        subscription_interval=0.01,
        quota_reset_interval=0.01,
        debounce_seconds=0.05,
    )
    settings.update(overrides)
    return PlatformConfig(**settings)


def make_dummy_poller(registry, reconciler, platform: str = "dummy", **kwargs: Any):
    """Poller whose loop bodies are AsyncMocks."""
    from unittest.mock import AsyncMock

    from streamwatch.services.poller import PlatformPoller

    class DummyPoller(PlatformPoller):
        def __init__(self, *args: Any, **kw: Any):
            self.platform = platform
            super().__init__(*args, **kw)
            self.poll_status_mock = AsyncMock()
            self.refresh_titles_mock = AsyncMock()
            self.notification_mock = AsyncMock()

        @classmethod
        def from_config(cls, config, registry, reconciler, repository):
            return cls(config, registry, reconciler)

        async def poll_status(self) -> None:
            await self.poll_status_mock()

        async def refresh_titles(self) -> None:
            await self.refresh_titles_mock()

        async def handle_notification(self, payload: Dict[str, Any]) -> None:
            self.notifications_handled += 1
            await self.notification_mock(payload)

    return DummyPoller(dummy_config(platform), registry, reconciler, **kwargs)
