"""
Tracking registry and follow/unfollow ingestion.

TrackingRegistry is the ref-counted set of channels worth polling. Follow
and unfollow notifications arrive on Redis, are parsed by
FollowEventListener and applied in arrival order by a single
FollowEventConsumer task.
"""

import asyncio
import json
import logging
import threading
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..lib.errors import EventBusError
from ..lib.tasks import QueueConsumer
from ..models import ChannelWatch, FollowAction, FollowEvent

logger = logging.getLogger(__name__)


class RegistryListener(Protocol):
    """Receives notifications when a channel enters or leaves the registry."""

    async def channel_added(self, watch: ChannelWatch) -> None:
        ...

    async def channel_removed(self, platform: str, channel_key: str) -> None:
        ...


class TrackingRegistry:
    """
    Thread-safe, ref-counted map of (platform, channel_key) to ChannelWatch.

    A channel enters the registry on its first follow and leaves when its
    last follower is gone. Listeners are notified on both edges.
    """

    def __init__(self):
        self._watches: Dict[Tuple[str, str], ChannelWatch] = {}
        self._lock = threading.Lock()
        self._listeners: List[RegistryListener] = []

    def add_listener(self, listener: RegistryListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: RegistryListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def add_follow(
        self,
        platform: str,
        channel_key: str,
        follower_id: Optional[str] = None
    ) -> int:
        """Register a follow; returns the channel's reference count."""
        key = (platform.lower(), channel_key)

        with self._lock:
            watch = self._watches.get(key)
            created = watch is None
            if created:
                watch = ChannelWatch(platform=key[0], channel_key=channel_key)
                self._watches[key] = watch

            if follower_id is None:
                watch.anonymous_follows += 1
            else:
                watch.followers.add(follower_id)
            ref_count = watch.ref_count

        if created:
            logger.info(f"Now tracking {key[0]}/{channel_key}")
            for listener in list(self._listeners):
                await self._notify(listener.channel_added(watch), key)
        else:
            logger.debug(f"{key[0]}/{channel_key} followed ({ref_count} followers)")

        return ref_count

    async def remove_follow(
        self,
        platform: str,
        channel_key: str,
        follower_id: Optional[str] = None
    ) -> int:
        """Drop a follow; returns the remaining reference count."""
        key = (platform.lower(), channel_key)

        with self._lock:
            watch = self._watches.get(key)
            if watch is None:
                logger.debug(f"Unfollow for untracked channel {key[0]}/{channel_key}")
                return 0

            if follower_id is not None and follower_id in watch.followers:
                watch.followers.discard(follower_id)
            elif watch.anonymous_follows > 0:
                watch.anonymous_follows -= 1
            else:
                logger.debug(f"{follower_id} was not following {key[0]}/{channel_key}")

            remaining = watch.ref_count
            if remaining == 0:
                del self._watches[key]

        if remaining == 0:
            logger.info(f"Stopped tracking {key[0]}/{channel_key}")
            for listener in list(self._listeners):
                await self._notify(listener.channel_removed(key[0], channel_key), key)

        return remaining

    async def _notify(self, notification, key: Tuple[str, str]) -> None:
        try:
            await notification
        except Exception as e:
            logger.error(f"Registry listener failed for {key[0]}/{key[1]}: {e}", exc_info=True)

    def load(self, watches: Iterable[ChannelWatch]) -> int:
        """Seed the registry from storage without notifying listeners."""
        loaded = 0
        with self._lock:
            for watch in watches:
                existing = self._watches.get(watch.key)
                if existing is None:
                    self._watches[watch.key] = watch.model_copy(deep=True)
                    loaded += 1
                else:
                    existing.followers.update(watch.followers)
                    existing.anonymous_follows = max(existing.anonymous_follows, watch.anonymous_follows)
        return loaded

    def is_tracked(self, platform: str, channel_key: str) -> bool:
        return (platform.lower(), channel_key) in self._watches

    def get(self, platform: str, channel_key: str) -> Optional[ChannelWatch]:
        return self._watches.get((platform.lower(), channel_key))

    def count(self, platform: Optional[str] = None) -> int:
        if platform is None:
            return len(self._watches)
        platform = platform.lower()
        with self._lock:
            return sum(1 for key in self._watches if key[0] == platform)

    def channels(self, platform: str) -> List[ChannelWatch]:
        platform = platform.lower()
        with self._lock:
            return [watch for key, watch in self._watches.items() if key[0] == platform]

    def channel_keys(self, platform: str) -> List[str]:
        return [watch.channel_key for watch in self.channels(platform)]


class FollowEventConsumer(QueueConsumer[FollowEvent]):
    """Applies follow events to the registry one at a time."""

    def __init__(self, registry: TrackingRegistry, maxsize: int = 10000):
        super().__init__("follow-events", self._apply, maxsize=maxsize)
        self.registry = registry

    async def _apply(self, event: FollowEvent) -> None:
        if event.action == FollowAction.FOLLOW:
            await self.registry.add_follow(event.platform, event.stream_key, event.follower_id)
        else:
            await self.registry.remove_follow(event.platform, event.stream_key, event.follower_id)


class FollowEventListener:
    """Subscribes to follow/unfollow channels and feeds the consumer queue."""

    def __init__(
        self,
        client: aioredis.Redis,
        consumer: FollowEventConsumer,
        key_prefix: str = "streamwatch",
        reconnect_delay: float = 5.0
    ):
        self._client = client
        self.consumer = consumer
        self.follow_channel = f"{key_prefix}:events:stream.follow"
        self.unfollow_channel = f"{key_prefix}:events:stream.unfollow"
        self.reconnect_delay = reconnect_delay

        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        self.received = 0
        self.rejected = 0

    def handle_message(self, channel: str, data) -> bool:
        """Parse one raw pub/sub message and enqueue it."""
        action = FollowAction.UNFOLLOW if channel == self.unfollow_channel else FollowAction.FOLLOW
        try:
            body = json.loads(data)
            event = FollowEvent.model_validate({**body, "action": action})
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            self.rejected += 1
            logger.warning(f"Ignoring malformed message on {channel}: {e}")
            return False

        self.received += 1
        return self.consumer.submit(event)

    async def start(self) -> None:
        self._stop_event.clear()
        self._pubsub = self._client.pubsub()
        try:
            await self._pubsub.subscribe(self.follow_channel, self.unfollow_channel)
        except (RedisError, OSError) as e:
            await self._pubsub.aclose()
            self._pubsub = None
            raise EventBusError(f"Could not subscribe to follow channels: {e}", cause=e) from e
        self._task = asyncio.create_task(self._listen(), name="follow-listener")
        logger.info(f"Listening for follow events on {self.follow_channel}, {self.unfollow_channel}")

    async def _listen(self) -> None:
        while not self._stop_event.is_set():
            try:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisError, OSError) as e:
                logger.error(f"Follow listener lost its connection: {e}")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.reconnect_delay)
                except asyncio.TimeoutError:
                    pass
                continue

            if message is None or message.get("type") != "message":
                continue
            self.handle_message(message["channel"], message["data"])

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe()
                await self._pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing follow listener: {e}")
            self._pubsub = None
