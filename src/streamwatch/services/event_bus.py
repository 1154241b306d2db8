"""
Redis pub/sub event bus.

Every detected transition is serialized to JSON and published on a channel
derived from its event type (``streams.online``, ``streams.offline``,
``streams.metadata``, ``streams.schedule``, ``streams.deleted``) so
consumers subscribe only to what they render.

Batch message shape::

    {
        "eventType": "Online",
        "isBatch": true,
        "events": [{...}, {...}]
    }

The bus does not buffer. When the broker is unreachable the event is logged
and dropped; callers that need stronger delivery must keep track of their
outstanding events themselves.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..models import StreamEvent, StreamEventType

logger = logging.getLogger(__name__)

RECORDING_CHECK_CHANNEL = "youtube.test"


class EventBus:
    """Publishes StreamEvents to Redis and reports broker reachability."""

    def __init__(
        self,
        client: aioredis.Redis,
        channel_prefix: str = "streams",
        record_triggers: bool = False
    ):
        self._client = client
        self.channel_prefix = channel_prefix
        self.record_triggers = record_triggers
        self._is_connected = False

        # Statistics
        self.published_count = 0
        self.dropped_count = 0
        self.batch_count = 0

    @classmethod
    def from_url(cls, redis_url: str, **kwargs: Any) -> "EventBus":
        client = aioredis.from_url(redis_url, decode_responses=True)
        return cls(client, **kwargs)

    @property
    def client(self) -> aioredis.Redis:
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def channel_for(self, event_type: StreamEventType) -> str:
        return f"{self.channel_prefix}.{event_type.channel_suffix}"

    async def connect(self) -> bool:
        """Ping the broker; returns whether it is reachable."""
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            self._is_connected = False
            logger.error(f"Event bus broker unreachable: {e}")
            return False

        self._is_connected = True
        logger.info("Event bus connected")
        return True

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Error closing event bus connection: {e}")
        self._is_connected = False
        logger.info(
            f"Event bus closed (published={self.published_count}, dropped={self.dropped_count})"
        )

    async def _send(self, channel: str, message: str) -> Optional[int]:
        """Publish a raw message; None when the broker rejected it."""
        try:
            receivers = await self._client.publish(channel, message)
        except (RedisError, OSError) as e:
            self._is_connected = False
            logger.error(f"Failed to publish to {channel}, dropping message: {e}")
            return None

        self._is_connected = True
        return receivers

    async def publish(self, event: StreamEvent) -> bool:
        """Publish one event. Returns False if it was dropped."""
        channel = self.channel_for(event.event_type)
        message = json.dumps(event.to_wire())

        receivers = await self._send(channel, message)
        if receivers is None:
            self.dropped_count += 1
            return False

        self.published_count += 1
        logger.debug(
            f"Published {event.event_type.value} for {event.platform}/{event.external_id} "
            f"to {channel} ({receivers} receivers)"
        )

        if self.record_triggers and event.event_type == StreamEventType.ONLINE:
            await self.publish_record_trigger(event)

        return True

    async def publish_batch(self, events: Sequence[StreamEvent]) -> int:
        """
        Publish events grouped by type, one message per run of a type.

        Only consecutive events of the same type share a message, so the
        order of transitions for a channel is the order they were detected
        in. A run with a single event is sent in the plain format. Returns
        the number of events delivered to the broker.
        """
        runs: List[Tuple[StreamEventType, List[StreamEvent]]] = []
        for event in events:
            if runs and runs[-1][0] == event.event_type:
                runs[-1][1].append(event)
            else:
                runs.append((event.event_type, [event]))

        delivered = 0
        for event_type, grouped in runs:
            if len(grouped) == 1:
                if await self.publish(grouped[0]):
                    delivered += 1
                continue

            message: Dict[str, Any] = {
                "eventType": event_type.value,
                "isBatch": True,
                "events": [event.to_wire() for event in grouped],
            }
            channel = self.channel_for(event_type)
            receivers = await self._send(channel, json.dumps(message))
            if receivers is None:
                self.dropped_count += len(grouped)
                continue

            self.batch_count += 1
            self.published_count += len(grouped)
            delivered += len(grouped)
            logger.debug(f"Published batch of {len(grouped)} {event_type.value} events to {channel}")

            if self.record_triggers and event_type == StreamEventType.ONLINE:
                for event in grouped:
                    await self.publish_record_trigger(event)

        return delivered

    async def publish_record_trigger(self, event: StreamEvent) -> bool:
        """Ask the recording tool to capture an online stream."""
        if event.platform == "twitch":
            target = event.payload.get("login") or event.channel_key
        else:
            target = event.external_id

        receivers = await self._send(f"{event.platform}.record", target)
        if receivers is None:
            return False

        logger.info(f"Requested recording of {event.platform}/{target}")
        return True

    async def check_recording_tool(self) -> bool:
        """True if at least one recorder is listening on the check channel."""
        receivers = await self._send(RECORDING_CHECK_CHANNEL, "ping")
        return bool(receivers)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "connected": self._is_connected,
            "channel_prefix": self.channel_prefix,
            "published": self.published_count,
            "dropped": self.dropped_count,
            "batches": self.batch_count,
        }
