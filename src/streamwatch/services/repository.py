"""
Persistence contract used by the monitor.

The monitor never talks to a database directly. Followed channels, stream
snapshots and webhook leases are read and written through the narrow
Repository protocol; InMemoryRepository is the process-local implementation
used when no external store is wired in, and by the tests.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from ..models import ChannelWatch, WebhookSubscription

logger = logging.getLogger(__name__)


@runtime_checkable
class Repository(Protocol):
    """Storage operations the monitor depends on."""

    async def get_tracked_channels(self, platform: str) -> List[ChannelWatch]:
        ...

    async def upsert_snapshot(self, external_id: str, fields: Dict[str, Any]) -> None:
        ...

    async def get_subscription(self, channel_key: str, topic: str) -> Optional[WebhookSubscription]:
        ...

    async def save_subscription(self, subscription: WebhookSubscription) -> None:
        ...

    async def list_subscriptions(self, platform: str) -> List[WebhookSubscription]:
        ...

    async def delete_subscription(self, channel_key: str, topic: str) -> None:
        ...


class InMemoryRepository:
    """Dictionary-backed Repository."""

    def __init__(self, channels: Optional[List[ChannelWatch]] = None):
        self._channels: Dict[Tuple[str, str], ChannelWatch] = {}
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self._subscriptions: Dict[Tuple[str, str], WebhookSubscription] = {}

        for watch in channels or []:
            self.add_tracked_channel(watch)

    def add_tracked_channel(self, watch: ChannelWatch) -> None:
        self._channels[watch.key] = watch

    async def get_tracked_channels(self, platform: str) -> List[ChannelWatch]:
        platform = platform.lower()
        return [watch for key, watch in self._channels.items() if key[0] == platform]

    async def upsert_snapshot(self, external_id: str, fields: Dict[str, Any]) -> None:
        existing = self._snapshots.setdefault(external_id, {})
        existing.update(fields)

    def get_snapshot_fields(self, external_id: str) -> Optional[Dict[str, Any]]:
        return self._snapshots.get(external_id)

    async def get_subscription(self, channel_key: str, topic: str) -> Optional[WebhookSubscription]:
        return self._subscriptions.get((channel_key, topic))

    async def save_subscription(self, subscription: WebhookSubscription) -> None:
        self._subscriptions[(subscription.channel_key, subscription.topic)] = subscription
        logger.debug(f"Saved subscription {subscription.topic} for {subscription.channel_key}")

    async def list_subscriptions(self, platform: str) -> List[WebhookSubscription]:
        platform = platform.lower()
        return [sub for sub in self._subscriptions.values() if sub.platform == platform]

    async def delete_subscription(self, channel_key: str, topic: str) -> None:
        self._subscriptions.pop((channel_key, topic), None)
