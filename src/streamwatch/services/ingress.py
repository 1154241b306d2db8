"""
Entry point for verified webhook payloads.

The HTTP collaborator terminates and signature-checks inbound webhooks and
hands the parsed body to ``WebhookIngress.submit``. A single consumer task
dispatches payloads to the owning poller in arrival order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..lib.tasks import QueueConsumer
from .poller import PlatformPoller

logger = logging.getLogger(__name__)


@dataclass
class WebhookNotification:
    """One parsed webhook body waiting for dispatch."""
    platform: str
    payload: Dict[str, Any]
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class WebhookIngress(QueueConsumer[WebhookNotification]):
    """Queues webhook payloads and dispatches them to platform pollers."""

    def __init__(self, maxsize: int = 10000):
        super().__init__("webhook-ingress", self._dispatch, maxsize=maxsize)
        self._pollers: Dict[str, PlatformPoller] = {}
        self.unroutable = 0

    def register(self, poller: PlatformPoller) -> None:
        self._pollers[poller.platform] = poller

    def unregister(self, platform: str) -> None:
        self._pollers.pop(platform, None)

    def submit_payload(self, platform: str, payload: Dict[str, Any]) -> bool:
        """Enqueue a payload; False if no poller handles the platform or the queue is full."""
        platform = platform.lower()
        if platform not in self._pollers:
            self.unroutable += 1
            logger.warning(f"No poller registered for {platform} webhook")
            return False
        return self.submit(WebhookNotification(platform=platform, payload=payload))

    async def _dispatch(self, notification: WebhookNotification) -> None:
        poller = self._pollers.get(notification.platform)
        if poller is None:
            self.unroutable += 1
            logger.warning(f"Poller for {notification.platform} went away, dropping webhook")
            return
        await poller.handle_notification(notification.payload)

    async def confirm_subscription(
        self,
        platform: str,
        channel_key: str,
        topic: str,
        lease_seconds: Optional[int] = None
    ) -> bool:
        """Record a completed hub verification handshake."""
        poller = self._pollers.get(platform.lower())
        if poller is None or poller.subscriptions is None:
            return False
        return await poller.subscriptions.confirm(channel_key, topic, lease_seconds)
