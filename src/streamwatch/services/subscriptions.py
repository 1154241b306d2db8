"""
Webhook subscription lifecycle.

Two upstream styles are supported:

* hub-style (WebSub): subscribe/unsubscribe by POSTing form fields to a hub,
  leases expire and must be renewed;
* typed push subscriptions: one subscription per (channel, event type)
  created and deleted through a platform API, no lease.

Both treat an "already subscribed" answer as success. The lifecycle manager
drives either backend through the retry engine and persists leases through
the repository only after a confirmed success.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiohttp import ClientSession, ClientTimeout

from ..lib.errors import ApiResponseError, ErrorContext, SubscriptionError
from ..lib.retry import RetryPolicyEngine
from ..models import ChannelWatch, WebhookSubscription
from .repository import Repository

logger = logging.getLogger(__name__)

YOUTUBE_HUB_URL = "https://pubsubhubbub.appspot.com/subscribe"
YOUTUBE_TOPIC_URL = "https://www.youtube.com/xml/feeds/videos.xml?channel_id={channel_id}"


@dataclass
class SubscribeOutcome:
    """What the upstream answered to a subscribe request."""
    subscription_id: Optional[str] = None
    lease_seconds: Optional[int] = None
    already_existed: bool = False


class SubscriptionBackend(ABC):
    """Upstream API that creates and removes webhook subscriptions."""

    platform: str

    def __init__(self, session: Optional[ClientSession] = None, timeout_seconds: float = 30.0):
        self._session = session
        self._owns_session = session is None
        self._closed = False
        self.timeout_seconds = timeout_seconds

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _get_session(self) -> ClientSession:
        if self._closed:
            raise SubscriptionError(f"{self.platform} subscription backend is closed")
        if self._session is None or (self._owns_session and self._session.closed):
            self._session = ClientSession(timeout=ClientTimeout(total=self.timeout_seconds))
            self._owns_session = True
        return self._session

    def start(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @abstractmethod
    def topics_for(self, channel_key: str) -> List[str]:
        """Topics a channel must be subscribed to."""

    @abstractmethod
    async def subscribe(self, channel_key: str, topic: str, lease_seconds: int) -> SubscribeOutcome:
        """Create or refresh one subscription; raises on failure."""

    @abstractmethod
    async def unsubscribe(self, subscription: WebhookSubscription) -> None:
        """Remove one subscription; raises on failure."""


def _response_error(action: str, status: int, body: str, headers=None) -> ApiResponseError:
    retry_after = None
    if headers is not None and headers.get('Retry-After'):
        try:
            retry_after = float(headers['Retry-After'])
        except ValueError:
            retry_after = None
    return ApiResponseError(
        f"{action} failed: HTTP {status}",
        status=status,
        retry_after=retry_after,
        body=body[:500] if body else None,
    )


class HubSubscriptionBackend(SubscriptionBackend):
    """WebSub hub subscriptions (YouTube)."""

    def __init__(
        self,
        callback_url: str,
        secret: Optional[str] = None,
        hub_url: str = YOUTUBE_HUB_URL,
        topic_template: str = YOUTUBE_TOPIC_URL,
        platform: str = "youtube",
        **kwargs: Any
    ):
        super().__init__(**kwargs)
        self.platform = platform
        self.callback_url = callback_url
        self.secret = secret
        self.hub_url = hub_url
        self.topic_template = topic_template

    def topics_for(self, channel_key: str) -> List[str]:
        return [self.topic_template.format(channel_id=channel_key)]

    def _form(self, mode: str, topic: str, lease_seconds: Optional[int] = None) -> Dict[str, str]:
        form = {
            "hub.mode": mode,
            "hub.topic": topic,
            "hub.callback": self.callback_url,
            "hub.verify": "async",
        }
        if lease_seconds:
            form["hub.lease_seconds"] = str(lease_seconds)
        if self.secret:
            form["hub.secret"] = self.secret
        return form

    async def _post(self, form: Dict[str, str]) -> int:
        session = self._get_session()
        async with session.post(self.hub_url, data=form) as response:
            if response.status in (202, 204):
                return response.status
            if response.status == 409:
                return response.status

            body = await response.text()
            raise _response_error(f"Hub {form['hub.mode']}", response.status, body, response.headers)

    async def subscribe(self, channel_key: str, topic: str, lease_seconds: int) -> SubscribeOutcome:
        status = await self._post(self._form("subscribe", topic, lease_seconds))
        return SubscribeOutcome(lease_seconds=lease_seconds, already_existed=status == 409)

    async def unsubscribe(self, subscription: WebhookSubscription) -> None:
        await self._post(self._form("unsubscribe", subscription.topic))


HeadersProvider = Callable[[], Awaitable[Dict[str, str]]]
ConditionBuilder = Callable[[str, str], Awaitable[Dict[str, str]]]


class PushSubscriptionBackend(SubscriptionBackend):
    """Typed push subscriptions created through a platform API (Twitch EventSub)."""

    def __init__(
        self,
        endpoint: str,
        callback_url: str,
        secret: str,
        topic_versions: Dict[str, str],
        headers_provider: HeadersProvider,
        condition_builder: ConditionBuilder,
        platform: str = "twitch",
        **kwargs: Any
    ):
        super().__init__(**kwargs)
        self.platform = platform
        self.endpoint = endpoint
        self.callback_url = callback_url
        self.secret = secret
        self.topic_versions = dict(topic_versions)
        self._headers_provider = headers_provider
        self._condition_builder = condition_builder

    def topics_for(self, channel_key: str) -> List[str]:
        return list(self.topic_versions.keys())

    async def subscribe(self, channel_key: str, topic: str, lease_seconds: int) -> SubscribeOutcome:
        body = {
            "type": topic,
            "version": self.topic_versions[topic],
            "condition": await self._condition_builder(channel_key, topic),
            "transport": {
                "method": "webhook",
                "callback": self.callback_url,
                "secret": self.secret,
            },
        }
        headers = await self._headers_provider()

        session = self._get_session()
        async with session.post(self.endpoint, json=body, headers=headers) as response:
            conflict = response.status == 409
            if not conflict and response.status != 202:
                text = await response.text()
                raise _response_error(f"Create {topic} subscription", response.status, text, response.headers)
            payload = {} if conflict else await response.json()

        if conflict:
            return SubscribeOutcome(
                subscription_id=await self._lookup_quietly(topic, body["condition"]),
                already_existed=True,
            )

        data = payload.get("data") or [{}]
        return SubscribeOutcome(subscription_id=data[0].get("id"))

    async def find_subscription_id(self, topic: str, condition: Dict[str, str]) -> Optional[str]:
        """
        Id of an existing subscription for this callback, topic and condition.

        Pages through the listing filtered by type; None when there is none.
        """
        headers = await self._headers_provider()
        session = self._get_session()
        params: Dict[str, str] = {"type": topic}

        while True:
            async with session.get(self.endpoint, params=dict(params), headers=headers) as response:
                if response.status != 200:
                    text = await response.text()
                    raise _response_error(f"List {topic} subscriptions", response.status, text, response.headers)
                payload = await response.json()

            for item in payload.get("data") or []:
                transport = item.get("transport") or {}
                if item.get("condition") == condition and transport.get("callback") == self.callback_url:
                    return item.get("id")

            cursor = (payload.get("pagination") or {}).get("cursor")
            if not cursor:
                return None
            params["after"] = cursor

    async def _lookup_quietly(self, topic: str, condition: Dict[str, str]) -> Optional[str]:
        try:
            return await self.find_subscription_id(topic, condition)
        except ApiResponseError as e:
            logger.warning(f"Could not look up existing {topic} subscription: {e}")
            return None

    async def unsubscribe(self, subscription: WebhookSubscription) -> None:
        subscription_id = subscription.subscription_id
        if not subscription_id:
            condition = await self._condition_builder(subscription.channel_key, subscription.topic)
            subscription_id = await self.find_subscription_id(subscription.topic, condition)
        if not subscription_id:
            logger.debug(f"No upstream {subscription.topic} subscription for {subscription.channel_key}, nothing to delete")
            return

        headers = await self._headers_provider()
        session = self._get_session()
        async with session.delete(
            self.endpoint, params={"id": subscription_id}, headers=headers
        ) as response:
            # 404 means it already expired upstream
            if response.status in (204, 404):
                return
            text = await response.text()
            raise _response_error(f"Delete {subscription.topic} subscription", response.status, text, response.headers)


class SubscriptionLifecycleManager:
    """
    Keeps webhook subscriptions current for tracked channels.

    Registered as a TrackingRegistry listener: a newly tracked channel is
    subscribed immediately and a dropped one is unsubscribed. The periodic
    sweep renews leases that are inside the renewal buffer and re-creates
    any that are missing.
    """

    def __init__(
        self,
        backend: SubscriptionBackend,
        repository: Repository,
        retry_engine: RetryPolicyEngine,
        lease_seconds: int = 864000,
        renewal_buffer: float = 86400.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.backend = backend
        self.repository = repository
        self.retry_engine = retry_engine
        self.lease_seconds = lease_seconds
        self.renewal_buffer = renewal_buffer
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        # Statistics
        self.subscribed_count = 0
        self.renewed_count = 0
        self.failed_count = 0
        self.last_sweep: Optional[datetime] = None

    @property
    def platform(self) -> str:
        return self.backend.platform

    def is_renewal_due(self, subscription: WebhookSubscription, now: Optional[datetime] = None) -> bool:
        return subscription.is_renewal_due(now or self._clock(), self.renewal_buffer)

    async def _subscribe_topic(
        self,
        channel_key: str,
        topic: str,
        existing: Optional[WebhookSubscription] = None
    ) -> bool:
        result = await self.retry_engine.attempt(
            "subscribe",
            lambda: self.backend.subscribe(channel_key, topic, self.lease_seconds),
        )
        if not result.ok:
            self.failed_count += 1
            logger.warning(
                f"Subscription for {self.platform}/{channel_key} ({topic}) failed after "
                f"{result.attempts} attempt(s): {result.error}"
            )
            return False

        outcome: SubscribeOutcome = result.value
        subscription_id = outcome.subscription_id or (existing.subscription_id if existing else None)
        subscription = WebhookSubscription(
            platform=self.platform,
            channel_key=channel_key,
            topic=topic,
            subscription_id=subscription_id,
            lease_start=self._clock(),
            lease_seconds=outcome.lease_seconds,
            verified=existing.verified if existing and outcome.already_existed else False,
        )
        await self.repository.save_subscription(subscription)

        if existing is None:
            self.subscribed_count += 1
        else:
            self.renewed_count += 1

        logger.info(
            f"{'Renewed' if existing else 'Subscribed'} {self.platform}/{channel_key} ({topic})"
            f"{' - already existed upstream' if outcome.already_existed else ''}"
        )
        return True

    async def subscribe_channel(self, channel_key: str) -> bool:
        """Subscribe every topic for a channel, replacing stored leases."""
        ok = True
        for topic in self.backend.topics_for(channel_key):
            existing = await self.repository.get_subscription(channel_key, topic)
            ok = await self._subscribe_topic(channel_key, topic, existing) and ok
        return ok

    async def ensure_subscribed(self, channel_key: str, now: Optional[datetime] = None) -> Dict[str, int]:
        """Subscribe missing topics and renew due ones; returns counters."""
        now = now or self._clock()
        counts = {"renewed": 0, "failed": 0, "current": 0}

        for topic in self.backend.topics_for(channel_key):
            existing = await self.repository.get_subscription(channel_key, topic)
            if existing is not None and not existing.is_renewal_due(now, self.renewal_buffer):
                counts["current"] += 1
                continue

            if await self._subscribe_topic(channel_key, topic, existing):
                counts["renewed"] += 1
            else:
                counts["failed"] += 1

        return counts

    async def sweep(self, channel_keys: List[str]) -> Dict[str, int]:
        """
        Renew every due or missing subscription for the given channels.

        A failure on one channel is logged and left for the next sweep.
        """
        now = self._clock()
        totals = {"checked": 0, "renewed": 0, "failed": 0}

        for channel_key in channel_keys:
            totals["checked"] += 1
            try:
                counts = await self.ensure_subscribed(channel_key, now)
            except Exception as e:
                totals["failed"] += 1
                context = ErrorContext(operation="subscription_sweep", platform=self.platform, channel_key=channel_key)
                logger.error(f"Subscription sweep failed for {self.platform}/{channel_key}: {e}", extra=context.to_dict())
                continue

            totals["renewed"] += counts["renewed"]
            totals["failed"] += counts["failed"]

        self.last_sweep = now
        if totals["renewed"] or totals["failed"]:
            logger.info(
                f"{self.platform} subscription sweep: {totals['checked']} channels, "
                f"{totals['renewed']} renewed, {totals['failed']} failed"
            )
        return totals

    async def unsubscribe_channel(self, channel_key: str) -> bool:
        """Best-effort removal; stored leases are dropped either way."""
        ok = True
        for topic in self.backend.topics_for(channel_key):
            existing = await self.repository.get_subscription(channel_key, topic)
            subscription = existing or WebhookSubscription(
                platform=self.platform, channel_key=channel_key, topic=topic
            )

            result = await self.retry_engine.attempt(
                "unsubscribe", lambda: self.backend.unsubscribe(subscription)
            )
            if not result.ok:
                ok = False
                logger.warning(
                    f"Unsubscribe for {self.platform}/{channel_key} ({topic}) failed, "
                    f"leaving it to expire: {result.error}"
                )

            await self.repository.delete_subscription(channel_key, topic)

        if ok:
            logger.info(f"Unsubscribed {self.platform}/{channel_key}")
        return ok

    async def confirm(self, channel_key: str, topic: str, lease_seconds: Optional[int] = None) -> bool:
        """Mark a lease verified once the hub completed its challenge."""
        existing = await self.repository.get_subscription(channel_key, topic)
        if existing is None:
            logger.warning(f"Verification for unknown subscription {self.platform}/{channel_key} ({topic})")
            return False

        updated = existing.model_copy(update={
            "verified": True,
            "lease_start": self._clock(),
            "lease_seconds": lease_seconds if lease_seconds is not None else existing.lease_seconds,
        })
        await self.repository.save_subscription(updated)
        logger.debug(f"Subscription verified for {self.platform}/{channel_key}")
        return True

    async def channel_added(self, watch: ChannelWatch) -> None:
        if watch.platform == self.platform:
            await self.subscribe_channel(watch.channel_key)

    async def channel_removed(self, platform: str, channel_key: str) -> None:
        if platform == self.platform:
            await self.unsubscribe_channel(channel_key)

    def start(self) -> None:
        self.backend.start()

    async def close(self) -> None:
        await self.backend.close()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "lease_seconds": self.lease_seconds,
            "renewal_buffer": self.renewal_buffer,
            "subscribed": self.subscribed_count,
            "renewed": self.renewed_count,
            "failed": self.failed_count,
            "last_sweep": self.last_sweep.isoformat() if self.last_sweep else None,
        }
