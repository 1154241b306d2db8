"""
YouTube Data API client and poller.

Every request selects a credential slot from the QuotaManager and records
its fixed cost. Status rechecks batch up to 50 video ids per
``videos.list`` call; ids the API does not return are reported as not found.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession, ClientTimeout

from ...lib.config import PlatformConfig
from ...lib.errors import ApiResponseError, PollerStateError
from ...lib.quota import QuotaCost, QuotaManager
from ...lib.retry import RetryPolicyEngine
from ...lib.tasks import PeriodicTask
from ...models import LiveIndicator, RawObservation, StreamStatus
from ..poller import PlatformPoller, chunked
from ..reconciler import StateReconciler
from ..repository import Repository
from ..subscriptions import HubSubscriptionBackend, SubscriptionLifecycleManager
from ..tracking import TrackingRegistry

logger = logging.getLogger(__name__)

API_BASE_URL = "https://www.googleapis.com/youtube/v3"
MAX_IDS_PER_CALL = 50


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def observation_from_video(item: Dict[str, Any], channel_titles: Optional[Dict[str, str]] = None) -> RawObservation:
    """Build an observation from one ``videos.list`` item."""
    snippet = item.get("snippet", {})
    details = item.get("liveStreamingDetails", {})
    channel_id = snippet.get("channelId", "")

    broadcast = snippet.get("liveBroadcastContent", "none")
    try:
        indicator = LiveIndicator(broadcast)
    except ValueError:
        indicator = LiveIndicator.NONE

    channel_title = snippet.get("channelTitle")
    if channel_titles and channel_id in channel_titles:
        channel_title = channel_titles[channel_id]

    return RawObservation(
        platform="youtube",
        channel_key=channel_id,
        external_id=item["id"],
        indicator=indicator,
        title=snippet.get("title"),
        channel_title=channel_title,
        scheduled_start=parse_timestamp(details.get("scheduledStartTime")),
        actual_start=parse_timestamp(details.get("actualStartTime")),
        actual_end=parse_timestamp(details.get("actualEndTime")),
    )


class YouTubeApiClient:
    """Quota-aware YouTube Data API v3 client."""

    def __init__(
        self,
        quota: QuotaManager,
        retry_engine: RetryPolicyEngine,
        session: Optional[ClientSession] = None,
        base_url: str = API_BASE_URL,
        timeout_seconds: float = 30.0
    ):
        self.quota = quota
        self.retry_engine = retry_engine
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None
        self._closed = False
        self.request_count = 0

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        self._closed = False
        if self._session is None:
            self._session = ClientSession(
                timeout=ClientTimeout(total=self.timeout_seconds),
                headers={"Accept": "application/json"},
            )

    async def close(self) -> None:
        self._closed = True
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _get_once(self, endpoint: str, params: Dict[str, Any], cost: int) -> Dict[str, Any]:
        if self._closed:
            raise PollerStateError(f"YouTube client is closed, refusing {endpoint}")
        if self._session is None:
            await self.start()

        slot = self.quota.select_slot()
        query = {**params, "key": slot.credential}

        async with self._session.get(f"{self.base_url}/{endpoint}", params=query) as response:
            self.request_count += 1
            self.quota.record_usage(slot, cost)

            if response.status == 200:
                return await response.json()

            body = await response.text()
            reason = None
            message = f"YouTube {endpoint} failed: HTTP {response.status}"
            try:
                error = (await response.json(content_type=None)).get("error", {})
                errors = error.get("errors") or [{}]
                reason = errors[0].get("reason")
                message = f"{message} ({reason}): {error.get('message', '')}"
            except ValueError:
                pass

            if reason and "quota" in reason.lower():
                self.quota.mark_exhausted(slot)

            retry_after = response.headers.get("Retry-After")
            raise ApiResponseError(
                message,
                status=response.status,
                reason=reason,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                body=body[:500],
            )

    async def request(self, operation: str, endpoint: str, params: Dict[str, Any], cost: int) -> Dict[str, Any]:
        return await self.retry_engine.execute(
            operation, lambda: self._get_once(endpoint, params, cost)
        )

    async def list_videos(self, video_ids: List[str]) -> List[Dict[str, Any]]:
        if not video_ids:
            return []
        data = await self.request(
            "videos.list",
            "videos",
            {"part": "snippet,liveStreamingDetails", "id": ",".join(video_ids[:MAX_IDS_PER_CALL])},
            QuotaCost.VIDEOS_LIST,
        )
        return data.get("items", [])

    async def search_upcoming(self, channel_id: str) -> List[str]:
        data = await self.request(
            "search.list",
            "search",
            {
                "part": "id",
                "channelId": channel_id,
                "eventType": "upcoming",
                "type": "video",
                "maxResults": MAX_IDS_PER_CALL,
            },
            QuotaCost.SEARCH_LIST,
        )
        return [item["id"]["videoId"] for item in data.get("items", []) if item.get("id", {}).get("videoId")]

    async def list_channels(self, channel_ids: List[str]) -> List[Dict[str, Any]]:
        if not channel_ids:
            return []
        data = await self.request(
            "channels.list",
            "channels",
            {"part": "snippet", "id": ",".join(channel_ids[:MAX_IDS_PER_CALL])},
            QuotaCost.CHANNELS_LIST,
        )
        return data.get("items", [])


class YouTubePoller(PlatformPoller):
    """Schedule discovery, status rechecks and hub notifications for YouTube."""

    platform = "youtube"

    def __init__(self, config: PlatformConfig, registry: TrackingRegistry, reconciler: StateReconciler,
                 client: YouTubeApiClient, **kwargs: Any):
        super().__init__(config, registry, reconciler, **kwargs)
        self.client = client
        self.quota = self.quota or client.quota

        # video id -> channel id, for videos that still need rechecking
        self._watched_videos: Dict[str, str] = {}
        self._channel_titles: Dict[str, str] = {}

    @classmethod
    def from_config(
        cls,
        config: PlatformConfig,
        registry: TrackingRegistry,
        reconciler: StateReconciler,
        repository: Repository
    ) -> "YouTubePoller":
        retry_engine = RetryPolicyEngine("youtube", config.retry_config())
        quota = QuotaManager(config.credentials, quota_limit=config.quota_limit, platform="youtube")
        client = YouTubeApiClient(quota, retry_engine)

        subscriptions = None
        if config.callback_url:
            subscriptions = SubscriptionLifecycleManager(
                HubSubscriptionBackend(config.callback_url, secret=config.webhook_secret),
                repository,
                retry_engine,
                lease_seconds=config.lease_seconds,
                renewal_buffer=config.renewal_buffer,
            )

        return cls(
            config, registry, reconciler, client,
            retry_engine=retry_engine, quota=quota, subscriptions=subscriptions,
        )

    @property
    def watched_videos(self) -> Dict[str, str]:
        return dict(self._watched_videos)

    def watch_video(self, video_id: str, channel_id: str) -> None:
        self._watched_videos[video_id] = channel_id

    def build_loops(self) -> List[PeriodicTask]:
        loops = super().build_loops()
        loops.append(PeriodicTask(
            f"{self.platform}-schedule", self.config.schedule_interval, self.discover_schedules
        ))
        return loops

    async def on_start(self) -> None:
        await self.client.start()
        if self.subscriptions is not None:
            self.subscriptions.start()
        for snapshot in self.reconciler.snapshots_for(self.platform):
            if snapshot.status in (StreamStatus.SCHEDULED, StreamStatus.LIVE, StreamStatus.UNKNOWN):
                self.watch_video(snapshot.external_id, snapshot.channel_key)

    async def on_stop(self) -> None:
        await self.client.close()
        if self.subscriptions is not None:
            await self.subscriptions.close()

    async def discover_schedules(self) -> None:
        """
        Search tracked channels for upcoming broadcasts.

        Hub notifications announce most new videos; this pass fills the gaps.
        A channel is skipped when its search would leave fewer than
        ``discovery_reserve`` units on the usable keys.
        """
        skipped = 0

        async def discover(channel_id: str) -> None:
            nonlocal skipped
            if self.quota.available_quota - QuotaCost.SEARCH_LIST < self.config.discovery_reserve:
                skipped += 1
                return
            for video_id in await self.client.search_upcoming(channel_id):
                if video_id not in self._watched_videos:
                    self.logger.debug(f"Discovered upcoming video {video_id} on {channel_id}")
                self.watch_video(video_id, channel_id)

        await self.for_each("schedule discovery", self.tracked_channels(), discover)
        if skipped:
            self.logger.warning(
                f"Skipped schedule discovery for {skipped} channel(s), "
                f"{self.quota.available_quota} quota units left (reserve {self.config.discovery_reserve})"
            )

    async def poll_status(self) -> None:
        """Recheck every watched video of a tracked channel."""
        candidates = [
            video_id for video_id, channel_id in self._watched_videos.items()
            if self.is_tracked(channel_id)
        ]
        batch_size = max(1, min(self.config.batch_size, MAX_IDS_PER_CALL))

        await self.for_each("status recheck", list(chunked(candidates, batch_size)), self._check_batch)
        self.passes_completed += 1

    async def _check_batch(self, video_ids: List[str]) -> None:
        items = await self.client.list_videos(video_ids)
        returned = {item["id"] for item in items}

        observations = [observation_from_video(item, self._channel_titles) for item in items]
        for video_id in video_ids:
            if video_id not in returned:
                channel_id = self._watched_videos.get(video_id, "")
                observations.append(RawObservation.missing(self.platform, channel_id, video_id))

        await self.submit(observations)
        self._prune(observations)

    def _prune(self, observations: List[RawObservation]) -> None:
        """Stop rechecking videos that are finished or gone."""
        for observation in observations:
            if observation.not_found or observation.actual_end is not None:
                self._watched_videos.pop(observation.external_id, None)
            elif observation.indicator == LiveIndicator.NONE and observation.actual_start is None:
                # Plain upload, not a broadcast
                self._watched_videos.pop(observation.external_id, None)

    async def refresh_titles(self) -> None:
        async def refresh(channel_ids: List[str]) -> None:
            for item in await self.client.list_channels(channel_ids):
                title = item.get("snippet", {}).get("title")
                if title:
                    self._channel_titles[item["id"]] = title

        await self.for_each(
            "title refresh", list(chunked(self.tracked_channels(), MAX_IDS_PER_CALL)), refresh
        )

    async def handle_notification(self, payload: Dict[str, Any]) -> None:
        """Apply a parsed hub notification: ``{"videoId", "channelId", "deleted"}``."""
        video_id = payload.get("videoId")
        channel_id = payload.get("channelId", "")
        if not video_id:
            self.logger.warning(f"Ignoring YouTube notification without a video id: {payload}")
            return

        if not self.is_tracked(channel_id):
            self.logger.debug(f"Ignoring notification for untracked channel {channel_id}")
            return

        self.notifications_handled += 1

        if payload.get("deleted"):
            self._watched_videos.pop(video_id, None)
            await self.submit([RawObservation.missing(self.platform, channel_id, video_id)])
            return

        self.watch_video(video_id, channel_id)
        await self._check_batch([video_id])
