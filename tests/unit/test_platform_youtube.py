"""
Unit tests for the YouTube client and poller.
"""

import logging
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

from streamwatch.lib.config import PlatformConfig
from streamwatch.lib.errors import ApiResponseError, NoCapacityError, PollerStateError
from streamwatch.lib.quota import QuotaManager
from streamwatch.lib.retry import RetryConfig, RetryPolicyEngine
from streamwatch.models import LiveIndicator, StreamSnapshot, StreamStatus
from streamwatch.services.platforms.youtube import (
    YouTubeApiClient, YouTubePoller, observation_from_video, parse_timestamp
)
from tests.helpers import FakeResponse, FakeSession


def video(video_id="v1", channel="UC1", broadcast="live", start="2024-05-01T18:00:00Z",
          end=None, scheduled=None, title="Stream"):
    details = {}
    if scheduled:
        details["scheduledStartTime"] = scheduled
    if start:
        details["actualStartTime"] = start
    if end:
        details["actualEndTime"] = end
    return {
        "id": video_id,
        "snippet": {
            "channelId": channel,
            "channelTitle": "Channel",
            "title": title,
            "liveBroadcastContent": broadcast,
        },
        "liveStreamingDetails": details,
    }


class TestParsing:
    """Test API payload parsing."""

    def test_parse_timestamp(self):
        """Test RFC 3339 timestamps with a Z suffix."""
        assert parse_timestamp("2024-05-01T18:00:00Z") == datetime(2024, 5, 1, 18, tzinfo=timezone.utc)
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_observation_from_live_video(self):
        """Test a live video item."""
        obs = observation_from_video(video())

        assert obs.platform == "youtube"
        assert obs.channel_key == "UC1"
        assert obs.indicator == LiveIndicator.LIVE
        assert obs.reports_live
        assert obs.category is None
        assert obs.channel_title == "Channel"

    def test_observation_uses_refreshed_channel_title(self):
        """Test cached channel titles win over the snippet."""
        obs = observation_from_video(video(), {"UC1": "Renamed"})

        assert obs.channel_title == "Renamed"

    def test_unknown_broadcast_content(self):
        """Test unexpected liveBroadcastContent values map to none."""
        obs = observation_from_video(video(broadcast="premiere", start=None))

        assert obs.indicator == LiveIndicator.NONE


class TestYouTubeApiClient:
    """Test quota-aware requests."""

    def make_client(self, *responses, credentials=("key-a", "key-b")):
        session = FakeSession(list(responses))
        quota = QuotaManager(list(credentials), quota_limit=10000)
        engine = RetryPolicyEngine("youtube", RetryConfig(max_attempts=3), sleep=AsyncMock())
        return YouTubeApiClient(quota, engine, session=session), session, quota

    @pytest.mark.asyncio
    async def test_list_videos_records_usage(self):
        """Test a successful call spends one unit on the selected key."""
        client, session, quota = self.make_client(FakeResponse(200, json_data={"items": [video()]}))

        items = await client.list_videos(["v1", "v2"])

        assert [item["id"] for item in items] == ["v1"]
        params = session.calls[0][2]["params"]
        assert params["id"] == "v1,v2"
        assert params["key"] == "key-a"
        assert quota.get_usage_info().used_quota == 1

    @pytest.mark.asyncio
    async def test_quota_error_switches_key(self):
        """Test an upstream quota error exhausts the key and retries with another."""
        quota_error = {"error": {"message": "Quota exceeded", "errors": [{"reason": "quotaExceeded"}]}}
        client, session, quota = self.make_client(
            FakeResponse(403, json_data=quota_error),
            FakeResponse(200, json_data={"items": []}),
        )

        assert await client.list_videos(["v1"]) == []

        assert [call[2]["params"]["key"] for call in session.calls] == ["key-a", "key-b"]
        assert quota.slots[0].exhausted
        assert not quota.slots[1].exhausted

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        """Test a 404 fails after one request."""
        body = {"error": {"message": "Not found", "errors": [{"reason": "notFound"}]}}
        client, session, _ = self.make_client(FakeResponse(404, json_data=body))

        with pytest.raises(ApiResponseError) as exc_info:
            await client.list_videos(["v1"])

        assert exc_info.value.status == 404
        assert exc_info.value.reason == "notFound"
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_no_capacity_makes_no_request(self):
        """Test exhausted credentials fail before any HTTP call."""
        client, session, quota = self.make_client(credentials=("key-a",))
        quota.mark_exhausted(quota.slots[0])

        with pytest.raises(NoCapacityError):
            await client.list_videos(["v1"])

        assert session.calls == []

    @pytest.mark.asyncio
    async def test_closed_client_does_not_reopen(self):
        """Test a request after close fails instead of opening a new session."""
        quota = QuotaManager(["key-a"])
        engine = RetryPolicyEngine("youtube", RetryConfig(max_attempts=3), sleep=AsyncMock())
        client = YouTubeApiClient(quota, engine)
        await client.start()
        await client.close()

        with pytest.raises(PollerStateError):
            await client.list_videos(["v1"])

        assert client._session is None
        assert quota.get_usage_info().used_quota == 0

    @pytest.mark.asyncio
    async def test_closed_client_makes_no_request(self):
        """Test an injected session is not used once the client is closed."""
        client, session, _ = self.make_client(FakeResponse(200, json_data={"items": []}))
        await client.close()

        with pytest.raises(PollerStateError):
            await client.list_videos(["v1"])
        assert session.calls == []

        await client.start()
        assert await client.list_videos(["v1"]) == []

    @pytest.mark.asyncio
    async def test_search_upcoming_cost(self):
        """Test search calls cost one hundred units."""
        client, session, quota = self.make_client(FakeResponse(200, json_data={
            "items": [{"id": {"videoId": "up1"}}, {"id": {"channelId": "UC1"}}]
        }))

        assert await client.search_upcoming("UC1") == ["up1"]
        assert session.calls[0][2]["params"]["eventType"] == "upcoming"
        assert quota.get_usage_info().used_quota == 100

    @pytest.mark.asyncio
    async def test_empty_lookups_skip_request(self):
        """Test empty id lists make no call."""
        client, session, _ = self.make_client()

        assert await client.list_videos([]) == []
        assert await client.list_channels([]) == []
        assert session.calls == []


@pytest.fixture
def client():
    mock = Mock()
    mock.quota = QuotaManager(["key-a"], quota_limit=10000)
    mock.start = AsyncMock()
    mock.close = AsyncMock()
    mock.list_videos = AsyncMock(return_value=[])
    mock.search_upcoming = AsyncMock(return_value=[])
    mock.list_channels = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def poller(youtube_config, registry, reconciler, client):
    return YouTubePoller(youtube_config, registry, reconciler, client)


class TestYouTubePoller:
    """Test YouTube polling passes."""

    @pytest.mark.asyncio
    async def test_live_then_deleted(self, poller, registry, client, fake_redis):
        """Test a watched video goes online and is later reported deleted."""
        await registry.add_follow("youtube", "UC1", "1:2")
        poller.watch_video("v1", "UC1")
        client.list_videos.return_value = [video()]

        await poller.poll_status()

        assert fake_redis.messages_on("streams.online")[0]["externalId"] == "v1"
        assert "v1" in poller.watched_videos

        client.list_videos.return_value = []
        await poller.poll_status()

        assert fake_redis.messages_on("streams.deleted")[0]["externalId"] == "v1"
        assert "v1" not in poller.watched_videos
        assert poller.passes_completed == 2

    @pytest.mark.asyncio
    async def test_ended_video_pruned(self, poller, registry, client, fake_redis):
        """Test ended broadcasts publish Offline and stop being rechecked."""
        await registry.add_follow("youtube", "UC1")
        poller.watch_video("v1", "UC1")
        client.list_videos.return_value = [video()]
        await poller.poll_status()

        client.list_videos.return_value = [video(broadcast="none", end="2024-05-01T19:30:00Z")]
        await poller.poll_status()

        assert fake_redis.messages_on("streams.offline")[0]["durationSeconds"] == 5400
        assert poller.watched_videos == {}

    @pytest.mark.asyncio
    async def test_untracked_channel_skipped(self, poller, client):
        """Test videos of unfollowed channels cost no quota."""
        poller.watch_video("v1", "UC404")

        await poller.poll_status()

        client.list_videos.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_batches_respect_size(self, registry, reconciler, client):
        """Test ids are split into batches of the configured size."""
        config = PlatformConfig(platform="youtube", batch_size=2, debounce_seconds=0.05)
        poller = YouTubePoller(config, registry, reconciler, client)
        await registry.add_follow("youtube", "UC1")
        for index in range(5):
            poller.watch_video(f"v{index}", "UC1")
        client.list_videos.return_value = []

        await poller.poll_status()

        assert [len(c.args[0]) for c in client.list_videos.await_args_list] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_discover_schedules(self, poller, registry, client):
        """Test upcoming broadcasts are added to the watch list."""
        await registry.add_follow("youtube", "UC1")
        client.search_upcoming.return_value = ["up1"]

        await poller.discover_schedules()

        client.search_upcoming.assert_awaited_once_with("UC1")
        assert poller.watched_videos == {"up1": "UC1"}

    @pytest.mark.asyncio
    async def test_discovery_keeps_status_reserve(self, poller, registry, client, caplog):
        """Test searches stop once they would eat into the recheck reserve."""
        await registry.add_follow("youtube", "UC1")
        await registry.add_follow("youtube", "UC2")
        client.quota.record_usage(client.quota.select_slot(), 7950)

        with caplog.at_level(logging.WARNING):
            await poller.discover_schedules()

        client.search_upcoming.assert_not_awaited()
        assert any("Skipped schedule discovery for 2" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_discovery_above_reserve(self, poller, registry, client):
        """Test searches run while enough units remain."""
        await registry.add_follow("youtube", "UC1")
        client.quota.record_usage(client.quota.select_slot(), 7900)

        await poller.discover_schedules()

        client.search_upcoming.assert_awaited_once_with("UC1")

    @pytest.mark.asyncio
    async def test_refresh_titles(self, poller, registry, client, fake_redis):
        """Test refreshed channel names appear in later events."""
        await registry.add_follow("youtube", "UC1")
        client.list_channels.return_value = [{"id": "UC1", "snippet": {"title": "Fresh Name"}}]
        await poller.refresh_titles()

        poller.watch_video("v1", "UC1")
        client.list_videos.return_value = [video()]
        await poller.poll_status()

        assert fake_redis.messages_on("streams.online")[0]["channelTitle"] == "Fresh Name"

    @pytest.mark.asyncio
    async def test_notification_for_untracked_channel(self, poller, client):
        """Test notifications for unfollowed channels are ignored."""
        await poller.handle_notification({"videoId": "v1", "channelId": "UC404"})

        client.list_videos.assert_not_awaited()
        assert poller.notifications_handled == 0

    @pytest.mark.asyncio
    async def test_notification_checks_video(self, poller, registry, client, fake_redis):
        """Test a new-video notification triggers an immediate check."""
        await registry.add_follow("youtube", "UC1")
        client.list_videos.return_value = [video()]

        await poller.handle_notification({"videoId": "v1", "channelId": "UC1"})

        client.list_videos.assert_awaited_once_with(["v1"])
        assert len(fake_redis.messages_on("streams.online")) == 1

    @pytest.mark.asyncio
    async def test_deleted_notification(self, poller, registry, client, fake_redis):
        """Test a deleted entry publishes Deleted for a known video."""
        await registry.add_follow("youtube", "UC1")
        client.list_videos.return_value = [video()]
        await poller.handle_notification({"videoId": "v1", "channelId": "UC1"})

        await poller.handle_notification({"videoId": "v1", "channelId": "UC1", "deleted": True})

        assert len(fake_redis.messages_on("streams.deleted")) == 1
        assert "v1" not in poller.watched_videos

    @pytest.mark.asyncio
    async def test_on_start_restores_watch_list(self, poller, reconciler, client):
        """Test unfinished snapshots are rechecked after a restart."""
        for external_id, status in (("s1", StreamStatus.SCHEDULED), ("s2", StreamStatus.ENDED)):
            reconciler.load_snapshot(StreamSnapshot(
                platform="youtube", channel_key="UC1", external_id=external_id, status=status
            ))

        await poller.on_start()

        client.start.assert_awaited_once()
        assert poller.watched_videos == {"s1": "UC1"}

    def test_build_loops(self, poller):
        """Test the schedule loop is added."""
        names = {loop.name for loop in poller.build_loops()}

        assert names == {"youtube-status", "youtube-titles", "youtube-quota", "youtube-schedule"}


class TestFromConfig:
    """Test construction from settings."""

    def test_with_callback(self, registry, reconciler, repository):
        """Test a callback URL enables hub subscriptions."""
        config = PlatformConfig(platform="youtube", credentials=["a", "b"],
                                callback_url="https://example.org/hook")

        poller = YouTubePoller.from_config(config, registry, reconciler, repository)

        assert poller.subscriptions is not None
        assert poller.subscriptions.platform == "youtube"
        assert len(poller.quota.slots) == 2

    def test_polling_only(self, registry, reconciler, repository):
        """Test no subscriptions without a callback URL."""
        config = PlatformConfig(platform="youtube", credentials=["a"])

        poller = YouTubePoller.from_config(config, registry, reconciler, repository)

        assert poller.subscriptions is None
