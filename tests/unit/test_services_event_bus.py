"""
Unit tests for the Redis event bus.
"""

import json
import pytest

from streamwatch.models import StreamEvent, StreamEventType
from streamwatch.services.event_bus import EventBus


def make_event(event_type=StreamEventType.ONLINE, platform="youtube", external_id="v1", **payload):
    return StreamEvent(
        event_type=event_type,
        platform=platform,
        channel_key="UC1" if platform == "youtube" else "alice",
        external_id=external_id,
        payload=payload,
    )


class TestEventBusConnection:
    """Test broker reachability tracking."""

    @pytest.mark.asyncio
    async def test_connect(self, event_bus):
        """Test a successful ping marks the bus connected."""
        assert await event_bus.connect()
        assert event_bus.is_connected

    @pytest.mark.asyncio
    async def test_connect_failure(self, event_bus, fake_redis):
        """Test an unreachable broker is reported, not raised."""
        fake_redis.fail = True

        assert not await event_bus.connect()
        assert not event_bus.is_connected

    @pytest.mark.asyncio
    async def test_close(self, event_bus, fake_redis):
        """Test close releases the client."""
        await event_bus.connect()
        await event_bus.close()

        assert fake_redis.closed
        assert not event_bus.is_connected

    def test_channel_names(self, fake_redis):
        """Test channel derivation from the prefix."""
        bus = EventBus(fake_redis, channel_prefix="live")

        assert bus.channel_for(StreamEventType.ONLINE) == "live.online"
        assert bus.channel_for(StreamEventType.METADATA_CHANGED) == "live.metadata"


class TestEventBusPublish:
    """Test event publishing."""

    @pytest.mark.asyncio
    async def test_publish_single_event(self, event_bus, fake_redis):
        """Test one event becomes one JSON message on its channel."""
        assert await event_bus.publish(make_event(title="Hello"))

        assert len(fake_redis.published) == 1
        channel, raw = fake_redis.published[0]
        message = json.loads(raw)
        assert channel == "streams.online"
        assert message['eventType'] == "Online"
        assert message['externalId'] == "v1"
        assert message['title'] == "Hello"
        assert event_bus.published_count == 1

    @pytest.mark.asyncio
    async def test_publish_failure_drops(self, event_bus, fake_redis):
        """Test a broker failure drops the event and marks the bus down."""
        await event_bus.connect()
        fake_redis.fail = True

        assert not await event_bus.publish(make_event())
        assert event_bus.dropped_count == 1
        assert not event_bus.is_connected

        fake_redis.fail = False
        assert await event_bus.publish(make_event(external_id="v2"))
        assert event_bus.is_connected

    @pytest.mark.asyncio
    async def test_batch_groups_consecutive_runs(self, event_bus, fake_redis):
        """Test adjacent events of one type share a message; single events use the plain format."""
        events = [
            make_event(external_id="v1"),
            make_event(external_id="v2"),
            make_event(StreamEventType.OFFLINE, external_id="v3"),
            make_event(external_id="v4"),
        ]

        delivered = await event_bus.publish_batch(events)

        assert delivered == 4
        online = fake_redis.messages_on("streams.online")
        offline = fake_redis.messages_on("streams.offline")
        assert len(online) == 2
        assert online[0]['isBatch'] is True
        assert [e['externalId'] for e in online[0]['events']] == ["v1", "v2"]
        assert online[1]['externalId'] == "v4"
        assert offline[0]['externalId'] == "v3"
        assert 'isBatch' not in offline[0]
        assert event_bus.batch_count == 1

    @pytest.mark.asyncio
    async def test_batch_keeps_detection_order(self, event_bus, fake_redis):
        """Test a channel's offline is sent before its next online even when another channel went online first."""
        events = [
            make_event(platform="twitch", external_id="a1"),
            make_event(StreamEventType.OFFLINE, platform="twitch", external_id="b-old"),
            make_event(platform="twitch", external_id="b-new"),
        ]

        await event_bus.publish_batch(events)

        order = []
        for channel, message in fake_redis.published:
            data = json.loads(message)
            order.extend(data["events"] if data.get("isBatch") else [data])
        assert [(e["eventType"], e["externalId"]) for e in order] == [
            ("Online", "a1"), ("Offline", "b-old"), ("Online", "b-new"),
        ]

    @pytest.mark.asyncio
    async def test_batch_failure_counts_dropped(self, event_bus, fake_redis):
        """Test a failed batch drops all of its events."""
        fake_redis.fail = True

        delivered = await event_bus.publish_batch([make_event(external_id="a"), make_event(external_id="b")])

        assert delivered == 0
        assert event_bus.dropped_count == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, event_bus, fake_redis):
        """Test an empty batch publishes nothing."""
        assert await event_bus.publish_batch([]) == 0
        assert fake_redis.published == []


class TestRecordingTriggers:
    """Test the recording tool integration."""

    @pytest.mark.asyncio
    async def test_online_triggers_recording(self, fake_redis):
        """Test online events request a recording when enabled."""
        bus = EventBus(fake_redis, record_triggers=True)

        await bus.publish(make_event(external_id="vid123"))
        await bus.publish(make_event(StreamEventType.OFFLINE, external_id="vid123"))

        assert fake_redis.messages_on("youtube.record") == ["vid123"]

    @pytest.mark.asyncio
    async def test_twitch_trigger_uses_login(self, fake_redis):
        """Test Twitch recordings target the channel login."""
        bus = EventBus(fake_redis, record_triggers=True)

        await bus.publish(make_event(platform="twitch", external_id="s1"))

        assert fake_redis.messages_on("twitch.record") == ["alice"]

    @pytest.mark.asyncio
    async def test_triggers_disabled_by_default(self, event_bus, fake_redis):
        """Test no trigger is sent unless enabled."""
        await event_bus.publish(make_event())

        assert fake_redis.messages_on("youtube.record") == []

    @pytest.mark.asyncio
    async def test_check_recording_tool(self, event_bus, fake_redis):
        """Test the recorder check reports whether a recorder is listening."""
        assert await event_bus.check_recording_tool()
        assert fake_redis.published[-1] == ("youtube.test", "ping")

        fake_redis.receivers = 0
        assert not await event_bus.check_recording_tool()

    def test_stats(self, event_bus):
        """Test stats layout."""
        stats = event_bus.get_stats()

        assert stats['published'] == 0
        assert stats['channel_prefix'] == "streams"
