"""
Unit tests for observation, event and tracking models.
"""

import json
import pytest
from datetime import datetime, timezone, timedelta

from pydantic import ValidationError

from streamwatch.models import (
    ChannelWatch, FollowAction, FollowEvent, LiveIndicator, RawObservation,
    StreamEvent, StreamEventType, StreamSnapshot, StreamStatus, WebhookSubscription,
)


class TestRawObservation:
    """Test RawObservation validation."""

    def test_platform_normalized(self):
        """Test platform names are lowercased."""
        obs = RawObservation(platform=" YouTube ", channel_key="UC1", external_id="v1")

        assert obs.platform == "youtube"
        assert obs.indicator == LiveIndicator.NONE
        assert not obs.not_found

    def test_empty_external_id_rejected(self):
        """Test an empty id is invalid."""
        with pytest.raises(ValidationError):
            RawObservation(platform="youtube", channel_key="UC1", external_id="")

    def test_naive_timestamps_become_utc(self):
        """Test naive datetimes are treated as UTC."""
        obs = RawObservation(
            platform="youtube", channel_key="UC1", external_id="v1",
            actual_start=datetime(2024, 1, 1, 10, 0),
        )

        assert obs.actual_start.tzinfo == timezone.utc

    def test_offset_timestamps_converted(self):
        """Test aware datetimes are converted to UTC."""
        plus_two = timezone(timedelta(hours=2))
        obs = RawObservation(
            platform="youtube", channel_key="UC1", external_id="v1",
            scheduled_start=datetime(2024, 1, 1, 12, 0, tzinfo=plus_two),
        )

        assert obs.scheduled_start == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)

    def test_missing(self):
        """Test the not-found constructor."""
        obs = RawObservation.missing("youtube", "UC1", "v1")

        assert obs.not_found
        assert obs.external_id == "v1"

    def test_reports_live_requires_start(self):
        """Test a live indicator alone is not enough."""
        live = RawObservation(platform="youtube", channel_key="UC1", external_id="v1",
                              indicator=LiveIndicator.LIVE)
        assert not live.reports_live

        started = live.model_copy(update={'actual_start': datetime.now(timezone.utc)})
        assert started.reports_live


class TestStreamSnapshot:
    """Test snapshot serialization."""

    def test_to_fields_is_json_ready(self):
        """Test the repository field map serializes cleanly."""
        snapshot = StreamSnapshot(
            platform="youtube", channel_key="UC1", external_id="v1",
            status=StreamStatus.LIVE, actual_start=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

        fields = snapshot.to_fields()

        assert fields['status'] == "live"
        assert fields['actual_start'].startswith("2024-01-01T00:00:00")
        json.dumps(fields)


class TestStreamEvent:
    """Test event wire format."""

    def test_channel_suffixes(self):
        """Test each type maps to its pub/sub channel suffix."""
        assert StreamEventType.ONLINE.channel_suffix == "online"
        assert StreamEventType.OFFLINE.channel_suffix == "offline"
        assert StreamEventType.METADATA_CHANGED.channel_suffix == "metadata"
        assert StreamEventType.SCHEDULE_CHANGED.channel_suffix == "schedule"
        assert StreamEventType.DELETED.channel_suffix == "deleted"

    def test_status_transitions(self):
        """Test which types are dedup keyed."""
        assert StreamEventType.ONLINE.is_status_transition
        assert StreamEventType.DELETED.is_status_transition
        assert not StreamEventType.METADATA_CHANGED.is_status_transition

    def test_to_wire(self):
        """Test camelCase keys and ISO timestamps."""
        detected = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        event = StreamEvent(
            event_type=StreamEventType.OFFLINE,
            platform="youtube",
            channel_key="UC1",
            external_id="v1",
            detected_at=detected,
            payload={
                'title': "Stream",
                'actualEnd': detected,
                'durationSeconds': 3600,
                'eventType': "ignored",
            },
        )

        wire = event.to_wire()

        assert wire['eventType'] == "Offline"
        assert wire['channelKey'] == "UC1"
        assert wire['externalId'] == "v1"
        assert wire['detectedAt'] == detected.isoformat()
        assert wire['actualEnd'] == detected.isoformat()
        assert wire['durationSeconds'] == 3600
        json.dumps(wire)

    def test_dedup_key(self):
        """Test the dedup key identifies the transition."""
        event = StreamEvent(event_type=StreamEventType.ONLINE, platform="twitch",
                            channel_key="alice", external_id="s1")

        assert event.dedup_key == ("twitch", "s1", "Online")


class TestFollowEvent:
    """Test follow-list payload parsing."""

    def test_pascal_case_payload(self):
        """Test the bot's PascalCase field names are accepted."""
        event = FollowEvent.model_validate({
            "Platform": "YouTube",
            "StreamKey": " UC1 ",
            "GuildId": 10,
            "DiscordChannelId": 20,
            "UserId": 30,
        })

        assert event.platform == "youtube"
        assert event.stream_key == "UC1"
        assert event.follower_id == "10:20"
        assert event.action == FollowAction.FOLLOW

    def test_camel_case_and_action(self):
        """Test camelCase names and explicit action."""
        event = FollowEvent.model_validate({
            "platform": "twitch", "streamKey": "alice", "action": "unfollow"
        })

        assert event.action == FollowAction.UNFOLLOW
        assert event.guild_id == 0

    def test_blank_stream_key_rejected(self):
        """Test a blank key is invalid."""
        with pytest.raises(ValidationError):
            FollowEvent.model_validate({"Platform": "twitch", "StreamKey": "  "})


class TestChannelWatch:
    """Test ChannelWatch reference counting."""

    def test_ref_count(self):
        """Test distinct followers and anonymous follows both count."""
        watch = ChannelWatch(platform="YouTube", channel_key="UC1",
                             followers={"1:2", "3:4"}, anonymous_follows=1)

        assert watch.platform == "youtube"
        assert watch.key == ("youtube", "UC1")
        assert watch.ref_count == 3


class TestWebhookSubscription:
    """Test lease renewal arithmetic."""

    def test_renewal_boundary(self):
        """Test renewal is due exactly at lease_seconds - buffer."""
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        sub = WebhookSubscription(platform="youtube", channel_key="UC1", topic="feed",
                                  lease_start=start, lease_seconds=1000)

        assert not sub.is_renewal_due(start + timedelta(seconds=899), 100)
        assert sub.is_renewal_due(start + timedelta(seconds=900), 100)
        assert sub.is_renewal_due(start + timedelta(seconds=901), 100)
        assert sub.expires_at == start + timedelta(seconds=1000)

    def test_non_expiring_lease(self):
        """Test subscriptions without a lease are never due."""
        sub = WebhookSubscription(platform="twitch", channel_key="alice", topic="stream.online")

        assert sub.expires_at is None
        assert not sub.is_renewal_due(datetime.now(timezone.utc) + timedelta(days=365), 0)
