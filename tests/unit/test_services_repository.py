"""
Unit tests for the in-memory repository.
"""

import pytest

from streamwatch.models import ChannelWatch, WebhookSubscription
from streamwatch.services.repository import InMemoryRepository, Repository


def test_satisfies_protocol():
    """Test the in-memory store implements the repository contract."""
    assert isinstance(InMemoryRepository(), Repository)


class TestInMemoryRepository:
    """Test storage operations."""

    @pytest.mark.asyncio
    async def test_tracked_channels_by_platform(self):
        """Test channels are filtered by platform."""
        repository = InMemoryRepository([
            ChannelWatch(platform="youtube", channel_key="UC1"),
            ChannelWatch(platform="twitch", channel_key="alice"),
        ])

        watches = await repository.get_tracked_channels("YouTube")

        assert [w.channel_key for w in watches] == ["UC1"]

    @pytest.mark.asyncio
    async def test_snapshot_upsert_merges(self):
        """Test snapshot fields are merged on upsert."""
        repository = InMemoryRepository()

        await repository.upsert_snapshot("v1", {"status": "live", "title": "A"})
        await repository.upsert_snapshot("v1", {"status": "ended"})

        assert repository.get_snapshot_fields("v1") == {"status": "ended", "title": "A"}
        assert repository.get_snapshot_fields("v2") is None

    @pytest.mark.asyncio
    async def test_subscriptions(self):
        """Test save, list and delete of webhook leases."""
        repository = InMemoryRepository()
        sub = WebhookSubscription(platform="twitch", channel_key="alice", topic="stream.online")

        await repository.save_subscription(sub)

        assert await repository.get_subscription("alice", "stream.online") == sub
        assert await repository.list_subscriptions("twitch") == [sub]
        assert await repository.list_subscriptions("youtube") == []

        await repository.delete_subscription("alice", "stream.online")
        await repository.delete_subscription("alice", "stream.online")
        assert await repository.get_subscription("alice", "stream.online") is None
