"""
Data models for the stream monitor.

This package contains the observation, snapshot, event, tracking and
credential models shared by all services.
"""

from .stream import (
    StreamStatus,
    LiveIndicator,
    RawObservation,
    StreamSnapshot,
    ensure_utc,
)

from .events import (
    StreamEventType,
    StreamEvent,
    FollowAction,
    FollowEvent,
)

from .tracking import (
    ChannelWatch,
    WebhookSubscription,
    CredentialSlot,
    ApiUsageInfo,
    PlatformMonitorStatus,
)

__all__ = [
    # Stream models
    "StreamStatus",
    "LiveIndicator",
    "RawObservation",
    "StreamSnapshot",
    "ensure_utc",

    # Event models
    "StreamEventType",
    "StreamEvent",
    "FollowAction",
    "FollowEvent",

    # Tracking models
    "ChannelWatch",
    "WebhookSubscription",
    "CredentialSlot",
    "ApiUsageInfo",
    "PlatformMonitorStatus",
]
