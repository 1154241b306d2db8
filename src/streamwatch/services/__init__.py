"""
Services package for the stream monitor.

This package contains the event bus, tracking registry, subscription
lifecycle, state reconciliation, platform pollers and the manager that
supervises them.
"""

from .repository import (
    Repository,
    InMemoryRepository,
)

from .event_bus import EventBus

from .tracking import (
    TrackingRegistry,
    FollowEventConsumer,
    FollowEventListener,
)

from .subscriptions import (
    SubscriptionBackend,
    HubSubscriptionBackend,
    PushSubscriptionBackend,
    SubscriptionLifecycleManager,
)

from .reconciler import StateReconciler

from .poller import (
    PlatformPoller,
    PollerState,
)

from .ingress import WebhookIngress

from .manager import MonitorManager

__all__ = [
    # Persistence
    "Repository",
    "InMemoryRepository",

    # Event bus
    "EventBus",

    # Tracking
    "TrackingRegistry",
    "FollowEventConsumer",
    "FollowEventListener",

    # Subscriptions
    "SubscriptionBackend",
    "HubSubscriptionBackend",
    "PushSubscriptionBackend",
    "SubscriptionLifecycleManager",

    # Monitoring
    "StateReconciler",
    "PlatformPoller",
    "PollerState",
    "WebhookIngress",
    "MonitorManager",
]
