"""
Concrete platform pollers.
"""

from typing import Dict, Type

from ...lib.config import ConfigurationError, PlatformConfig
from ..poller import PlatformPoller
from ..reconciler import StateReconciler
from ..repository import Repository
from ..tracking import TrackingRegistry
from .twitch import TwitchApiClient, TwitchPoller
from .youtube import YouTubeApiClient, YouTubePoller

POLLER_CLASSES: Dict[str, Type[PlatformPoller]] = {
    "youtube": YouTubePoller,
    "twitch": TwitchPoller,
}


def build_poller(
    config: PlatformConfig,
    registry: TrackingRegistry,
    reconciler: StateReconciler,
    repository: Repository
) -> PlatformPoller:
    """Create the poller for ``config.platform`` with its clients wired in."""
    poller_class = POLLER_CLASSES.get(config.platform)
    if poller_class is None:
        raise ConfigurationError(f"No poller available for platform: {config.platform}")
    return poller_class.from_config(config, registry, reconciler, repository)


__all__ = [
    "POLLER_CLASSES",
    "build_poller",
    "TwitchApiClient",
    "TwitchPoller",
    "YouTubeApiClient",
    "YouTubePoller",
]
