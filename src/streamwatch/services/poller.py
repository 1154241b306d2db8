"""
Platform poller base class.

A poller is a small state machine (stopped -> starting -> running ->
stopping -> stopped). While running it owns a set of independent periodic
loops, each with its own interval. A failed iteration is logged at the loop
boundary and reflected in the poller's health; the loop simply runs again
on its next tick.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from ..lib.config import PlatformConfig
from ..lib.errors import MonitoringError, NoCapacityError, PollerStateError
from ..lib.health import ComponentHealth, ComponentType, HealthStatus
from ..lib.logging import get_app_logger
from ..lib.quota import QuotaManager
from ..lib.retry import RetryPolicyEngine
from ..lib.tasks import PeriodicTask
from ..models import PlatformMonitorStatus, RawObservation, StreamEvent
from .reconciler import StateReconciler
from .subscriptions import SubscriptionLifecycleManager
from .tracking import TrackingRegistry

T = TypeVar('T')


class PollerState(str, Enum):
    """Lifecycle states of a platform poller."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def chunked(items: List[T], size: int) -> Iterable[List[T]]:
    for index in range(0, len(items), size):
        yield items[index:index + size]


class PlatformPoller(ABC):
    """
    Base class for one platform's monitoring loops.

    Subclasses implement the status recheck, title refresh and webhook
    notification handling; the base class supplies the subscription sweep
    and quota window loops, lifecycle management and health reporting.
    """

    platform: str = ""

    def __init__(
        self,
        config: PlatformConfig,
        registry: TrackingRegistry,
        reconciler: StateReconciler,
        retry_engine: Optional[RetryPolicyEngine] = None,
        quota: Optional[QuotaManager] = None,
        subscriptions: Optional[SubscriptionLifecycleManager] = None
    ):
        self.config = config
        self.registry = registry
        self.reconciler = reconciler
        self.retry_engine = retry_engine or RetryPolicyEngine(self.platform, config.retry_config())
        self.quota = quota
        self.subscriptions = subscriptions

        self.logger = get_app_logger(f"pollers.{self.platform}")
        self.logger.set_context(platform=self.platform)

        self._state = PollerState.STOPPED
        self._loops: Dict[str, PeriodicTask] = {}
        self._started_at: Optional[datetime] = None
        self._error_message: Optional[str] = None

        # Statistics
        self.passes_completed = 0
        self.notifications_handled = 0
        self.events_emitted = 0

    @classmethod
    @abstractmethod
    def from_config(
        cls,
        config: PlatformConfig,
        registry: TrackingRegistry,
        reconciler: StateReconciler,
        repository: Any
    ) -> "PlatformPoller":
        """Build a poller with its API client, quota and subscriptions."""

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == PollerState.RUNNING

    @property
    def loops(self) -> Dict[str, PeriodicTask]:
        return dict(self._loops)

    def tracked_channels(self) -> List[str]:
        """Channels worth spending quota on right now."""
        return self.registry.channel_keys(self.platform)

    def is_tracked(self, channel_key: str) -> bool:
        return self.registry.is_tracked(self.platform, channel_key)

    # Lifecycle

    def build_loops(self) -> List[PeriodicTask]:
        """Loops started when the poller enters RUNNING."""
        loops = [
            PeriodicTask(f"{self.platform}-status", self.config.poll_interval, self.poll_status),
            PeriodicTask(f"{self.platform}-titles", self.config.title_interval, self.refresh_titles),
        ]
        if self.subscriptions is not None:
            loops.append(PeriodicTask(
                f"{self.platform}-subscriptions",
                self.config.subscription_interval,
                self.sweep_subscriptions,
            ))
        if self.quota is not None:
            loops.append(PeriodicTask(
                f"{self.platform}-quota",
                self.config.quota_reset_interval,
                self.reset_quota,
                run_immediately=False,
            ))
        return loops

    async def on_start(self) -> None:
        """Open clients before the loops start."""

    async def on_stop(self) -> None:
        """Release clients after the loops stopped."""

    async def start(self) -> None:
        if self._state != PollerState.STOPPED:
            raise PollerStateError(f"Cannot start {self.platform} poller in state {self._state.value}")

        self._state = PollerState.STARTING
        self.logger.info(f"Starting {self.platform} poller")

        try:
            await self.on_start()
            self._loops = {loop.name: loop for loop in self.build_loops()}
            for loop in self._loops.values():
                loop.start()
        except Exception as e:
            self._error_message = str(e)
            self._state = PollerState.STOPPED
            self.logger.error(f"Failed to start {self.platform} poller: {e}")
            for loop in self._loops.values():
                await loop.cancel()
            self._loops = {}
            raise MonitoringError(f"{self.platform} poller startup failed: {e}", cause=e) from e

        self._started_at = datetime.now(timezone.utc)
        self._error_message = None
        self._state = PollerState.RUNNING
        self.logger.info(f"{self.platform} poller running {len(self._loops)} loops for {len(self.tracked_channels())} channels")

    async def stop(self, grace: float = 10.0) -> None:
        """Stop new ticks, wait up to ``grace`` seconds for in-flight work, then release clients."""
        if self._state == PollerState.STOPPED:
            return
        if self._state == PollerState.STOPPING:
            raise PollerStateError(f"{self.platform} poller is already stopping")

        self._state = PollerState.STOPPING
        self.logger.info(f"Stopping {self.platform} poller")

        for loop in self._loops.values():
            loop.request_stop()
        for loop in self._loops.values():
            await loop.wait_stopped(timeout=grace)

        try:
            await self.on_stop()
        finally:
            self._state = PollerState.STOPPED

        runtime = datetime.now(timezone.utc) - self._started_at if self._started_at else None
        self.logger.info(
            f"{self.platform} poller stopped"
            f"{f' after {runtime.total_seconds():.1f} seconds' if runtime else ''}"
        )

    # Loop bodies

    @abstractmethod
    async def poll_status(self) -> None:
        """Recheck the status of every tracked stream."""

    @abstractmethod
    async def refresh_titles(self) -> None:
        """Refresh channel display names and titles."""

    @abstractmethod
    async def handle_notification(self, payload: Dict[str, Any]) -> None:
        """Apply one already-verified webhook payload."""

    async def sweep_subscriptions(self) -> None:
        if self.subscriptions is None:
            return
        await self.subscriptions.sweep(self.tracked_channels())

    async def reset_quota(self) -> None:
        if self.quota is not None:
            self.quota.reset_expired()

    async def force_check_all(self) -> None:
        """Run a status pass now, outside the regular schedule."""
        self.logger.info(f"Forcing {self.platform} status check")
        await self.poll_status()

    async def for_each(
        self,
        operation: str,
        items: List[T],
        func: Callable[[T], Awaitable[Any]]
    ) -> int:
        """
        Run ``func`` for each item, skipping items that fail this cycle.

        Running out of quota ends the pass. If every item failed the pass
        itself is reported as failed. Returns the number of failures.
        """
        failures = 0
        for item in items:
            try:
                await func(item)
            except NoCapacityError:
                self.logger.warning(f"{operation}: no API capacity left, ending pass early")
                raise
            except Exception as e:
                failures += 1
                self.logger.warning(f"{operation}: skipping {item} this cycle: {e}", extra={"operation": operation})

        if items and failures == len(items):
            raise MonitoringError(f"{operation} failed for all {failures} item(s)")
        return failures

    async def submit(self, observations: List[RawObservation]) -> List[StreamEvent]:
        """Reconcile a batch of observations and publish the resulting events."""
        if not observations:
            return []
        events = await self.reconciler.reconcile_many(observations)
        self.events_emitted += len(events)
        return events

    # Status and health

    def get_health(self) -> ComponentHealth:
        loops = list(self._loops.values())
        failing = [loop for loop in loops if loop.is_failing]
        dead = [loop for loop in loops if not loop.is_running]
        consecutive = max((loop.stats.consecutive_failures for loop in loops), default=0)
        last_error = next((loop.stats.last_error for loop in failing if loop.stats.last_error), None)

        if self._state != PollerState.RUNNING:
            status = HealthStatus.UNHEALTHY
            message = f"Poller is {self._state.value}"
            if self._error_message:
                message += f": {self._error_message}"
        elif loops and len(failing) == len(loops):
            status = HealthStatus.UNHEALTHY
            message = "All loops are failing"
        elif failing or dead:
            status = HealthStatus.DEGRADED
            names = [loop.name for loop in failing + dead]
            message = f"Loops not healthy: {', '.join(sorted(set(names)))}"
        elif self.quota is not None and not self.quota.has_capacity:
            status = HealthStatus.DEGRADED
            message = "All credentials exhausted until the quota window resets"
        else:
            status = HealthStatus.HEALTHY
            message = "All loops running"

        return ComponentHealth(
            component_type=ComponentType.PLATFORM,
            component_name=self.platform,
            status=status,
            message=message,
            monitored_channels=self.registry.count(self.platform),
            consecutive_failures=consecutive,
            last_error=last_error or self._error_message,
            metadata={"state": self._state.value},
        )

    def get_status(self) -> PlatformMonitorStatus:
        health = self.get_health()
        metadata: Dict[str, Any] = {
            "passes_completed": self.passes_completed,
            "notifications_handled": self.notifications_handled,
            "events_emitted": self.events_emitted,
            "errors": self.retry_engine.get_error_stats(),
        }
        if self.subscriptions is not None:
            metadata["subscriptions"] = self.subscriptions.get_stats()

        return PlatformMonitorStatus(
            platform=self.platform,
            state=self._state.value,
            health=health.status.value,
            monitored_channels=health.monitored_channels,
            error_message=self._error_message,
            api_usage=self.quota.get_usage_info() if self.quota else None,
            loops={name: loop.to_dict() for name, loop in self._loops.items()},
            metadata=metadata,
        )
