"""
Monitor manager.

Owns the state shared between platforms (recently-seen transition keys,
the tracking registry, the reconciler and its debounce aggregators),
registers one poller per enabled platform, starts and stops them together
and aggregates their health.
"""

import asyncio
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional

from ..lib.config import ConfigurationManager, ServiceConfig
from ..lib.dedup import RecentlySeen
from ..lib.errors import EventBusError, MonitoringError
from ..lib.health import ComponentHealth, ComponentType, HealthReport, HealthStatus
from ..lib.tasks import PeriodicTask
from .event_bus import EventBus
from .ingress import WebhookIngress
from .platforms import build_poller
from .poller import PlatformPoller, PollerState
from .reconciler import StateReconciler
from .repository import InMemoryRepository, Repository
from .tracking import FollowEventConsumer, FollowEventListener, TrackingRegistry

logger = logging.getLogger(__name__)


class MonitorManager:
    """
    Supervises every platform poller.

    Shutdown order: pollers stop scheduling new ticks and finish in-flight
    work, then the follow and webhook consumers drain, pending metadata
    batches are flushed and finally the event bus is closed.
    """

    def __init__(
        self,
        event_bus: EventBus,
        repository: Optional[Repository] = None,
        service_config: Optional[ServiceConfig] = None,
        follow_listener: bool = True
    ):
        self.event_bus = event_bus
        self.repository = repository or InMemoryRepository()
        self.service_config = service_config or ServiceConfig()
        cfg = self.service_config

        self.recent = RecentlySeen(max_size=cfg.dedup_capacity, ttl_seconds=cfg.dedup_ttl)
        self.registry = TrackingRegistry()
        self.reconciler = StateReconciler(
            event_bus,
            self.recent,
            repository=self.repository,
            snapshot_capacity=cfg.snapshot_capacity,
            snapshot_ttl=cfg.snapshot_ttl,
        )
        self.ingress = WebhookIngress()
        self.follow_consumer = FollowEventConsumer(self.registry)
        self.follow_listener: Optional[FollowEventListener] = None
        if follow_listener:
            self.follow_listener = FollowEventListener(
                event_bus.client, self.follow_consumer, key_prefix=cfg.key_prefix
            )

        self._pollers: Dict[str, PlatformPoller] = {}
        self._health_loop: Optional[PeriodicTask] = None
        self._last_report: Optional[HealthReport] = None
        self._is_running = False
        self._start_time: Optional[datetime] = None

    @classmethod
    def from_config(
        cls,
        config: ConfigurationManager,
        repository: Optional[Repository] = None,
        event_bus: Optional[EventBus] = None
    ) -> "MonitorManager":
        """Build a manager with one poller per enabled platform."""
        service_config = config.get_service_config()
        bus = event_bus or EventBus.from_url(
            service_config.redis_url,
            channel_prefix=service_config.channel_prefix,
            record_triggers=service_config.record_triggers,
        )
        manager = cls(bus, repository=repository, service_config=service_config)

        for platform in config.enabled_platforms():
            platform_config = config.get_platform_config(platform)
            manager.register_poller(build_poller(
                platform_config, manager.registry, manager.reconciler, manager.repository
            ))

        return manager

    @property
    def pollers(self) -> Dict[str, PlatformPoller]:
        return dict(self._pollers)

    @property
    def is_running(self) -> bool:
        return self._is_running

    def get_poller(self, platform: str) -> Optional[PlatformPoller]:
        return self._pollers.get(platform.lower())

    def register_poller(self, poller: PlatformPoller) -> None:
        if poller.platform in self._pollers:
            raise MonitoringError(f"A poller for {poller.platform} is already registered")

        self._pollers[poller.platform] = poller
        self.ingress.register(poller)
        self.reconciler.set_debounce_window(poller.platform, poller.config.debounce_seconds)
        if poller.subscriptions is not None:
            self.registry.add_listener(poller.subscriptions)
        logger.info(f"Registered {poller.platform} poller")

    async def load_tracked_channels(self) -> int:
        """Seed the registry from the repository."""
        loaded = 0
        for platform in self._pollers:
            watches = await self.repository.get_tracked_channels(platform)
            loaded += self.registry.load(watches)
        logger.info(f"Loaded {loaded} tracked channels")
        return loaded

    async def start(self) -> None:
        if self._is_running:
            logger.warning("Monitor already running")
            return

        logger.info(f"Starting monitor with {len(self._pollers)} platform(s)")

        if not await self.event_bus.connect():
            logger.warning("Starting without a reachable event bus, events will be dropped until it recovers")

        await self.load_tracked_channels()

        self.follow_consumer.start()
        self.ingress.start()
        if self.follow_listener is not None:
            try:
                await self.follow_listener.start()
            except EventBusError as e:
                logger.error(f"Follow listener failed to start, follow changes will not be applied: {e}")

        for poller in self._pollers.values():
            try:
                await poller.start()
            except MonitoringError as e:
                logger.error(f"{poller.platform} poller did not start: {e}")

        self._health_loop = PeriodicTask(
            "health-check", self.service_config.health_check_interval, self.check_health,
            run_immediately=False,
        )
        self._health_loop.start()

        self._is_running = True
        self._start_time = datetime.now(timezone.utc)
        logger.info("Monitor started")

    async def stop(self) -> None:
        if not self._is_running:
            return

        logger.info("Stopping monitor")
        grace = self.service_config.shutdown_grace

        if self._health_loop is not None:
            self._health_loop.request_stop()
            await self._health_loop.wait_stopped(timeout=grace)
            self._health_loop = None

        # Queued follows and webhooks still need the pollers' clients
        if self.follow_listener is not None:
            await self.follow_listener.stop()
        await self.follow_consumer.stop(drain=True)
        await self.ingress.stop(drain=True)

        await asyncio.gather(
            *(poller.stop(grace) for poller in self._pollers.values()),
            return_exceptions=True,
        )

        flushed = await self.reconciler.flush_pending()
        if flushed:
            logger.info(f"Flushed {flushed} pending metadata batch(es)")

        await self.event_bus.close()

        self._is_running = False
        runtime = datetime.now(timezone.utc) - self._start_time if self._start_time else timedelta(0)
        logger.info(f"Monitor stopped after {runtime.total_seconds():.1f} seconds")

    async def run_until(self, stop_event: asyncio.Event) -> None:
        """Start, wait for ``stop_event`` and stop."""
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    async def restart_poller(self, platform: str) -> bool:
        poller = self.get_poller(platform)
        if poller is None:
            logger.warning(f"No poller registered for {platform}")
            return False

        logger.info(f"Restarting {platform} poller")
        await poller.stop(self.service_config.shutdown_grace)
        try:
            await poller.start()
        except MonitoringError as e:
            logger.error(f"{platform} poller failed to restart: {e}")
            return False
        return True

    async def force_check_all(self) -> Dict[str, bool]:
        """Run an immediate status pass on every running poller."""
        results: Dict[str, bool] = {}
        for platform, poller in self._pollers.items():
            if not poller.is_running:
                results[platform] = False
                continue
            try:
                await poller.force_check_all()
                results[platform] = True
            except Exception as e:
                logger.error(f"Forced check for {platform} failed: {e}")
                results[platform] = False
        return results

    def _event_bus_health(self) -> ComponentHealth:
        connected = self.event_bus.is_connected
        return ComponentHealth(
            component_type=ComponentType.EVENT_BUS,
            component_name="event_bus",
            status=HealthStatus.HEALTHY if connected else HealthStatus.UNHEALTHY,
            message="Broker reachable" if connected else "Broker unreachable, events are being dropped",
            metadata=self.event_bus.get_stats(),
        )

    def get_overall_health(self) -> HealthReport:
        """Aggregate health of every poller and the event bus."""
        components: List[ComponentHealth] = [poller.get_health() for poller in self._pollers.values()]
        components.append(self._event_bus_health())

        report = HealthReport.from_components(components)
        report.monitored_channels = sum(
            c.monitored_channels for c in components if c.component_type == ComponentType.PLATFORM
        )
        return report

    async def check_health(self) -> HealthReport:
        """Periodic health pass; also evicts stale snapshots."""
        self.reconciler.evict_expired()

        report = self.get_overall_health()
        previous = self._last_report.status if self._last_report else None
        self._last_report = report

        if report.status != previous:
            level = logging.INFO if report.status == HealthStatus.HEALTHY else logging.WARNING
            logger.log(level, f"Monitor health is {report.status.value} ({report.healthy_count}/{len(report.components)} healthy)")

        for component in report.components:
            if component.status == HealthStatus.UNHEALTHY and component.component_type == ComponentType.PLATFORM:
                poller = self._pollers.get(component.component_name)
                if poller is not None and poller.state == PollerState.RUNNING:
                    logger.warning(f"{component.component_name}: {component.message}")

        return report

    @property
    def last_health_report(self) -> Optional[HealthReport]:
        return self._last_report

    def get_status(self) -> Dict[str, Any]:
        runtime = datetime.now(timezone.utc) - self._start_time if self._start_time else timedelta(0)
        return {
            "service": {
                "is_running": self._is_running,
                "uptime_seconds": runtime.total_seconds(),
            },
            "platforms": {
                platform: poller.get_status().model_dump(mode="json")
                for platform, poller in self._pollers.items()
            },
            "tracking": {
                "channels": self.registry.count(),
                "follow_backlog": self.follow_consumer.backlog,
            },
            "reconciler": self.reconciler.get_stats(),
            "event_bus": self.event_bus.get_stats(),
            "dedup": {
                "entries": len(self.recent),
                "suppressed": self.recent.duplicates_suppressed,
            },
        }
