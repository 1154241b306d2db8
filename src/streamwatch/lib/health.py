"""
Health status types and aggregation.

Pollers report a ComponentHealth snapshot; MonitorManager folds them into an
overall HealthReport consumed by the external readiness endpoint.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Iterable
from enum import Enum
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health status levels."""
    HEALTHY = "healthy"       # All systems operational
    DEGRADED = "degraded"     # Some issues but service functional
    UNHEALTHY = "unhealthy"   # Major issues affecting functionality
    UNKNOWN = "unknown"       # Status cannot be determined


class ComponentType(str, Enum):
    """Types of monitored components."""
    PLATFORM = "platform"
    EVENT_BUS = "event_bus"
    SUBSCRIPTIONS = "subscriptions"
    TRACKING = "tracking"


@dataclass
class ComponentHealth:
    """Health status of a single component."""
    component_type: ComponentType
    component_name: str
    status: HealthStatus
    message: str
    monitored_channels: int = 0
    last_check: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'component_type': self.component_type.value,
            'component_name': self.component_name,
            'status': self.status.value,
            'message': self.message,
            'monitored_channels': self.monitored_channels,
            'last_check': self.last_check.isoformat(),
            'consecutive_failures': self.consecutive_failures,
            'last_error': self.last_error,
            'metadata': self.metadata
        }


def aggregate_status(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """
    Fold component statuses into one.

    All healthy gives HEALTHY, at least one healthy or degraded gives
    DEGRADED, anything else (including no components at all) is UNHEALTHY.
    """
    statuses = list(statuses)
    if not statuses:
        return HealthStatus.UNHEALTHY

    if all(status == HealthStatus.HEALTHY for status in statuses):
        return HealthStatus.HEALTHY

    if any(status in (HealthStatus.HEALTHY, HealthStatus.DEGRADED) for status in statuses):
        return HealthStatus.DEGRADED

    return HealthStatus.UNHEALTHY


@dataclass
class HealthReport:
    """Aggregated health of the whole monitor."""
    status: HealthStatus
    components: List[ComponentHealth] = field(default_factory=list)
    monitored_channels: int = 0
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_components(cls, components: List[ComponentHealth]) -> "HealthReport":
        return cls(
            status=aggregate_status(c.status for c in components),
            components=components,
            monitored_channels=sum(c.monitored_channels for c in components),
        )

    @property
    def healthy_count(self) -> int:
        return sum(1 for c in self.components if c.is_healthy)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'overall_status': self.status.value,
            'checked_at': self.checked_at.isoformat(),
            'monitored_channels': self.monitored_channels,
            'components': {
                'total': len(self.components),
                'healthy': self.healthy_count,
                'details': {c.component_name: c.to_dict() for c in self.components},
            },
        }
