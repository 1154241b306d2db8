"""
Unit tests for health aggregation.
"""

import pytest

from streamwatch.lib.health import (
    ComponentHealth, ComponentType, HealthReport, HealthStatus, aggregate_status
)


def component(name, status, channels=0):
    return ComponentHealth(
        component_type=ComponentType.PLATFORM,
        component_name=name,
        status=status,
        message=status.value,
        monitored_channels=channels,
    )


class TestAggregateStatus:
    """Test status folding."""

    @pytest.mark.parametrize("statuses,expected", [
        ([], HealthStatus.UNHEALTHY),
        ([HealthStatus.HEALTHY], HealthStatus.HEALTHY),
        ([HealthStatus.HEALTHY, HealthStatus.HEALTHY], HealthStatus.HEALTHY),
        ([HealthStatus.HEALTHY, HealthStatus.UNHEALTHY], HealthStatus.DEGRADED),
        ([HealthStatus.DEGRADED, HealthStatus.UNHEALTHY], HealthStatus.DEGRADED),
        ([HealthStatus.UNHEALTHY, HealthStatus.UNHEALTHY], HealthStatus.UNHEALTHY),
        ([HealthStatus.UNKNOWN], HealthStatus.UNHEALTHY),
    ])
    def test_aggregation(self, statuses, expected):
        """Test the overall status for each combination."""
        assert aggregate_status(statuses) == expected


class TestHealthReport:
    """Test report construction and serialization."""

    def test_from_components(self):
        """Test channel totals and healthy counts."""
        report = HealthReport.from_components([
            component("youtube", HealthStatus.HEALTHY, channels=3),
            component("twitch", HealthStatus.DEGRADED, channels=2),
        ])

        assert report.status == HealthStatus.DEGRADED
        assert report.monitored_channels == 5
        assert report.healthy_count == 1

    def test_to_dict(self):
        """Test the readiness payload layout."""
        report = HealthReport.from_components([component("youtube", HealthStatus.HEALTHY)])

        data = report.to_dict()

        assert data['overall_status'] == "healthy"
        assert data['components']['total'] == 1
        assert data['components']['details']['youtube']['status'] == "healthy"
