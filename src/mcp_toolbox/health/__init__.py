"""Instance and group health monitoring."""

from .monitor import GroupHealthReport, HealthMonitor, HealthRegistration

__all__ = ["GroupHealthReport", "HealthMonitor", "HealthRegistration"]
