"""
Monitoring and observability package.

This package contains notifications, metrics, health and the HTTP surface.
"""

from lpkeeper.monitoring.alerting import (
    EventType,
    NotificationSink,
    NotifierConfig,
    Severity,
    configure_notifications,
    get_notifier,
)
from lpkeeper.monitoring.metrics_rich import RichMetrics
from lpkeeper.monitoring.server import HealthChecker, HealthStatus, start_metrics_server

__all__ = [
    "EventType",
    "NotificationSink",
    "NotifierConfig",
    "Severity",
    "configure_notifications",
    "get_notifier",
    "RichMetrics",
    "HealthChecker",
    "HealthStatus",
    "start_metrics_server",
]
