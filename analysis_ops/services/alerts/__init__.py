"""Admin alerting - suppression, failure-rate monitoring and notification sinks."""

from analysis_ops.services.alerts.admin import AdminAlerter
from analysis_ops.services.alerts.failure_rate import FailureRateMonitor, FailureRateStats
from analysis_ops.services.alerts.models import Alert, AlertSeverity, AlertType, alert_key
from analysis_ops.services.alerts.notifiers import (
    CompositeNotifier,
    LogNotifier,
    Notifier,
    TelegramNotifier,
    WebhookNotifier,
    build_notifier,
)
from analysis_ops.services.alerts.rate_limit import (
    AlertRateLimiter,
    AlertRateLimitStore,
    InMemoryRateLimitStore,
)

__all__ = [
    # Alerter
    "AdminAlerter",
    "FailureRateMonitor",
    "FailureRateStats",
    # Models
    "Alert",
    "AlertSeverity",
    "AlertType",
    "alert_key",
    # Rate limiting
    "AlertRateLimiter",
    "AlertRateLimitStore",
    "InMemoryRateLimitStore",
    # Sinks
    "Notifier",
    "TelegramNotifier",
    "WebhookNotifier",
    "LogNotifier",
    "CompositeNotifier",
    "build_notifier",
]
