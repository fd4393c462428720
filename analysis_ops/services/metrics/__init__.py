"""Analysis metrics persistence and aggregation."""

from analysis_ops.services.metrics.aggregation import MetricsAggregator
from analysis_ops.services.metrics.models import (
    ErrorSummaryEntry,
    HistoricalMetrics,
    HourlyMetrics,
    MetricEvent,
    MetricEventType,
)
from analysis_ops.services.metrics.recorder import MetricsRecorder

__all__ = [
    "MetricsAggregator",
    "MetricsRecorder",
    "ErrorSummaryEntry",
    "HistoricalMetrics",
    "HourlyMetrics",
    "MetricEvent",
    "MetricEventType",
]
