"""Metric event and aggregate models."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from analysis_ops.operations.models import utcnow
from analysis_ops.operations.types import Tier


class MetricEventType(str, Enum):
    REQUEST = "request"
    PART_COMPLETE = "part_complete"
    SUCCESS = "success"
    FAILURE = "failure"
    RETRY = "retry"
    PARTIAL_SUCCESS = "partial_success"


@dataclass
class MetricEvent:
    """One raw analysis metric row."""

    session_id: str
    tier: Tier
    event_type: MetricEventType
    duration_ms: Optional[int] = None
    part_number: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class HourlyMetrics:
    """Aggregated counts and success durations for one hour."""

    hour_start: datetime
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    partial_successes: int = 0
    retried_requests: int = 0
    avg_duration_ms: Optional[int] = None
    p50_duration_ms: Optional[int] = None
    p95_duration_ms: Optional[int] = None
    p99_duration_ms: Optional[int] = None
    tier_standard: int = 0
    tier_medium: int = 0
    tier_full: int = 0


@dataclass
class HourlyPoint:
    hour: datetime
    requests: int
    successes: int
    failures: int
    avg_duration_ms: Optional[int]


@dataclass
class HistoricalMetrics:
    """Totals over a range of hourly rows."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    partial_successes: int = 0
    retried_requests: int = 0
    success_rate: float = 100.0
    avg_duration_ms: Optional[int] = None
    p95_duration_ms: Optional[int] = None
    by_tier: dict[str, int] = field(
        default_factory=lambda: {t.value: 0 for t in Tier}
    )
    hourly_data: list[HourlyPoint] = field(default_factory=list)


@dataclass
class ErrorSummaryEntry:
    error_code: str
    count: int
    last_occurrence: datetime


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def nearest_rank(sorted_values: list[int], quantile: float) -> Optional[int]:
    """Value at index floor(n * q) of an ascending list."""
    if not sorted_values:
        return None
    index = min(int(math.floor(len(sorted_values) * quantile)), len(sorted_values) - 1)
    return sorted_values[index]
