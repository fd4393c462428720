"""Hourly aggregation and historical reads over analysis metrics."""

from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from analysis_ops.core.errors import StoreUnavailableError
from analysis_ops.operations.models import utcnow
from analysis_ops.operations.types import Tier
from analysis_ops.services.metrics.models import (
    ErrorSummaryEntry,
    HistoricalMetrics,
    HourlyMetrics,
    HourlyPoint,
    MetricEvent,
    MetricEventType,
    nearest_rank,
    round_half_up,
)

logger = structlog.get_logger(__name__)

HOUR = timedelta(hours=1)


def summarize_hour(hour_start: datetime, metrics: list[MetricEvent]) -> HourlyMetrics:
    """Aggregate one hour of raw metrics.

    Durations come from success events only; percentiles use the value at
    index floor(n * q) of the sorted list.
    """
    counts = {t: 0 for t in MetricEventType}
    tiers = {t: 0 for t in Tier}
    durations: list[int] = []

    for m in metrics:
        counts[m.event_type] += 1
        if m.event_type == MetricEventType.REQUEST:
            tiers[m.tier] += 1
        elif m.event_type == MetricEventType.SUCCESS and m.duration_ms is not None:
            durations.append(m.duration_ms)

    durations.sort()
    return HourlyMetrics(
        hour_start=hour_start,
        total_requests=counts[MetricEventType.REQUEST],
        successful_requests=counts[MetricEventType.SUCCESS],
        failed_requests=counts[MetricEventType.FAILURE],
        partial_successes=counts[MetricEventType.PARTIAL_SUCCESS],
        retried_requests=counts[MetricEventType.RETRY],
        avg_duration_ms=(
            round_half_up(sum(durations) / len(durations)) if durations else None
        ),
        p50_duration_ms=nearest_rank(durations, 0.5),
        p95_duration_ms=nearest_rank(durations, 0.95),
        p99_duration_ms=nearest_rank(durations, 0.99),
        tier_standard=tiers[Tier.STANDARD],
        tier_medium=tiers[Tier.MEDIUM],
        tier_full=tiers[Tier.FULL],
    )


def summarize_range(hourly: list[HourlyMetrics]) -> HistoricalMetrics:
    """Sum hourly rows; success rate is 100 when there were no requests."""
    result = HistoricalMetrics()
    for h in hourly:
        result.total_requests += h.total_requests
        result.successful_requests += h.successful_requests
        result.failed_requests += h.failed_requests
        result.partial_successes += h.partial_successes
        result.retried_requests += h.retried_requests
        result.by_tier[Tier.STANDARD.value] += h.tier_standard
        result.by_tier[Tier.MEDIUM.value] += h.tier_medium
        result.by_tier[Tier.FULL.value] += h.tier_full
        result.hourly_data.append(
            HourlyPoint(
                hour=h.hour_start,
                requests=h.total_requests,
                successes=h.successful_requests,
                failures=h.failed_requests,
                avg_duration_ms=h.avg_duration_ms,
            )
        )

    averages = [h.avg_duration_ms for h in hourly if h.avg_duration_ms is not None]
    if averages:
        result.avg_duration_ms = round_half_up(sum(averages) / len(averages))

    p95s = [h.p95_duration_ms for h in hourly if h.p95_duration_ms is not None]
    result.p95_duration_ms = nearest_rank(p95s, 0.95)

    if result.total_requests > 0:
        result.success_rate = result.successful_requests / result.total_requests * 100
    return result


class MetricsAggregator:
    """Reads and rolls up persisted analysis metrics."""

    def __init__(self, repository, now_fn: Callable[[], datetime] = utcnow):
        self._repository = repository
        self._now = now_fn

    async def aggregate_hour(self, hour_start: datetime) -> Optional[HourlyMetrics]:
        """Aggregate [hour_start, hour_start + 1h) into one hourly row.

        Returns None, writing nothing, for an empty hour or an unavailable store.
        """
        try:
            metrics = await self._repository.list_between(hour_start, hour_start + HOUR)
            if not metrics:
                return None
            hourly = summarize_hour(hour_start, metrics)
            await self._repository.upsert_hourly(hourly)
        except StoreUnavailableError as e:
            logger.warning(
                "hourly_aggregation_degraded",
                hour_start=hour_start.isoformat(),
                error=str(e),
            )
            return None

        logger.info(
            "hourly_metrics_aggregated",
            hour_start=hour_start.isoformat(),
            total_requests=hourly.total_requests,
            successful_requests=hourly.successful_requests,
        )
        return hourly

    async def run_hourly_aggregation(
        self, now: Optional[datetime] = None
    ) -> Optional[HourlyMetrics]:
        """Aggregate the previous whole hour."""
        now = now or self._now()
        current_hour = now.replace(minute=0, second=0, microsecond=0)
        return await self.aggregate_hour(current_hour - HOUR)

    async def get_historical_metrics(self, start: datetime, end: datetime) -> HistoricalMetrics:
        try:
            hourly = await self._repository.list_hourly(start, end)
        except StoreUnavailableError as e:
            logger.warning("historical_metrics_degraded", error=str(e))
            return HistoricalMetrics()
        return summarize_range(hourly)

    async def get_recent_historical_metrics(self, hours: int = 24) -> HistoricalMetrics:
        end = self._now()
        return await self.get_historical_metrics(end - timedelta(hours=hours), end)

    async def get_recent_raw_metrics(
        self, minutes: int = 60, limit: int = 1000
    ) -> list[MetricEvent]:
        """Raw metrics from the last `minutes`, newest first."""
        end = self._now()
        try:
            return await self._repository.list_between(
                end - timedelta(minutes=minutes),
                end + timedelta(microseconds=1),
                limit=limit,
                newest_first=True,
            )
        except StoreUnavailableError as e:
            logger.warning("raw_metrics_degraded", error=str(e))
            return []

    async def get_error_summary(
        self, start: datetime, end: datetime
    ) -> list[ErrorSummaryEntry]:
        """Failure events grouped by error code, most frequent first."""
        try:
            failures = await self._repository.list_between(
                start, end, event_type=MetricEventType.FAILURE, newest_first=True
            )
        except StoreUnavailableError as e:
            logger.warning("error_summary_degraded", error=str(e))
            return []

        grouped: "OrderedDict[str, ErrorSummaryEntry]" = OrderedDict()
        for m in failures:
            code = m.error_code or "UNKNOWN"
            entry = grouped.get(code)
            if entry is None:
                grouped[code] = ErrorSummaryEntry(code, 1, m.created_at)
            else:
                entry.count += 1
        return sorted(grouped.values(), key=lambda e: e.count, reverse=True)
