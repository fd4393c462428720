"""Best-effort metric recording.

record_metric() never raises into the job pipeline: store problems are
logged and dropped. Prometheus counters are updated alongside the durable
row so scrapes stay live even when the store is down.
"""

from datetime import datetime
from typing import Any, Callable, Optional, Union

import structlog
from prometheus_client import Counter, Histogram

from analysis_ops.core.errors import truncate_error
from analysis_ops.operations.models import utcnow
from analysis_ops.operations.types import Tier
from analysis_ops.services.metrics.models import MetricEvent, MetricEventType

logger = structlog.get_logger(__name__)


# =============================================================================
# Prometheus Metrics
# =============================================================================

ANALYSIS_EVENTS_TOTAL = Counter(
    "analysis_ops_events_total",
    "Analysis metric events recorded",
    ["event_type", "tier"],
)
ANALYSIS_DURATION_SECONDS = Histogram(
    "analysis_ops_duration_seconds",
    "Duration of successful analyses",
    ["tier"],
    buckets=[5, 15, 30, 60, 120, 300, 600, 900, 1800],
)


class MetricsRecorder:
    """Writes analysis metric events to the metrics repository."""

    def __init__(
        self,
        repository=None,
        prometheus_enabled: bool = True,
        error_max_chars: int = 1000,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._prometheus_enabled = prometheus_enabled
        self._error_max_chars = error_max_chars
        self._now = now_fn

    async def record_metric(
        self,
        session_id: str,
        tier: Union[Tier, str],
        event_type: Union[MetricEventType, str],
        duration_ms: Optional[int] = None,
        part_number: Optional[int] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            metric = MetricEvent(
                session_id=session_id,
                tier=Tier(tier),
                event_type=MetricEventType(event_type),
                duration_ms=duration_ms,
                part_number=part_number,
                error_code=error_code,
                error_message=truncate_error(error_message, self._error_max_chars),
                metadata=metadata,
                created_at=self._now(),
            )
        except ValueError as e:
            logger.warning("metric_rejected", session_id=session_id, error=str(e))
            return

        if self._prometheus_enabled:
            ANALYSIS_EVENTS_TOTAL.labels(
                event_type=metric.event_type.value, tier=metric.tier.value
            ).inc()
            if metric.event_type == MetricEventType.SUCCESS and duration_ms is not None:
                ANALYSIS_DURATION_SECONDS.labels(tier=metric.tier.value).observe(
                    duration_ms / 1000
                )

        if self._repository is None:
            return
        try:
            await self._repository.insert(metric)
        except Exception as e:
            logger.warning(
                "metric_record_failed",
                session_id=session_id,
                event_type=metric.event_type.value,
                error=str(e),
            )

    async def record_request(self, session_id: str, tier: Union[Tier, str], **metadata) -> None:
        await self.record_metric(
            session_id, tier, MetricEventType.REQUEST, metadata=metadata or None
        )

    async def record_part_completion(
        self,
        session_id: str,
        tier: Union[Tier, str],
        part_number: int,
        duration_ms: Optional[int] = None,
    ) -> None:
        await self.record_metric(
            session_id,
            tier,
            MetricEventType.PART_COMPLETE,
            duration_ms=duration_ms,
            part_number=part_number,
        )

    async def record_success(
        self, session_id: str, tier: Union[Tier, str], duration_ms: Optional[int] = None
    ) -> None:
        await self.record_metric(
            session_id, tier, MetricEventType.SUCCESS, duration_ms=duration_ms
        )

    async def record_partial_success(
        self,
        session_id: str,
        tier: Union[Tier, str],
        completed_parts: int,
        total_parts: int,
        duration_ms: Optional[int] = None,
    ) -> None:
        await self.record_metric(
            session_id,
            tier,
            MetricEventType.PARTIAL_SUCCESS,
            duration_ms=duration_ms,
            metadata={"completed_parts": completed_parts, "total_parts": total_parts},
        )

    async def record_failure(
        self,
        session_id: str,
        tier: Union[Tier, str],
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        duration_ms: Optional[int] = None,
        part_number: Optional[int] = None,
    ) -> None:
        await self.record_metric(
            session_id,
            tier,
            MetricEventType.FAILURE,
            duration_ms=duration_ms,
            part_number=part_number,
            error_code=error_code,
            error_message=error_message,
        )

    async def record_retry(
        self, session_id: str, tier: Union[Tier, str], retry_count: int
    ) -> None:
        await self.record_metric(
            session_id,
            tier,
            MetricEventType.RETRY,
            metadata={"retry_count": retry_count},
        )
