"""Analysis operation lifecycle engine.

Composition root wiring the operation service, retry queue, background
processor, circuit breaker, admin alerting and metrics over one store
backend. The job pipeline reports outcomes here; everything downstream
(retry, alerting, audit) fans out from those two calls.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

import structlog

from analysis_ops.config import Settings
from analysis_ops.core.circuit_breaker import CircuitBreakerRegistry
from analysis_ops.core.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    classify_error,
    truncate_error,
)
from analysis_ops.operations.models import utcnow
from analysis_ops.operations.service import OperationService
from analysis_ops.operations.state_machine import coerce_tier, progress_percentage
from analysis_ops.operations.types import OperationState, Tier, TriggerSource
from analysis_ops.repositories import (
    AdminNotificationRepository,
    AnalysisMetricsRepository,
    InMemoryAdminNotificationRepository,
    InMemoryAnalysisMetricsRepository,
    InMemoryOperationEventRepository,
    InMemoryOperationRepository,
    InMemoryRetryQueueRepository,
    OperationEventRepository,
    OperationRepository,
    RetryQueueRepository,
)
from analysis_ops.services.alerts import (
    AdminAlerter,
    AlertRateLimiter,
    FailureRateMonitor,
    Notifier,
    build_notifier,
)
from analysis_ops.services.metrics import MetricsAggregator, MetricsRecorder
from analysis_ops.services.retry_queue import (
    JobExecutor,
    RetryPriority,
    RetryQueue,
    RetryQueueProcessor,
    RetryStatus,
)

logger = structlog.get_logger(__name__)

EXECUTOR_SERVICE = "job_executor"

GENERIC_FAILURE_MESSAGE = (
    "We were unable to complete your analysis. Our team has been notified "
    "and will follow up."
)

_USER_STATUS = {
    OperationState.INITIALIZED: "pending",
    OperationState.GENERATING: "processing",
    OperationState.PART_COMPLETED: "processing",
    OperationState.PAUSED: "paused",
    OperationState.COMPLETED: "completed",
    OperationState.CANCELLED: "cancelled",
}


@dataclass
class JobStatusView:
    """What the end user may see about a job. Never carries internal errors."""

    session_id: str
    status: str
    progress_percentage: int = 0
    completed_parts: int = 0
    total_parts: int = 0
    message: Optional[str] = None


@dataclass
class EngineRepositories:
    operations: Any
    events: Any
    retry_queue: Any
    admin_notifications: Any
    metrics: Any

    @classmethod
    def postgres(cls, pool) -> "EngineRepositories":
        return cls(
            operations=OperationRepository(pool),
            events=OperationEventRepository(pool),
            retry_queue=RetryQueueRepository(pool),
            admin_notifications=AdminNotificationRepository(pool),
            metrics=AnalysisMetricsRepository(pool),
        )

    @classmethod
    def memory(cls) -> "EngineRepositories":
        events = InMemoryOperationEventRepository()
        return cls(
            operations=InMemoryOperationRepository(events),
            events=events,
            retry_queue=InMemoryRetryQueueRepository(),
            admin_notifications=InMemoryAdminNotificationRepository(),
            metrics=InMemoryAnalysisMetricsRepository(),
        )


class AnalysisEngine:
    """Entry point for the job pipeline and operator tooling."""

    def __init__(
        self,
        settings: Settings,
        repositories: EngineRepositories,
        executor: Optional[JobExecutor] = None,
        notifier: Optional[Notifier] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.repositories = repositories
        self._now = now_fn

        self.alerter = AdminAlerter(
            notifier or build_notifier(settings),
            rate_limiter=AlertRateLimiter(cooldown_s=settings.alert_cooldown_s, now_fn=now_fn),
            repository=repositories.admin_notifications,
            error_max_chars=settings.alert_error_max_chars,
            now_fn=now_fn,
        )
        self.breakers = CircuitBreakerRegistry.from_settings(settings, now_fn=now_fn)
        self.breakers.add_listener(self.alerter.on_circuit_state_change)
        self.failure_monitor = FailureRateMonitor.from_settings(
            settings, alerter=self.alerter, now_fn=now_fn
        )

        self.metrics = MetricsRecorder(
            repositories.metrics,
            prometheus_enabled=settings.metrics_enabled,
            error_max_chars=settings.retry_error_max_chars,
            now_fn=now_fn,
        )
        self.aggregator = MetricsAggregator(repositories.metrics, now_fn=now_fn)
        self.operations = OperationService(
            repositories.operations,
            repositories.events,
            error_max_chars=settings.retry_error_max_chars,
            now_fn=now_fn,
        )
        self.retry_queue = RetryQueue.from_settings(
            repositories.retry_queue, settings, alerter=self.alerter, now_fn=now_fn
        )

        self.processor: Optional[RetryQueueProcessor] = None
        if executor is not None:
            self.processor = RetryQueueProcessor(
                self.retry_queue,
                executor,
                settings,
                operations=self.operations,
                metrics=self.metrics,
                failure_monitor=self.failure_monitor,
                breaker=self.executor_breaker,
            )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        executor: Optional[JobExecutor] = None,
        pool=None,
        notifier: Optional[Notifier] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> "AnalysisEngine":
        """Build an engine for the configured backend.

        For the postgres backend a None pool runs the engine in degraded
        mode: every store call degrades instead of raising.
        """
        if settings.store_backend == "memory":
            repositories = EngineRepositories.memory()
        else:
            repositories = EngineRepositories.postgres(pool)
        return cls(settings, repositories, executor=executor, notifier=notifier, now_fn=now_fn)

    @property
    def executor_breaker(self):
        return self.breakers.get(EXECUTOR_SERVICE)

    # =========================================================================
    # Job outcome reporting
    # =========================================================================

    async def report_job_success(
        self,
        session_id: str,
        tier: Union[Tier, str],
        duration_ms: Optional[int] = None,
    ) -> None:
        """Record a successful job run from the pipeline."""
        tier = coerce_tier(tier)
        await self.metrics.record_success(session_id, tier, duration_ms)
        self.failure_monitor.record(True)
        self.executor_breaker.record_success()
        logger.info(
            "job_succeeded", session_id=session_id, tier=tier.value, duration_ms=duration_ms
        )

    async def report_job_failure(
        self,
        session_id: str,
        tier: Union[Tier, str],
        problem_statement: str,
        error: Union[BaseException, str],
        email: Optional[str] = None,
        priority: Union[RetryPriority, int] = RetryPriority.MEDIUM,
    ) -> bool:
        """Record a failed job run and route it to retry or escalation.

        Returns True if a retry was enqueued.
        """
        tier = coerce_tier(tier)
        exc = error if isinstance(error, BaseException) else RuntimeError(error)
        classified = classify_error(exc, {"session_id": session_id, "tier": tier.value})

        await self.metrics.record_failure(
            session_id, tier, classified.code, classified.message
        )
        self.failure_monitor.record(False, classified.message)
        self.executor_breaker.record_failure(classified.message)
        await self._fail_tracked_operation(session_id, classified.code, classified.message)

        logger.warning(
            "job_failed",
            session_id=session_id,
            tier=tier.value,
            category=classified.category.value,
            retryable=classified.is_retryable,
            error=classified.message,
        )

        if not classified.is_retryable:
            await self.alerter.alert_critical_error(
                "Non-retryable Job Failure",
                f"Session {session_id} failed with a non-retryable error and was not queued.",
                {
                    "session_id": session_id,
                    "tier": tier.value,
                    "error_code": classified.code,
                    "error": truncate_error(
                        classified.message, self.settings.alert_error_max_chars
                    ),
                },
            )
            return False

        return await self.retry_queue.enqueue(
            session_id, tier, problem_statement, email=email, priority=priority
        )

    async def _fail_tracked_operation(
        self, session_id: str, error_code: str, error_message: str
    ) -> None:
        op = await self.operations.get_operation_by_session(session_id)
        if op is None or op.state != OperationState.GENERATING:
            return
        try:
            await self.operations.fail_operation(
                op, error_code, error_message, triggered_by=TriggerSource.SYSTEM
            )
        except (InvalidTransitionError, ConcurrentModificationError) as e:
            logger.warning("job_failure_operation_skipped", session_id=session_id, error=str(e))

    # =========================================================================
    # Read views
    # =========================================================================

    async def user_facing_status(self, session_id: str) -> Optional[JobStatusView]:
        """End-user status: retrying reads as processing, exhaustion as a generic failure."""
        op = await self.operations.get_operation_by_session(session_id)
        item = await self.retry_queue.get_item(session_id)
        if op is None and item is None:
            return None

        retrying = item is not None and item.status.is_active
        if retrying:
            status = "processing"
        elif op is None:
            status = "failed" if item.status == RetryStatus.FAILED else item.status.value
        elif op.state == OperationState.FAILED:
            status = "failed"
        else:
            status = _USER_STATUS[op.state]

        view = JobStatusView(session_id=session_id, status=status)
        if op is not None:
            view.completed_parts = op.completed_parts
            view.total_parts = op.total_parts
            view.progress_percentage = progress_percentage(op.completed_parts, op.total_parts)
        if status == "failed":
            view.message = GENERIC_FAILURE_MESSAGE
        return view

    async def health(self) -> dict[str, Any]:
        """Snapshot for operator dashboards."""
        stats = await self.retry_queue.get_stats()
        rate = self.failure_monitor.get_stats()
        return {
            "processor_running": bool(self.processor and self.processor.is_running),
            "circuits": self.breakers.get_circuit_status(),
            "retry_queue": stats.to_dict(),
            "failure_rate": {
                "requests": rate.requests,
                "failures": rate.failures,
                "failure_rate": round(rate.failure_rate, 2),
                "window_minutes": rate.window_minutes,
            },
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self.processor is not None:
            await self.processor.start()

    async def stop(self, timeout: float = 30.0) -> None:
        if self.processor is not None:
            await self.processor.stop(timeout=timeout)
        await self.alerter.drain()
