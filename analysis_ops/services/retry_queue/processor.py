"""Background retry queue processor.

Runs one iteration immediately on start and then every interval. Each
iteration claims at most one due item, re-invokes the job executor and
routes the outcome back into the queue, the operation log, the failure-rate
monitor and the circuit breaker. Nothing raised inside an iteration stops
the loop.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog
from prometheus_client import Counter, Gauge

from analysis_ops.config import Settings
from analysis_ops.core.errors import classify_error
from analysis_ops.operations.models import Operation
from analysis_ops.operations.types import OperationState, TriggerSource
from analysis_ops.services.retry_queue.executor import JobExecutor
from analysis_ops.services.retry_queue.models import RetryDecision, RetryQueueItem
from analysis_ops.services.retry_queue.queue import RetryQueue

logger = structlog.get_logger(__name__)


# =============================================================================
# Prometheus Metrics
# =============================================================================

RETRY_ITERATIONS_TOTAL = Counter(
    "analysis_ops_retry_iterations_total",
    "Retry processor iterations",
    ["outcome"],  # idle, succeeded, will_retry, exhausted, noop, circuit_open, skipped, error
)
RETRY_INFLIGHT = Gauge(
    "analysis_ops_retry_inflight",
    "Retry items currently being executed",
)
RETRY_LAST_RUN_TIMESTAMP = Gauge(
    "analysis_ops_retry_last_run_timestamp",
    "Timestamp of last processor iteration (unix seconds)",
)
RETRY_PROCESSOR_ENABLED = Gauge(
    "analysis_ops_retry_processor_enabled",
    "Whether the retry processor is running (1=running, 0=stopped)",
)


@dataclass
class IterationResult:
    """Outcome of a single processor iteration."""

    outcome: str
    session_id: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0


class RetryQueueProcessor:
    """
    Background service draining the retry queue.

    Features:
    - One iteration immediately on start, then every interval_s
    - Single-flight: overlapping run_once() calls return "skipped"
    - Executor calls bounded by executor_timeout_s
    - Periodic reclaim of items stuck in processing
    - Can be started/stopped gracefully; both are idempotent
    """

    def __init__(
        self,
        queue: RetryQueue,
        executor: JobExecutor,
        settings: Settings,
        operations=None,
        metrics=None,
        failure_monitor=None,
        breaker=None,
    ):
        self._queue = queue
        self._executor = executor
        self._settings = settings
        self._operations = operations
        self._metrics = metrics
        self._failure_monitor = failure_monitor
        self._breaker = breaker

        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running = False
        self._iterations = 0

        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[IterationResult] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop. No-op if already running."""
        if self._running:
            logger.warning("retry_processor_already_running")
            return

        if not self._settings.retry_processor_enabled:
            logger.info("retry_processor_disabled")
            RETRY_PROCESSOR_ENABLED.set(0)
            return

        logger.info(
            "retry_processor_starting",
            interval_s=self._settings.retry_processor_interval_s,
            executor_timeout_s=self._settings.retry_executor_timeout_s,
        )
        RETRY_PROCESSOR_ENABLED.set(1)
        self._stop_event.clear()
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop the loop, waiting up to timeout for an in-flight iteration."""
        if not self._running:
            return

        logger.info("retry_processor_stopping")
        self._stop_event.set()

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("retry_processor_stop_timeout")
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass

        self._task = None
        self._running = False
        RETRY_PROCESSOR_ENABLED.set(0)
        logger.info("retry_processor_stopped")

    async def run_once(self) -> IterationResult:
        """Run a single iteration; returns "skipped" if one is already in flight."""
        if self._lock.locked():
            logger.debug("retry_iteration_skipped")
            result = IterationResult(outcome="skipped")
            RETRY_ITERATIONS_TOTAL.labels(outcome=result.outcome).inc()
            return result

        async with self._lock:
            start = time.monotonic()
            try:
                result = await self._iteration()
            except Exception as e:
                logger.exception("retry_iteration_failed", error=str(e))
                result = IterationResult(outcome="error", error=str(e))
            result.duration_ms = int((time.monotonic() - start) * 1000)

        self.last_result = result
        self.last_run_at = datetime.now(timezone.utc)
        RETRY_LAST_RUN_TIMESTAMP.set(self.last_run_at.timestamp())
        RETRY_ITERATIONS_TOTAL.labels(outcome=result.outcome).inc()
        return result

    # =========================================================================
    # Internal Methods
    # =========================================================================

    async def _loop(self) -> None:
        """Main loop - runs until stop_event is set."""
        interval = self._settings.retry_processor_interval_s

        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception("retry_processor_tick_failed", error=str(e))

            # Wait for next tick (interruptible)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

    async def _iteration(self) -> IterationResult:
        self._iterations += 1
        if self._iterations % self._settings.retry_reclaim_every_iterations == 0:
            await self._queue.reclaim_stale(self._settings.retry_stale_processing_minutes)

        if self._breaker is not None and not self._breaker.allow_request():
            logger.info("retry_iteration_circuit_open", service=self._breaker.service)
            return IterationResult(outcome="circuit_open")

        item = await self._queue.dequeue_next()
        if item is None:
            if self._breaker is not None:
                self._breaker.release_probe()
            return IterationResult(outcome="idle")

        log = logger.bind(session_id=item.session_id, tier=item.tier.value)
        log.info("retry_processing", retry_count=item.retry_count)

        if self._metrics is not None:
            await self._metrics.record_retry(item.session_id, item.tier, item.retry_count + 1)
        await self._begin_operation(item)

        started = time.monotonic()
        error = await self._execute(item)
        duration_ms = int((time.monotonic() - started) * 1000)

        if error is None:
            await self._queue.mark_completed(item.session_id)
            await self._complete_operation(item)
            if self._metrics is not None:
                await self._metrics.record_success(item.session_id, item.tier, duration_ms)
            if self._failure_monitor is not None:
                self._failure_monitor.record(True)
            log.info("retry_succeeded")
            return IterationResult(outcome="succeeded", session_id=item.session_id)

        decision = await self._queue.mark_for_retry(item.session_id, error.message)
        await self._fail_operation(item, error.code, error.message)
        if self._failure_monitor is not None:
            self._failure_monitor.record(False, error.message)
        if self._metrics is not None:
            await self._metrics.record_failure(
                item.session_id, item.tier, error.code, error.message, duration_ms
            )
        log.warning("retry_attempt_failed", decision=decision.value, error=error.message)
        return IterationResult(
            outcome=decision.value if decision != RetryDecision.NOOP else "noop",
            session_id=item.session_id,
            error=error.message,
        )

    async def _execute(self, item: RetryQueueItem):
        """Invoke the executor; returns None on success or a classified error."""
        timeout = self._settings.retry_executor_timeout_s
        RETRY_INFLIGHT.inc()
        try:
            ok = await asyncio.wait_for(
                self._executor.execute(item.session_id, item.tier, item.problem_statement),
                timeout=timeout,
            )
            error = None if ok else classify_error(
                RuntimeError("Executor reported failure"), {"session_id": item.session_id}
            )
        except asyncio.TimeoutError:
            error = classify_error(
                asyncio.TimeoutError(f"Executor timed out after {timeout:g}s"),
                {"session_id": item.session_id},
            )
        except Exception as e:
            error = classify_error(e, {"session_id": item.session_id})
        finally:
            RETRY_INFLIGHT.dec()

        if self._breaker is not None:
            if error is None:
                self._breaker.record_success()
            else:
                self._breaker.record_failure(error.message)
        return error

    async def _current_operation(self, session_id: str) -> Optional[Operation]:
        if self._operations is None:
            return None
        return await self._operations.get_operation_by_session(session_id)

    async def _begin_operation(self, item: RetryQueueItem) -> None:
        """Move the operation into generating before the executor runs.

        Failures can be reported before the first part starts or between
        parts, so initialized and part_completed operations are started
        here as well as failed ones being retried. Paused operations are
        left to the operator.
        """
        try:
            op = await self._current_operation(item.session_id)
            if op is None:
                return
            if op.state == OperationState.FAILED:
                await self._operations.retry_operation(
                    op, triggered_by=TriggerSource.RETRY_QUEUE
                )
            elif op.state == OperationState.INITIALIZED:
                await self._operations.start_operation(
                    op, triggered_by=TriggerSource.RETRY_QUEUE
                )
            elif op.state == OperationState.PART_COMPLETED:
                await self._operations.start_part(
                    op, op.completed_parts + 1, triggered_by=TriggerSource.RETRY_QUEUE
                )
        except Exception as e:
            logger.warning(
                "retry_operation_bookkeeping_failed",
                session_id=item.session_id,
                step="begin",
                error=str(e),
            )

    async def _complete_operation(self, item: RetryQueueItem) -> None:
        """Record one part completion; completes single-part operations."""
        try:
            op = await self._current_operation(item.session_id)
            if op is not None and op.state == OperationState.GENERATING:
                await self._operations.complete_part(
                    op, triggered_by=TriggerSource.RETRY_QUEUE
                )
        except Exception as e:
            logger.warning(
                "retry_operation_bookkeeping_failed",
                session_id=item.session_id,
                step="complete",
                error=str(e),
            )

    async def _fail_operation(
        self, item: RetryQueueItem, error_code: str, error_message: str
    ) -> None:
        try:
            op = await self._current_operation(item.session_id)
            if op is not None and op.state == OperationState.GENERATING:
                await self._operations.fail_operation(
                    op,
                    error_code,
                    error_message,
                    triggered_by=TriggerSource.RETRY_QUEUE,
                )
        except Exception as e:
            logger.warning(
                "retry_operation_bookkeeping_failed",
                session_id=item.session_id,
                step="fail",
                error=str(e),
            )
