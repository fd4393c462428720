"""Unit tests for RetryQueueProcessor."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from analysis_ops.core.circuit_breaker import CircuitBreaker, CircuitState
from analysis_ops.operations.service import OperationService
from analysis_ops.operations.types import OperationState, Tier
from analysis_ops.repositories.analysis_metrics import InMemoryAnalysisMetricsRepository
from analysis_ops.repositories.operation_events import InMemoryOperationEventRepository
from analysis_ops.repositories.operations import InMemoryOperationRepository
from analysis_ops.repositories.retry_queue import InMemoryRetryQueueRepository
from analysis_ops.services.metrics import MetricEventType, MetricsRecorder
from analysis_ops.services.retry_queue import (
    IterationResult,
    RetryQueue,
    RetryQueueProcessor,
    RetryStatus,
)


# =============================================================================
# Fakes
# =============================================================================


class FakeExecutor:
    """Executor double returning scripted outcomes."""

    def __init__(self, outcomes=None, delay: float = 0.0):
        self.outcomes = list(outcomes or [True])
        self.delay = delay
        self.calls: list[tuple] = []
        self.called = asyncio.Event()

    async def execute(self, session_id, tier, problem_statement) -> bool:
        self.calls.append((session_id, tier, problem_statement))
        self.called.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class BlockingExecutor:
    """Executor that waits until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, session_id, tier, problem_statement) -> bool:
        self.started.set()
        await self.release.wait()
        return True


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def queue(clock):
    return RetryQueue(InMemoryRetryQueueRepository(), max_retries=3, now_fn=clock)


@pytest.fixture
def operations(clock):
    events = InMemoryOperationEventRepository()
    return OperationService(InMemoryOperationRepository(events), events, now_fn=clock)


@pytest.fixture
def metrics_repo():
    return InMemoryAnalysisMetricsRepository()


@pytest.fixture
def metrics(metrics_repo, clock):
    return MetricsRecorder(metrics_repo, prometheus_enabled=False, now_fn=clock)


@pytest.fixture
def failure_monitor():
    return MagicMock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("job_executor", failure_threshold=3, reset_timeout_s=60, now_fn=clock)


def make_processor(settings, queue, executor, operations=None, metrics=None,
                   failure_monitor=None, breaker=None):
    return RetryQueueProcessor(
        queue,
        executor,
        settings,
        operations=operations,
        metrics=metrics,
        failure_monitor=failure_monitor,
        breaker=breaker,
    )


async def failed_operation(operations, session_id="sess-1", tier=Tier.STANDARD):
    op = await operations.create_operation(session_id, tier)
    op = await operations.start_operation(op)
    return await operations.fail_operation(op, "UPSTREAM_ERROR", "upstream 503")


# =============================================================================
# Iteration Tests
# =============================================================================


class TestRunOnce:
    """Tests for a single processor iteration."""

    @pytest.mark.asyncio
    async def test_idle_when_nothing_due(self, settings, queue):
        executor = FakeExecutor()
        processor = make_processor(settings, queue, executor)

        result = await processor.run_once()

        assert isinstance(result, IterationResult)
        assert result.outcome == "idle"
        assert executor.calls == []
        assert processor.last_run_at is not None

    @pytest.mark.asyncio
    async def test_success_completes_item_and_operation(
        self, settings, queue, operations, metrics, metrics_repo, failure_monitor, clock
    ):
        await failed_operation(operations)
        await queue.enqueue("sess-1", Tier.STANDARD, "Why is churn up?")
        executor = FakeExecutor([True])
        processor = make_processor(
            settings, queue, executor, operations, metrics, failure_monitor
        )

        result = await processor.run_once()

        assert result.outcome == "succeeded"
        assert result.session_id == "sess-1"
        assert executor.calls == [("sess-1", Tier.STANDARD, "Why is churn up?")]
        assert (await queue.get_item("sess-1")).status == RetryStatus.COMPLETED

        op = await operations.get_operation_by_session("sess-1")
        assert op.state == OperationState.COMPLETED
        assert op.retry_count == 1
        assert op.triggered_by == "retry_queue"

        failure_monitor.record.assert_called_once_with(True)
        recorded = [m.event_type for m in metrics_repo._metrics]
        assert recorded == [MetricEventType.RETRY, MetricEventType.SUCCESS]

    @pytest.mark.asyncio
    async def test_multi_part_operation_advances_one_part(
        self, settings, queue, operations
    ):
        await failed_operation(operations, tier=Tier.MEDIUM)
        await queue.enqueue("sess-1", Tier.MEDIUM, "statement")
        processor = make_processor(settings, queue, FakeExecutor([True]), operations)

        await processor.run_once()

        op = await operations.get_operation_by_session("sess-1")
        assert op.state == OperationState.PART_COMPLETED
        assert op.completed_parts == 1

    @pytest.mark.asyncio
    async def test_operation_not_yet_started_is_completed(self, settings, queue, operations):
        await operations.create_operation("sess-1", Tier.STANDARD)
        await queue.enqueue("sess-1", Tier.STANDARD, "statement")
        processor = make_processor(settings, queue, FakeExecutor([True]), operations)

        result = await processor.run_once()

        assert result.outcome == "succeeded"
        op = await operations.get_operation_by_session("sess-1")
        assert op.state == OperationState.COMPLETED
        assert op.completed_parts == 1
        assert op.retry_count == 0

    @pytest.mark.asyncio
    async def test_failure_between_parts_resumes_next_part(
        self, settings, queue, operations
    ):
        op = await operations.create_operation("sess-1", Tier.MEDIUM)
        op = await operations.start_operation(op)
        op = await operations.complete_part(op)
        assert op.state == OperationState.PART_COMPLETED
        await queue.enqueue("sess-1", Tier.MEDIUM, "statement")
        processor = make_processor(settings, queue, FakeExecutor([True]), operations)

        await processor.run_once()

        op = await operations.get_operation_by_session("sess-1")
        assert op.state == OperationState.COMPLETED
        assert op.completed_parts == 2

    @pytest.mark.asyncio
    async def test_failed_attempt_on_unstarted_operation_marks_failed(
        self, settings, queue, operations
    ):
        await operations.create_operation("sess-1", Tier.STANDARD)
        await queue.enqueue("sess-1", Tier.STANDARD, "statement")
        processor = make_processor(
            settings, queue, FakeExecutor([ConnectionResetError("reset")]), operations
        )

        await processor.run_once()

        op = await operations.get_operation_by_session("sess-1")
        assert op.state == OperationState.FAILED

    @pytest.mark.asyncio
    async def test_false_result_schedules_retry(
        self, settings, queue, operations, metrics, metrics_repo, failure_monitor
    ):
        await failed_operation(operations)
        await queue.enqueue("sess-1", Tier.STANDARD, "statement")
        processor = make_processor(
            settings, queue, FakeExecutor([False]), operations, metrics, failure_monitor
        )

        result = await processor.run_once()

        assert result.outcome == "will_retry"
        item = await queue.get_item("sess-1")
        assert item.status == RetryStatus.PENDING
        assert item.retry_count == 1

        op = await operations.get_operation_by_session("sess-1")
        assert op.state == OperationState.FAILED
        assert op.retry_count == 1

        success, error = failure_monitor.record.call_args.args
        assert success is False
        assert error == "Executor reported failure"
        assert metrics_repo._metrics[-1].event_type == MetricEventType.FAILURE

    @pytest.mark.asyncio
    async def test_executor_exception_is_contained(self, settings, queue):
        await queue.enqueue("sess-1", Tier.FULL, "statement")
        executor = FakeExecutor([ConnectionResetError("connection reset by peer")])
        processor = make_processor(settings, queue, executor)

        result = await processor.run_once()

        assert result.outcome == "will_retry"
        assert "connection reset" in result.error
        assert (await queue.get_item("sess-1")).last_error == "connection reset by peer"

    @pytest.mark.asyncio
    async def test_executor_timeout_is_retryable_failure(self, settings, queue):
        settings = settings.model_copy(update={"retry_executor_timeout_s": 0.01})
        await queue.enqueue("sess-1", Tier.FULL, "statement")
        processor = make_processor(settings, queue, FakeExecutor([True], delay=1.0))

        result = await processor.run_once()

        assert result.outcome == "will_retry"
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_last_attempt_exhausts(self, settings, queue, clock):
        await queue.enqueue("sess-1", Tier.FULL, "statement")
        processor = make_processor(settings, queue, FakeExecutor([False, False, False]))

        outcomes = []
        for _ in range(3):
            outcomes.append((await processor.run_once()).outcome)
            clock.advance(hours=1)

        assert outcomes == ["will_retry", "will_retry", "exhausted"]
        assert (await queue.get_item("sess-1")).status == RetryStatus.FAILED

    @pytest.mark.asyncio
    async def test_untracked_session_still_processed(self, settings, queue, operations):
        await queue.enqueue("no-op-row", Tier.FULL, "statement")
        processor = make_processor(settings, queue, FakeExecutor([True]), operations)

        result = await processor.run_once()

        assert result.outcome == "succeeded"

    @pytest.mark.asyncio
    async def test_bookkeeping_failure_does_not_stop_iteration(self, settings, queue):
        await queue.enqueue("sess-1", Tier.FULL, "statement")
        broken_operations = AsyncMock()
        broken_operations.get_operation_by_session.side_effect = RuntimeError("boom")
        processor = make_processor(
            settings, queue, FakeExecutor([True]), operations=broken_operations
        )

        result = await processor.run_once()

        assert result.outcome == "succeeded"
        assert (await queue.get_item("sess-1")).status == RetryStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unexpected_error_reported_as_error_outcome(self, settings):
        queue = AsyncMock()
        queue.dequeue_next.side_effect = RuntimeError("unexpected")
        processor = make_processor(settings, queue, FakeExecutor())

        result = await processor.run_once()

        assert result.outcome == "error"
        assert result.error == "unexpected"

    @pytest.mark.asyncio
    async def test_reclaim_runs_every_n_iterations(self, settings):
        settings = settings.model_copy(update={"retry_reclaim_every_iterations": 2})
        queue = AsyncMock()
        queue.dequeue_next.return_value = None
        processor = make_processor(settings, queue, FakeExecutor())

        for _ in range(4):
            await processor.run_once()

        assert queue.reclaim_stale.await_count == 2
        queue.reclaim_stale.assert_awaited_with(settings.retry_stale_processing_minutes)


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_overlapping_run_once_is_skipped(self, settings, queue):
        await queue.enqueue("a", Tier.FULL, "s")
        await queue.enqueue("b", Tier.FULL, "s")
        executor = BlockingExecutor()
        processor = make_processor(settings, queue, executor)

        first = asyncio.create_task(processor.run_once())
        await executor.started.wait()

        second = await processor.run_once()
        assert second.outcome == "skipped"
        assert (await queue.get_item("b")).status == RetryStatus.PENDING

        executor.release.set()
        assert (await first).outcome == "succeeded"


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_open_breaker_leaves_items_queued(self, settings, queue, breaker):
        await queue.enqueue("sess-1", Tier.FULL, "s")
        for _ in range(3):
            breaker.record_failure("upstream down")
        assert breaker.get_state() == CircuitState.OPEN
        executor = FakeExecutor()
        processor = make_processor(settings, queue, executor, breaker=breaker)

        result = await processor.run_once()

        assert result.outcome == "circuit_open"
        assert executor.calls == []
        assert (await queue.get_item("sess-1")).status == RetryStatus.PENDING

    @pytest.mark.asyncio
    async def test_failures_feed_breaker(self, settings, queue, breaker, clock):
        for i in range(3):
            await queue.enqueue(f"sess-{i}", Tier.FULL, "s")
        processor = make_processor(
            settings, queue, FakeExecutor([False, False, False]), breaker=breaker
        )

        for _ in range(3):
            await processor.run_once()

        assert breaker.get_state() == CircuitState.OPEN
        assert breaker.get_stats().last_error == "Executor reported failure"

    @pytest.mark.asyncio
    async def test_half_open_probe_success_closes(self, settings, queue, breaker, clock):
        for _ in range(3):
            breaker.record_failure("down")
        clock.advance(seconds=61)
        await queue.enqueue("sess-1", Tier.FULL, "s")
        processor = make_processor(settings, queue, FakeExecutor([True]), breaker=breaker)

        result = await processor.run_once()

        assert result.outcome == "succeeded"
        assert breaker.get_state() == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_idle_probe_is_released(self, settings, queue, breaker, clock):
        for _ in range(3):
            breaker.record_failure("down")
        clock.advance(seconds=61)
        processor = make_processor(settings, queue, FakeExecutor([True]), breaker=breaker)

        assert (await processor.run_once()).outcome == "idle"
        assert breaker.get_state() == CircuitState.HALF_OPEN

        await queue.enqueue("sess-1", Tier.FULL, "s")
        assert (await processor.run_once()).outcome == "succeeded"


# =============================================================================
# Lifecycle Tests
# =============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stop(self, settings, queue):
        await queue.enqueue("sess-1", Tier.FULL, "s")
        executor = FakeExecutor([True])
        processor = make_processor(settings, queue, executor)

        await processor.start()
        assert processor.is_running is True
        await asyncio.wait_for(executor.called.wait(), timeout=2)
        await processor.stop(timeout=2)

        assert processor.is_running is False
        assert executor.calls[0][0] == "sess-1"

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, settings, queue):
        processor = make_processor(settings, queue, FakeExecutor())

        await processor.stop()
        await processor.start()
        first_task = processor._task
        await processor.start()
        assert processor._task is first_task

        await processor.stop(timeout=2)
        await processor.stop(timeout=2)
        assert processor.is_running is False

    @pytest.mark.asyncio
    async def test_disabled_processor_does_not_start(self, settings, queue):
        settings = settings.model_copy(update={"retry_processor_enabled": False})
        processor = make_processor(settings, queue, FakeExecutor())

        await processor.start()

        assert processor.is_running is False

    @pytest.mark.asyncio
    async def test_loop_survives_iteration_errors(self, settings):
        queue = AsyncMock()
        queue.dequeue_next.side_effect = RuntimeError("store exploded")
        processor = make_processor(settings, queue, FakeExecutor())

        await processor.start()
        await asyncio.sleep(0.05)
        assert processor.is_running is True
        await processor.stop(timeout=2)

        assert queue.dequeue_next.await_count >= 2
