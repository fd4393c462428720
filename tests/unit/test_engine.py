"""Tests for AnalysisEngine outcome routing and read views."""

from unittest.mock import AsyncMock

import pytest

from analysis_ops.engine import (
    GENERIC_FAILURE_MESSAGE,
    AnalysisEngine,
    EngineRepositories,
)
from analysis_ops.operations.types import OperationState, Tier
from analysis_ops.services.alerts import AlertType
from analysis_ops.services.metrics import MetricEventType
from analysis_ops.services.retry_queue import RetryPriority, RetryStatus


@pytest.fixture
def notifier():
    notifier = AsyncMock()
    notifier.notify = AsyncMock(return_value=True)
    return notifier


@pytest.fixture
def engine(settings, notifier, clock):
    return AnalysisEngine(
        settings, EngineRepositories.memory(), notifier=notifier, now_fn=clock
    )


class TestReportJobFailure:
    @pytest.mark.asyncio
    async def test_retryable_failure_is_queued(self, engine):
        queued = await engine.report_job_failure(
            "sess-1",
            "full",
            "Why is churn up?",
            ConnectionResetError("connection reset"),
            email="a@example.com",
            priority=RetryPriority.HIGH,
        )

        assert queued is True
        item = await engine.retry_queue.get_item("sess-1")
        assert item.status == RetryStatus.PENDING
        assert item.priority == RetryPriority.HIGH
        assert item.email == "a@example.com"
        assert item.max_retries == 5

    @pytest.mark.asyncio
    async def test_string_error_is_classified(self, engine):
        assert await engine.report_job_failure("sess-1", Tier.FULL, "s", "upstream 503") is True

    @pytest.mark.asyncio
    async def test_non_retryable_alerts_instead_of_queueing(self, engine, notifier):
        queued = await engine.report_job_failure(
            "sess-1", Tier.FULL, "s", ValueError("invalid prompt")
        )

        assert queued is False
        assert await engine.retry_queue.get_item("sess-1") is None
        stored = await engine.repositories.admin_notifications.list_recent()
        assert stored[0].alert.type == AlertType.CRITICAL_ERROR
        assert stored[0].alert.metadata["error_code"] == "VALIDATION_ERROR"
        notifier.notify.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tracked_operation_marked_failed(self, engine):
        op = await engine.operations.create_operation("sess-1", Tier.FULL)
        await engine.operations.start_operation(op)

        await engine.report_job_failure("sess-1", Tier.FULL, "s", TimeoutError("timed out"))

        op = await engine.operations.get_operation_by_session("sess-1")
        assert op.state == OperationState.FAILED
        assert op.last_error == "timed out"

    @pytest.mark.asyncio
    async def test_failure_feeds_metrics_monitor_and_breaker(self, engine):
        await engine.report_job_failure("sess-1", Tier.FULL, "s", "upstream 503")

        metrics = engine.repositories.metrics._metrics
        assert metrics[-1].event_type == MetricEventType.FAILURE
        assert metrics[-1].error_code == "UPSTREAM_ERROR"
        assert engine.failure_monitor.get_stats().failures == 1
        assert engine.executor_breaker.get_stats().failures == 1

    @pytest.mark.asyncio
    async def test_store_down_returns_false(self, engine):
        engine.repositories.retry_queue.available = False
        assert await engine.report_job_failure("sess-1", Tier.FULL, "s", "upstream 503") is False

    @pytest.mark.asyncio
    async def test_repeated_failures_open_breaker_and_alert_once(self, engine, notifier):
        for i in range(engine.settings.circuit_failure_threshold + 2):
            await engine.report_job_failure(f"sess-{i}", Tier.FULL, "s", "upstream 503")
        await engine.alerter.drain()

        stored = await engine.repositories.admin_notifications.list_recent(
            alert_type=AlertType.CIRCUIT_BREAKER_OPEN
        )
        assert len(stored) == 1
        assert stored[0].alert.metadata["service"] == "job_executor"


class TestReportJobSuccess:
    @pytest.mark.asyncio
    async def test_success_recorded(self, engine):
        await engine.report_job_success("sess-1", "standard", 1200)

        metric = engine.repositories.metrics._metrics[-1]
        assert metric.event_type == MetricEventType.SUCCESS
        assert metric.duration_ms == 1200
        assert engine.failure_monitor.get_stats().requests == 1


class TestUserFacingStatus:
    @pytest.mark.asyncio
    async def test_unknown_session(self, engine):
        assert await engine.user_facing_status("nope") is None

    @pytest.mark.asyncio
    async def test_retrying_reads_as_processing(self, engine):
        op = await engine.operations.create_operation("sess-1", Tier.MEDIUM)
        await engine.operations.start_operation(op)
        await engine.report_job_failure("sess-1", Tier.MEDIUM, "s", "upstream 503")

        view = await engine.user_facing_status("sess-1")

        assert view.status == "processing"
        assert view.message is None
        assert view.total_parts == 2

    @pytest.mark.asyncio
    async def test_exhausted_reads_as_generic_failure(self, engine):
        await engine.retry_queue.enqueue("sess-1", Tier.FULL, "s", max_retries=1)
        await engine.retry_queue.dequeue_next()
        await engine.retry_queue.mark_for_retry("sess-1", "internal stack trace here")

        view = await engine.user_facing_status("sess-1")

        assert view.status == "failed"
        assert view.message == GENERIC_FAILURE_MESSAGE
        assert "stack trace" not in view.message

    @pytest.mark.asyncio
    async def test_progress_from_operation(self, engine):
        op = await engine.operations.create_operation("sess-1", Tier.FULL)
        op = await engine.operations.start_operation(op)
        op = await engine.operations.complete_part(op)
        await engine.operations.start_part(op, 2)

        view = await engine.user_facing_status("sess-1")

        assert view.status == "processing"
        assert view.completed_parts == 1
        assert view.progress_percentage == 17

    @pytest.mark.asyncio
    async def test_completed(self, engine):
        op = await engine.operations.create_operation("sess-1", Tier.STANDARD)
        op = await engine.operations.start_operation(op)
        await engine.operations.complete_part(op)

        view = await engine.user_facing_status("sess-1")
        assert view.status == "completed"
        assert view.progress_percentage == 100


class TestEngineLifecycle:
    @pytest.mark.asyncio
    async def test_no_processor_without_executor(self, engine):
        assert engine.processor is None
        await engine.start()
        await engine.stop()

    @pytest.mark.asyncio
    async def test_health_snapshot(self, engine):
        await engine.report_job_failure("sess-1", Tier.FULL, "s", "upstream 503")

        health = await engine.health()

        assert health["processor_running"] is False
        assert health["retry_queue"]["pending"] == 1
        assert health["failure_rate"]["failures"] == 1
        assert health["circuits"]["job_executor"]["state"] == "closed"

    def test_from_settings_memory_backend(self, settings):
        engine = AnalysisEngine.from_settings(settings)
        assert engine.processor is None
        assert type(engine.repositories.retry_queue).__name__ == "InMemoryRetryQueueRepository"

    @pytest.mark.asyncio
    async def test_postgres_backend_without_pool_degrades(self, settings):
        settings = settings.model_copy(update={"store_backend": "postgres"})
        engine = AnalysisEngine.from_settings(settings)

        assert await engine.user_facing_status("sess-1") is None
        assert await engine.report_job_failure("sess-1", Tier.FULL, "s", "upstream 503") is False
        assert (await engine.health())["retry_queue"]["pending"] == 0
