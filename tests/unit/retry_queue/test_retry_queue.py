"""Tests for the retry queue service over the in-memory store."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from analysis_ops.core.errors import UnknownTierError
from analysis_ops.operations.types import Tier
from analysis_ops.repositories.retry_queue import InMemoryRetryQueueRepository
from analysis_ops.services.retry_queue import (
    RetryDecision,
    RetryPriority,
    RetryQueue,
    RetryStatus,
    compute_retry_delay,
)


@pytest.fixture
def repository():
    return InMemoryRetryQueueRepository()


@pytest.fixture
def alerter():
    alerter = AsyncMock()
    alerter.alert_retries_exhausted = AsyncMock(return_value=True)
    return alerter


@pytest.fixture
def queue(repository, alerter, clock):
    return RetryQueue(repository, alerter=alerter, max_retries=3, now_fn=clock)


async def _fail_once(queue, clock, session_id="sess-1", error="upstream 503"):
    """Claim the due item and report a failed attempt."""
    item = await queue.dequeue_next()
    assert item is not None and item.session_id == session_id
    decision = await queue.mark_for_retry(session_id, error)
    clock.advance(hours=1)
    return decision


class TestComputeRetryDelay:
    def test_first_retries(self):
        assert compute_retry_delay(1) == 60
        assert compute_retry_delay(2) == 120
        assert compute_retry_delay(3) == 240

    def test_capped_at_max(self):
        assert compute_retry_delay(5) == 960
        assert compute_retry_delay(6) == 1800
        assert compute_retry_delay(20) == 1800

    def test_cap_with_small_max(self):
        assert compute_retry_delay(5, base_delay_s=60, max_delay_s=600) == 600

    def test_monotonic_non_decreasing(self):
        delays = [compute_retry_delay(n) for n in range(0, 15)]
        assert delays == sorted(delays)
        assert max(delays) == 1800

    def test_zero_count_uses_base(self):
        assert compute_retry_delay(0) == 60


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_defaults(self, queue, clock):
        assert await queue.enqueue("sess-1", "full", "Why is churn up?") is True

        item = await queue.get_item("sess-1")
        assert item.status == RetryStatus.PENDING
        assert item.retry_count == 0
        assert item.max_retries == 3
        assert item.priority == RetryPriority.MEDIUM
        assert item.next_retry_at == clock()

    @pytest.mark.asyncio
    async def test_required_fields(self, queue):
        with pytest.raises(ValueError):
            await queue.enqueue("", Tier.FULL, "statement")
        with pytest.raises(ValueError):
            await queue.enqueue("sess-1", Tier.FULL, "")
        with pytest.raises(UnknownTierError):
            await queue.enqueue("sess-1", "platinum", "statement")

    @pytest.mark.asyncio
    async def test_duplicate_active_session_not_duplicated(self, queue):
        await queue.enqueue("sess-1", Tier.FULL, "first", priority=RetryPriority.LOW)
        assert await queue.enqueue("sess-1", Tier.FULL, "second") is True

        items = await queue.list_items()
        assert len(items) == 1
        assert items[0].problem_statement == "first"
        assert items[0].priority == RetryPriority.LOW

    @pytest.mark.asyncio
    async def test_finished_session_is_revived(self, queue):
        await queue.enqueue("sess-1", Tier.FULL, "first")
        await queue.dequeue_next()
        await queue.mark_completed("sess-1")

        await queue.enqueue("sess-1", Tier.FULL, "again")
        item = await queue.get_item("sess-1")
        assert item.status == RetryStatus.PENDING
        assert item.problem_statement == "again"
        assert item.retry_count == 0

    @pytest.mark.asyncio
    async def test_store_unavailable_returns_false(self, queue, repository):
        repository.available = False
        assert await queue.enqueue("sess-1", Tier.FULL, "statement") is False


class TestDequeue:
    @pytest.mark.asyncio
    async def test_priority_order_not_insertion_order(self, queue):
        await queue.enqueue("high", Tier.FULL, "s", priority=RetryPriority.HIGH)
        await queue.enqueue("low", Tier.FULL, "s", priority=RetryPriority.LOW)
        await queue.enqueue("medium", Tier.FULL, "s", priority=RetryPriority.MEDIUM)

        order = [(await queue.dequeue_next()).session_id for _ in range(3)]
        assert order == ["high", "medium", "low"]
        assert await queue.dequeue_next() is None

    @pytest.mark.asyncio
    async def test_oldest_first_within_priority(self, queue, clock):
        await queue.enqueue("older", Tier.FULL, "s")
        clock.advance(seconds=5)
        await queue.enqueue("newer", Tier.FULL, "s")

        assert (await queue.dequeue_next()).session_id == "older"

    @pytest.mark.asyncio
    async def test_claim_marks_processing(self, queue, clock):
        await queue.enqueue("sess-1", Tier.FULL, "s")
        item = await queue.dequeue_next()

        assert item.status == RetryStatus.PROCESSING
        assert item.last_attempt_at == clock()
        assert (await queue.get_item("sess-1")).status == RetryStatus.PROCESSING
        assert await queue.dequeue_next() is None

    @pytest.mark.asyncio
    async def test_not_due_items_skipped(self, queue, clock):
        await queue.enqueue("sess-1", Tier.FULL, "s")
        await queue.dequeue_next()
        await queue.mark_for_retry("sess-1", "timeout")

        assert await queue.dequeue_next() is None
        clock.advance(seconds=61)
        assert (await queue.dequeue_next()).session_id == "sess-1"

    @pytest.mark.asyncio
    async def test_store_unavailable_returns_none(self, queue, repository):
        repository.available = False
        assert await queue.dequeue_next() is None


class TestMarkForRetry:
    @pytest.mark.asyncio
    async def test_backoff_schedule(self, queue, clock):
        await queue.enqueue("sess-1", Tier.FULL, "s")
        await queue.dequeue_next()

        decision = await queue.mark_for_retry("sess-1", "upstream 503")

        item = await queue.get_item("sess-1")
        assert decision == RetryDecision.WILL_RETRY
        assert item.status == RetryStatus.PENDING
        assert item.retry_count == 1
        assert item.next_retry_at == clock() + timedelta(minutes=1)
        assert item.last_error == "upstream 503"

    @pytest.mark.asyncio
    async def test_exhaustion_after_max_retries(self, queue, clock, alerter):
        await queue.enqueue("sess-1", Tier.MEDIUM, "s")

        assert await _fail_once(queue, clock) == RetryDecision.WILL_RETRY
        assert await _fail_once(queue, clock) == RetryDecision.WILL_RETRY
        item = await queue.get_item("sess-1")
        assert item.status == RetryStatus.PENDING
        assert item.next_retry_at > item.last_attempt_at

        exhausted_at_next = item.next_retry_at
        assert await _fail_once(queue, clock, error="still down") == RetryDecision.EXHAUSTED

        item = await queue.get_item("sess-1")
        assert item.status == RetryStatus.FAILED
        assert item.retry_count == 3
        assert item.next_retry_at == exhausted_at_next
        assert await queue.dequeue_next() is None

        alerter.alert_retries_exhausted.assert_awaited_once_with(
            "sess-1", "medium", 3, "still down"
        )

    @pytest.mark.asyncio
    async def test_pending_item_exhausts_without_dequeue(self, queue, alerter):
        await queue.enqueue("sess-1", Tier.FULL, "s")

        decisions = [await queue.mark_for_retry("sess-1", "upstream 503") for _ in range(3)]

        assert decisions == [
            RetryDecision.WILL_RETRY,
            RetryDecision.WILL_RETRY,
            RetryDecision.EXHAUSTED,
        ]
        item = await queue.get_item("sess-1")
        assert item.status == RetryStatus.FAILED
        assert item.retry_count == 3
        alerter.alert_retries_exhausted.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_one_short_of_max_stays_pending(self, queue, clock):
        await queue.enqueue("sess-1", Tier.FULL, "s")

        for _ in range(2):
            assert await queue.mark_for_retry("sess-1", "upstream 503") == RetryDecision.WILL_RETRY

        item = await queue.get_item("sess-1")
        assert item.status == RetryStatus.PENDING
        assert item.retry_count == 2
        assert item.next_retry_at > clock()

    @pytest.mark.asyncio
    async def test_error_truncated(self, repository, clock):
        queue = RetryQueue(repository, error_max_chars=10, now_fn=clock)
        await queue.enqueue("sess-1", Tier.FULL, "s")
        await queue.dequeue_next()
        await queue.mark_for_retry("sess-1", "e" * 50)

        assert (await queue.get_item("sess-1")).last_error == "e" * 10

    @pytest.mark.asyncio
    async def test_report_for_cancelled_item_is_noop(self, queue, alerter):
        await queue.enqueue("sess-1", Tier.FULL, "s")
        await queue.dequeue_next()
        await queue.cancel("sess-1")

        assert await queue.mark_for_retry("sess-1", "late") == RetryDecision.NOOP
        assert await queue.mark_completed("sess-1") is False
        assert (await queue.get_item("sess-1")).status == RetryStatus.CANCELLED
        alerter.alert_retries_exhausted.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_unavailable_is_noop(self, queue, repository):
        repository.available = False
        assert await queue.mark_for_retry("sess-1", "x") == RetryDecision.NOOP


class TestCompletionAndCancel:
    @pytest.mark.asyncio
    async def test_mark_completed_idempotent(self, queue):
        await queue.enqueue("sess-1", Tier.FULL, "s")
        await queue.dequeue_next()

        assert await queue.mark_completed("sess-1") is True
        assert await queue.mark_completed("sess-1") is False
        assert await queue.mark_completed("missing") is False
        assert (await queue.get_item("sess-1")).status == RetryStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_regardless_of_status(self, queue):
        await queue.enqueue("sess-1", Tier.FULL, "s")
        await queue.dequeue_next()
        await queue.mark_completed("sess-1")

        assert await queue.cancel("sess-1") is True
        assert (await queue.get_item("sess-1")).status == RetryStatus.CANCELLED
        assert await queue.cancel("missing") is False


class TestStatsAndReclaim:
    @pytest.mark.asyncio
    async def test_stats_counts(self, queue):
        await queue.enqueue("a", Tier.FULL, "s")
        await queue.enqueue("b", Tier.FULL, "s")
        await queue.enqueue("c", Tier.FULL, "s")
        await queue.dequeue_next()
        await queue.cancel("c")

        stats = await queue.get_stats()
        assert stats.pending == 1
        assert stats.processing == 1
        assert stats.cancelled == 1
        assert stats.total == 3

    @pytest.mark.asyncio
    async def test_stats_zero_when_unavailable(self, queue, repository):
        await queue.enqueue("a", Tier.FULL, "s")
        repository.available = False

        stats = await queue.get_stats()
        assert stats.total == 0

    @pytest.mark.asyncio
    async def test_reclaim_stale_processing(self, queue, clock):
        await queue.enqueue("stuck", Tier.FULL, "s")
        await queue.dequeue_next()

        clock.advance(minutes=30)
        assert await queue.reclaim_stale(60) == 0

        clock.advance(minutes=31)
        assert await queue.reclaim_stale(60) == 1
        item = await queue.get_item("stuck")
        assert item.status == RetryStatus.PENDING
        assert (await queue.dequeue_next()).session_id == "stuck"
