"""Retry queue service.

Wraps the queue repository with validation, backoff and degraded-store
handling. Writes report failure through their return value rather than
raising when the store is unreachable, so a job failure handler can keep
going without persistence.
"""

from datetime import datetime, timedelta
from functools import partial
from typing import Callable, Optional, Union

import structlog

from analysis_ops.core.errors import StoreUnavailableError, truncate_error
from analysis_ops.operations.models import utcnow
from analysis_ops.operations.state_machine import coerce_tier
from analysis_ops.operations.types import Tier
from analysis_ops.services.retry_queue.models import (
    QueueStats,
    RetryDecision,
    RetryPriority,
    RetryQueueItem,
    RetryStatus,
)

logger = structlog.get_logger(__name__)


def compute_retry_delay(
    retry_count: int, base_delay_s: float = 60.0, max_delay_s: float = 1800.0
) -> float:
    """Backoff in seconds: min(base * 2^(retry_count - 1), max)."""
    exponent = max(retry_count - 1, 0)
    return min(base_delay_s * (2**exponent), max_delay_s)


class RetryQueue:
    """Durable queue of failed jobs awaiting redrive."""

    def __init__(
        self,
        repository,
        alerter=None,
        max_retries: int = 5,
        base_delay_s: float = 60.0,
        max_delay_s: float = 1800.0,
        error_max_chars: int = 1000,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._alerter = alerter
        self.max_retries = max_retries
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self._error_max_chars = error_max_chars
        self._now = now_fn

    @classmethod
    def from_settings(
        cls, repository, settings, alerter=None, now_fn: Callable[[], datetime] = utcnow
    ):
        return cls(
            repository,
            alerter=alerter,
            max_retries=settings.retry_max_retries,
            base_delay_s=settings.retry_base_delay_s,
            max_delay_s=settings.retry_max_delay_s,
            error_max_chars=settings.retry_error_max_chars,
            now_fn=now_fn,
        )

    async def enqueue(
        self,
        session_id: str,
        tier: Union[Tier, str],
        problem_statement: str,
        email: Optional[str] = None,
        priority: Union[RetryPriority, int] = RetryPriority.MEDIUM,
        max_retries: Optional[int] = None,
    ) -> bool:
        """Queue a failed job for immediate retry.

        Returns True if the session is queued (including when an active item
        already existed), False if the store is unavailable.
        """
        if not session_id:
            raise ValueError("session_id is required")
        if not problem_statement:
            raise ValueError("problem_statement is required")
        tier = coerce_tier(tier)

        now = self._now()
        item = RetryQueueItem(
            session_id=session_id,
            tier=tier,
            problem_statement=problem_statement,
            email=email,
            max_retries=max_retries if max_retries is not None else self.max_retries,
            priority=RetryPriority(priority),
            next_retry_at=now,
            created_at=now,
            updated_at=now,
        )

        try:
            stored = await self._repository.enqueue(item)
        except StoreUnavailableError as e:
            logger.warning("retry_enqueue_degraded", session_id=session_id, error=str(e))
            return False

        if stored is None:
            logger.info("retry_enqueue_duplicate", session_id=session_id)
        else:
            logger.info(
                "retry_enqueued",
                session_id=session_id,
                tier=tier.value,
                priority=stored.priority.name,
                max_retries=stored.max_retries,
            )
        return True

    async def dequeue_next(self) -> Optional[RetryQueueItem]:
        """Claim the next due item (marked processing), or None."""
        try:
            return await self._repository.claim_next(self._now())
        except StoreUnavailableError as e:
            logger.warning("retry_dequeue_degraded", error=str(e))
            return None

    async def mark_completed(self, session_id: str) -> bool:
        """processing -> completed. A missing or already-finished item is a no-op."""
        try:
            updated = await self._repository.mark_completed(session_id, self._now())
        except StoreUnavailableError as e:
            logger.warning("retry_complete_degraded", session_id=session_id, error=str(e))
            return False
        if updated:
            logger.info("retry_item_completed", session_id=session_id)
        else:
            logger.info("retry_complete_noop", session_id=session_id)
        return updated

    async def mark_for_retry(self, session_id: str, error_message: str) -> RetryDecision:
        """Record a failed attempt; reschedule with backoff or give up and alert."""
        error = truncate_error(error_message, self._error_max_chars)
        delay_fn = partial(
            compute_retry_delay,
            base_delay_s=self.base_delay_s,
            max_delay_s=self.max_delay_s,
        )
        try:
            decision, item = await self._repository.record_failure(
                session_id, error, self._now(), delay_fn
            )
        except StoreUnavailableError as e:
            logger.warning("retry_mark_degraded", session_id=session_id, error=str(e))
            return RetryDecision.NOOP

        if decision == RetryDecision.NOOP:
            logger.info("retry_mark_noop", session_id=session_id)
            return decision

        if decision == RetryDecision.EXHAUSTED:
            logger.warning(
                "retry_exhausted",
                session_id=session_id,
                retry_count=item.retry_count,
                max_retries=item.max_retries,
            )
            if self._alerter is not None:
                await self._alerter.alert_retries_exhausted(
                    session_id, item.tier.value, item.retry_count, error
                )
            return decision

        logger.info(
            "retry_scheduled",
            session_id=session_id,
            retry_count=item.retry_count,
            next_retry_at=item.next_retry_at.isoformat(),
        )
        return decision

    async def cancel(self, session_id: str) -> bool:
        """Set status to cancelled regardless of current status."""
        try:
            cancelled = await self._repository.cancel(session_id, self._now())
        except StoreUnavailableError as e:
            logger.warning("retry_cancel_degraded", session_id=session_id, error=str(e))
            return False
        logger.info("retry_item_cancelled", session_id=session_id, found=cancelled)
        return cancelled

    async def get_stats(self) -> QueueStats:
        """Counts per status; all zeros when the store is unavailable."""
        try:
            return await self._repository.stats()
        except StoreUnavailableError as e:
            logger.warning("retry_stats_degraded", error=str(e))
            return QueueStats()

    async def reclaim_stale(self, stale_minutes: float) -> int:
        """Return items stuck in processing longer than stale_minutes to pending."""
        now = self._now()
        try:
            reclaimed = await self._repository.reclaim_stale(
                now - timedelta(minutes=stale_minutes), now
            )
        except StoreUnavailableError as e:
            logger.warning("retry_reclaim_degraded", error=str(e))
            return 0
        if reclaimed:
            logger.warning("retry_items_reclaimed", count=len(reclaimed), session_ids=reclaimed)
        return len(reclaimed)

    async def list_items(
        self, status: Optional[RetryStatus] = None, limit: int = 100
    ) -> list[RetryQueueItem]:
        try:
            return await self._repository.list_items(status, limit)
        except StoreUnavailableError as e:
            logger.warning("retry_list_degraded", error=str(e))
            return []

    async def get_item(self, session_id: str) -> Optional[RetryQueueItem]:
        try:
            return await self._repository.get(session_id)
        except StoreUnavailableError as e:
            logger.warning("retry_get_degraded", session_id=session_id, error=str(e))
            return None
