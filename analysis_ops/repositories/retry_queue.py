"""Repository for the durable retry queue.

claim_next() is the only cross-process mutual exclusion point: selection and
the pending -> processing update happen in one statement using
FOR UPDATE SKIP LOCKED, so concurrent processors never claim the same row.
"""

import dataclasses
import itertools
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog

from analysis_ops.operations.types import Tier
from analysis_ops.repositories.utils import MemoryStoreMixin, connection
from analysis_ops.services.retry_queue.models import (
    QueueStats,
    RetryDecision,
    RetryPriority,
    RetryQueueItem,
    RetryStatus,
)

logger = structlog.get_logger(__name__)

DelayFn = Callable[[int], float]


def row_to_item(row) -> RetryQueueItem:
    """Convert a database row to a RetryQueueItem."""
    return RetryQueueItem(
        id=row["id"],
        session_id=row["session_id"],
        tier=Tier(row["tier"]),
        problem_statement=row["problem_statement"],
        email=row["email"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        priority=RetryPriority(row["priority"]),
        last_error=row["last_error"],
        last_attempt_at=row["last_attempt_at"],
        next_retry_at=row["next_retry_at"],
        status=RetryStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _plan_failure(
    item: RetryQueueItem, now: datetime, delay_fn: DelayFn
) -> tuple[RetryDecision, int, RetryStatus, datetime]:
    retry_count = item.retry_count + 1
    if retry_count >= item.max_retries:
        return RetryDecision.EXHAUSTED, retry_count, RetryStatus.FAILED, item.next_retry_at
    next_retry_at = now + timedelta(seconds=delay_fn(retry_count))
    return RetryDecision.WILL_RETRY, retry_count, RetryStatus.PENDING, next_retry_at


class RetryQueueRepository:
    """Postgres-backed retry queue."""

    def __init__(self, pool):
        self._pool = pool

    async def enqueue(self, item: RetryQueueItem) -> Optional[RetryQueueItem]:
        """Insert a pending item, or revive a finished one for the same session.

        Returns None when the session already has an active item, which is
        left untouched.
        """
        query = """
            INSERT INTO retry_queue (
                session_id, tier, problem_statement, email, retry_count,
                max_retries, priority, status, next_retry_at,
                created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, 0, $5, $6, 'pending', $7, $7, $7)
            ON CONFLICT (session_id) DO UPDATE SET
                tier = EXCLUDED.tier,
                problem_statement = EXCLUDED.problem_statement,
                email = EXCLUDED.email,
                retry_count = 0,
                max_retries = EXCLUDED.max_retries,
                priority = EXCLUDED.priority,
                status = 'pending',
                last_error = NULL,
                last_attempt_at = NULL,
                next_retry_at = EXCLUDED.next_retry_at,
                updated_at = EXCLUDED.updated_at
            WHERE retry_queue.status NOT IN ('pending', 'processing')
            RETURNING *
        """
        async with connection(self._pool) as conn:
            row = await conn.fetchrow(
                query,
                item.session_id,
                item.tier.value,
                item.problem_statement,
                item.email,
                item.max_retries,
                int(item.priority),
                item.next_retry_at,
            )
        return row_to_item(row) if row else None

    async def claim_next(self, now: datetime) -> Optional[RetryQueueItem]:
        """Claim the next due item using FOR UPDATE SKIP LOCKED.

        Returns None if no items are due.
        """
        query = """
            WITH cte AS (
                SELECT id FROM retry_queue
                WHERE status = 'pending' AND next_retry_at <= $1
                ORDER BY priority ASC, created_at ASC
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            UPDATE retry_queue q SET
                status = 'processing',
                last_attempt_at = $1,
                updated_at = $1
            FROM cte
            WHERE q.id = cte.id
            RETURNING q.*
        """
        async with connection(self._pool) as conn:
            row = await conn.fetchrow(query, now)

        if row:
            logger.info(
                "retry_item_claimed",
                session_id=row["session_id"],
                retry_count=row["retry_count"],
                priority=row["priority"],
            )
            return row_to_item(row)
        return None

    async def mark_completed(self, session_id: str, now: datetime) -> bool:
        """processing -> completed. Returns False if the item was not processing."""
        query = """
            UPDATE retry_queue SET status = 'completed', updated_at = $2
            WHERE session_id = $1 AND status = 'processing'
            RETURNING id
        """
        async with connection(self._pool) as conn:
            row = await conn.fetchrow(query, session_id, now)
        return row is not None

    async def record_failure(
        self,
        session_id: str,
        error: Optional[str],
        now: datetime,
        delay_fn: DelayFn,
    ) -> tuple[RetryDecision, Optional[RetryQueueItem]]:
        """Count a failed attempt on an active item and reschedule or fail it."""
        async with connection(self._pool) as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT * FROM retry_queue
                    WHERE session_id = $1 AND status IN ('pending', 'processing')
                    FOR UPDATE
                    """,
                    session_id,
                )
                if row is None:
                    return RetryDecision.NOOP, None

                decision, retry_count, status, next_retry_at = _plan_failure(
                    row_to_item(row), now, delay_fn
                )
                row = await conn.fetchrow(
                    """
                    UPDATE retry_queue SET
                        retry_count = $2,
                        status = $3,
                        next_retry_at = $4,
                        last_error = $5,
                        updated_at = $6
                    WHERE session_id = $1
                    RETURNING *
                    """,
                    session_id,
                    retry_count,
                    status.value,
                    next_retry_at,
                    error,
                    now,
                )
        return decision, row_to_item(row)

    async def cancel(self, session_id: str, now: datetime) -> bool:
        query = """
            UPDATE retry_queue SET status = 'cancelled', updated_at = $2
            WHERE session_id = $1
            RETURNING id
        """
        async with connection(self._pool) as conn:
            row = await conn.fetchrow(query, session_id, now)
        return row is not None

    async def reclaim_stale(self, cutoff: datetime, now: datetime) -> list[str]:
        """Return processing items last attempted before cutoff to pending."""
        query = """
            UPDATE retry_queue SET
                status = 'pending',
                next_retry_at = $2,
                updated_at = $2
            WHERE status = 'processing' AND last_attempt_at < $1
            RETURNING session_id
        """
        async with connection(self._pool) as conn:
            rows = await conn.fetch(query, cutoff, now)
        return [row["session_id"] for row in rows]

    async def get(self, session_id: str) -> Optional[RetryQueueItem]:
        query = "SELECT * FROM retry_queue WHERE session_id = $1"
        async with connection(self._pool) as conn:
            row = await conn.fetchrow(query, session_id)
        return row_to_item(row) if row else None

    async def list_items(
        self, status: Optional[RetryStatus] = None, limit: int = 100
    ) -> list[RetryQueueItem]:
        """List items in dequeue order, optionally filtered by status."""
        params: list[Any] = []
        where = ""
        if status is not None:
            where = "WHERE status = $1"
            params.append(status.value)
        params.append(limit)
        query = f"""
            SELECT * FROM retry_queue
            {where}
            ORDER BY priority ASC, created_at ASC
            LIMIT ${len(params)}
        """
        async with connection(self._pool) as conn:
            rows = await conn.fetch(query, *params)
        return [row_to_item(row) for row in rows]

    async def stats(self) -> QueueStats:
        query = "SELECT status, COUNT(*) AS cnt FROM retry_queue GROUP BY status"
        async with connection(self._pool) as conn:
            rows = await conn.fetch(query)
        stats = QueueStats()
        for row in rows:
            if hasattr(stats, row["status"]):
                setattr(stats, row["status"], row["cnt"])
        return stats


class InMemoryRetryQueueRepository(MemoryStoreMixin):
    """Process-local retry queue with the same contract."""

    def __init__(self):
        self._items: dict[str, RetryQueueItem] = {}
        self._ids = itertools.count(1)

    async def enqueue(self, item: RetryQueueItem) -> Optional[RetryQueueItem]:
        self._check_available()
        existing = self._items.get(item.session_id)
        if existing is not None and existing.status.is_active:
            return None
        stored = dataclasses.replace(
            item,
            id=existing.id if existing else next(self._ids),
            retry_count=0,
            status=RetryStatus.PENDING,
            last_error=None,
            last_attempt_at=None,
            created_at=existing.created_at if existing else item.next_retry_at,
            updated_at=item.next_retry_at,
        )
        self._items[item.session_id] = stored
        return dataclasses.replace(stored)

    async def claim_next(self, now: datetime) -> Optional[RetryQueueItem]:
        self._check_available()
        due = [
            i
            for i in self._items.values()
            if i.status == RetryStatus.PENDING and i.next_retry_at <= now
        ]
        if not due:
            return None
        item = min(due, key=lambda i: (int(i.priority), i.created_at, i.id))
        item.status = RetryStatus.PROCESSING
        item.last_attempt_at = now
        item.updated_at = now
        return dataclasses.replace(item)

    async def mark_completed(self, session_id: str, now: datetime) -> bool:
        self._check_available()
        item = self._items.get(session_id)
        if item is None or item.status != RetryStatus.PROCESSING:
            return False
        item.status = RetryStatus.COMPLETED
        item.updated_at = now
        return True

    async def record_failure(
        self,
        session_id: str,
        error: Optional[str],
        now: datetime,
        delay_fn: DelayFn,
    ) -> tuple[RetryDecision, Optional[RetryQueueItem]]:
        self._check_available()
        item = self._items.get(session_id)
        if item is None or not item.status.is_active:
            return RetryDecision.NOOP, None
        decision, item.retry_count, item.status, item.next_retry_at = _plan_failure(
            item, now, delay_fn
        )
        item.last_error = error
        item.updated_at = now
        return decision, dataclasses.replace(item)

    async def cancel(self, session_id: str, now: datetime) -> bool:
        self._check_available()
        item = self._items.get(session_id)
        if item is None:
            return False
        item.status = RetryStatus.CANCELLED
        item.updated_at = now
        return True

    async def reclaim_stale(self, cutoff: datetime, now: datetime) -> list[str]:
        self._check_available()
        reclaimed = []
        for item in self._items.values():
            if (
                item.status == RetryStatus.PROCESSING
                and item.last_attempt_at is not None
                and item.last_attempt_at < cutoff
            ):
                item.status = RetryStatus.PENDING
                item.next_retry_at = now
                item.updated_at = now
                reclaimed.append(item.session_id)
        return reclaimed

    async def get(self, session_id: str) -> Optional[RetryQueueItem]:
        self._check_available()
        item = self._items.get(session_id)
        return dataclasses.replace(item) if item else None

    async def list_items(
        self, status: Optional[RetryStatus] = None, limit: int = 100
    ) -> list[RetryQueueItem]:
        self._check_available()
        items = sorted(
            (i for i in self._items.values() if status is None or i.status == status),
            key=lambda i: (int(i.priority), i.created_at, i.id),
        )
        return [dataclasses.replace(i) for i in items[:limit]]

    async def stats(self) -> QueueStats:
        self._check_available()
        stats = QueueStats()
        for item in self._items.values():
            name = item.status.value
            setattr(stats, name, getattr(stats, name) + 1)
        return stats
