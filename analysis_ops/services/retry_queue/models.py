"""Retry queue types and models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional

from analysis_ops.operations.models import utcnow
from analysis_ops.operations.types import Tier


class RetryPriority(IntEnum):
    """Dequeue priority; lower values are served first."""

    HIGH = 1
    MEDIUM = 2
    LOW = 3


class RetryStatus(str, Enum):
    """Queue item status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (RetryStatus.PENDING, RetryStatus.PROCESSING)


class RetryDecision(str, Enum):
    """Outcome of recording a failed attempt."""

    WILL_RETRY = "will_retry"
    EXHAUSTED = "exhausted"
    NOOP = "noop"  # item was no longer processing


@dataclass
class RetryQueueItem:
    """A failed job awaiting (or done with) redrive."""

    session_id: str
    tier: Tier
    problem_statement: str
    email: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 5
    priority: RetryPriority = RetryPriority.MEDIUM
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    next_retry_at: datetime = field(default_factory=utcnow)
    status: RetryStatus = RetryStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class QueueStats:
    """Item counts per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return (
            self.pending + self.processing + self.completed + self.failed + self.cancelled
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "total": self.total,
        }
