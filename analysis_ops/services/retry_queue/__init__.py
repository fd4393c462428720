"""Retry queue - durable redrive of failed jobs with backoff."""

from analysis_ops.services.retry_queue.executor import JobExecutor, load_executor
from analysis_ops.services.retry_queue.models import (
    QueueStats,
    RetryDecision,
    RetryPriority,
    RetryQueueItem,
    RetryStatus,
)
from analysis_ops.services.retry_queue.processor import IterationResult, RetryQueueProcessor
from analysis_ops.services.retry_queue.queue import RetryQueue, compute_retry_delay

__all__ = [
    "RetryQueue",
    "RetryQueueProcessor",
    "IterationResult",
    "compute_retry_delay",
    # Executor
    "JobExecutor",
    "load_executor",
    # Models
    "QueueStats",
    "RetryDecision",
    "RetryPriority",
    "RetryQueueItem",
    "RetryStatus",
]
