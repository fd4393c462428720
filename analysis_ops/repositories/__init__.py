"""Postgres repositories and their in-memory counterparts."""

from analysis_ops.repositories.admin_notifications import (
    AdminNotificationRepository,
    InMemoryAdminNotificationRepository,
)
from analysis_ops.repositories.analysis_metrics import (
    AnalysisMetricsRepository,
    InMemoryAnalysisMetricsRepository,
)
from analysis_ops.repositories.operation_events import (
    InMemoryOperationEventRepository,
    OperationEventRepository,
)
from analysis_ops.repositories.operations import (
    InMemoryOperationRepository,
    OperationRepository,
)
from analysis_ops.repositories.retry_queue import (
    InMemoryRetryQueueRepository,
    RetryQueueRepository,
)

__all__ = [
    "AdminNotificationRepository",
    "AnalysisMetricsRepository",
    "OperationEventRepository",
    "OperationRepository",
    "RetryQueueRepository",
    "InMemoryAdminNotificationRepository",
    "InMemoryAnalysisMetricsRepository",
    "InMemoryOperationEventRepository",
    "InMemoryOperationRepository",
    "InMemoryRetryQueueRepository",
]
