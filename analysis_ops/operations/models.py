"""Operation data models."""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from analysis_ops.operations.types import (
    ActorType,
    EventType,
    OperationState,
    Tier,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def progress_percentage(completed_parts: int, total_parts: int) -> int:
    """round(completed / total * 100), rounding halves up."""
    if total_parts <= 0:
        return 0
    return int(math.floor(completed_parts / total_parts * 100 + 0.5))


@dataclass
class Operation:
    """One purchased analysis job."""

    operation_id: str
    session_id: str
    tier: Tier
    state: OperationState
    total_parts: int

    # Progress
    completed_parts: int = 0
    current_part: Optional[int] = None

    # Lifecycle timestamps
    started_at: Optional[datetime] = None
    last_part_completed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_completion_at: Optional[datetime] = None

    # Error tracking
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    failed_part: Optional[int] = None
    retry_count: int = 0

    triggered_by: str = "system"
    admin_notes: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def progress_percentage(self) -> int:
        """Completion percentage, derived from part counts on every read."""
        return progress_percentage(self.completed_parts, self.total_parts)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


@dataclass
class OperationEvent:
    """An immutable entry in an operation's event log."""

    operation_id: str
    session_id: str
    event_type: EventType
    previous_state: Optional[OperationState] = None
    new_state: Optional[OperationState] = None
    part_number: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    token_count: Optional[int] = None
    actor_type: ActorType = ActorType.SYSTEM
    actor_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None
