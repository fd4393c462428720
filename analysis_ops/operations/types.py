"""Operation lifecycle type definitions."""

from enum import Enum


class Tier(str, Enum):
    """Purchase tiers, lowest to highest."""

    STANDARD = "standard"
    MEDIUM = "medium"
    FULL = "full"


class OperationState(str, Enum):
    """Operation lifecycle states."""

    INITIALIZED = "initialized"
    GENERATING = "generating"
    PART_COMPLETED = "part_completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        """Check if this state is terminal (operation won't change)."""
        return self in (OperationState.COMPLETED, OperationState.CANCELLED)


class EventType(str, Enum):
    """Operation event log entry types."""

    OPERATION_STARTED = "operation_started"
    PART_STARTED = "part_started"
    PART_COMPLETED = "part_completed"
    PART_FAILED = "part_failed"
    OPERATION_COMPLETED = "operation_completed"
    OPERATION_FAILED = "operation_failed"
    OPERATION_PAUSED = "operation_paused"
    OPERATION_RESUMED = "operation_resumed"
    OPERATION_CANCELLED = "operation_cancelled"
    OPERATION_RETRIED = "operation_retried"
    ADMIN_INTERVENTION = "admin_intervention"


class ActorType(str, Enum):
    """Who performed an action."""

    SYSTEM = "system"
    ADMIN = "admin"
    USER = "user"


class TriggerSource(str, Enum):
    """What caused the most recent transition."""

    USER = "user"
    SYSTEM = "system"
    ADMIN = "admin"
    RETRY_QUEUE = "retry_queue"


class AdminAction(str, Enum):
    """Operator actions recorded as admin_intervention events."""

    VIEW_ANALYSIS = "view_analysis"
    VIEW_PARTIAL_RESULTS = "view_partial_results"
    TRIGGER_REGENERATION = "trigger_regeneration"
    PAUSE_OPERATION = "pause_operation"
    RESUME_OPERATION = "resume_operation"
    CANCEL_OPERATION = "cancel_operation"
    MODIFY_PRIORITY = "modify_priority"
    ACKNOWLEDGE_ALERT = "acknowledge_alert"
    RESET_CIRCUIT_BREAKER = "reset_circuit_breaker"
    EXPORT_DATA = "export_data"
    OTHER = "other"
