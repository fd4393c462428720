"""Analysis operation lifecycle: state machine, event log replay, service."""

from analysis_ops.operations.models import Operation, OperationEvent
from analysis_ops.operations.types import (
    ActorType,
    AdminAction,
    EventType,
    OperationState,
    Tier,
    TriggerSource,
)

__all__ = [
    "ActorType",
    "AdminAction",
    "EventType",
    "Operation",
    "OperationEvent",
    "OperationState",
    "Tier",
    "TriggerSource",
]
