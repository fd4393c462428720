"""Operation state machine.

Pure transition validation, tier configuration and progress arithmetic.
Every mutator in the operation service calls ensure_transition() before it
touches the store, so an invalid change is rejected before anything is
written.

Transition table:

    initialized    -> generating, cancelled
    generating     -> part_completed, failed, paused, cancelled
    part_completed -> generating, completed, paused, cancelled
    paused         -> generating, cancelled
    failed         -> generating, cancelled
    completed      -> (terminal)
    cancelled      -> (terminal)
"""

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Union

from analysis_ops.core.errors import InvalidTransitionError, UnknownTierError
from analysis_ops.operations.models import Operation, OperationEvent, progress_percentage
from analysis_ops.operations.types import EventType, OperationState, Tier

StateLike = Union[OperationState, str]

VALID_TRANSITIONS: dict[OperationState, frozenset[OperationState]] = {
    OperationState.INITIALIZED: frozenset(
        {OperationState.GENERATING, OperationState.CANCELLED}
    ),
    OperationState.GENERATING: frozenset(
        {
            OperationState.PART_COMPLETED,
            OperationState.FAILED,
            OperationState.PAUSED,
            OperationState.CANCELLED,
        }
    ),
    OperationState.PART_COMPLETED: frozenset(
        {
            OperationState.GENERATING,
            OperationState.COMPLETED,
            OperationState.PAUSED,
            OperationState.CANCELLED,
        }
    ),
    OperationState.PAUSED: frozenset(
        {OperationState.GENERATING, OperationState.CANCELLED}
    ),
    OperationState.FAILED: frozenset(
        {OperationState.GENERATING, OperationState.CANCELLED}
    ),
    OperationState.COMPLETED: frozenset(),
    OperationState.CANCELLED: frozenset(),
}


def _coerce_state(state: StateLike) -> Optional[OperationState]:
    if isinstance(state, OperationState):
        return state
    try:
        return OperationState(state)
    except ValueError:
        return None


def is_valid_transition(from_state: StateLike, to_state: StateLike) -> bool:
    """Check whether from_state -> to_state is allowed.

    Unknown state names are never valid, and no state is its own successor.
    """
    source = _coerce_state(from_state)
    target = _coerce_state(to_state)
    if source is None or target is None:
        return False
    return target in VALID_TRANSITIONS[source]


def ensure_transition(from_state: StateLike, to_state: StateLike) -> None:
    """Raise InvalidTransitionError unless the transition is allowed."""
    if not is_valid_transition(from_state, to_state):
        raise InvalidTransitionError(
            getattr(from_state, "value", str(from_state)),
            getattr(to_state, "value", str(to_state)),
        )


# =============================================================================
# Tier configuration
# =============================================================================


@dataclass(frozen=True)
class TierConfig:
    """Fixed per-tier generation parameters."""

    tier: Tier
    total_parts: int
    estimated_part_duration_ms: int

    @property
    def estimated_total_duration_ms(self) -> int:
        return self.total_parts * self.estimated_part_duration_ms


TIER_CONFIGS: dict[Tier, TierConfig] = {
    Tier.STANDARD: TierConfig(Tier.STANDARD, total_parts=1, estimated_part_duration_ms=30_000),
    Tier.MEDIUM: TierConfig(Tier.MEDIUM, total_parts=2, estimated_part_duration_ms=45_000),
    Tier.FULL: TierConfig(Tier.FULL, total_parts=6, estimated_part_duration_ms=60_000),
}

TIER_PARTS: dict[Tier, int] = {t: c.total_parts for t, c in TIER_CONFIGS.items()}
ESTIMATED_PART_DURATION_MS: dict[Tier, int] = {
    t: c.estimated_part_duration_ms for t, c in TIER_CONFIGS.items()
}


def coerce_tier(tier: Union[Tier, str]) -> Tier:
    """Resolve a tier name, raising UnknownTierError for anything else."""
    if isinstance(tier, Tier):
        return tier
    try:
        return Tier(tier)
    except ValueError:
        raise UnknownTierError(tier) from None


def get_tier_config(tier: Union[Tier, str]) -> TierConfig:
    return TIER_CONFIGS[coerce_tier(tier)]


# =============================================================================
# Progress
# =============================================================================


def estimate_completion_at(
    tier: Union[Tier, str], completed_parts: int, now: datetime
) -> datetime:
    """now + remaining parts x estimated per-part duration."""
    config = get_tier_config(tier)
    remaining = max(config.total_parts - completed_parts, 0)
    return now + timedelta(milliseconds=remaining * config.estimated_part_duration_ms)


# =============================================================================
# Event replay
# =============================================================================


def apply_event(operation: Operation, event: OperationEvent) -> Operation:
    """Return the operation view after applying one event."""
    op = dataclasses.replace(operation)
    ts = event.created_at

    if event.event_type == EventType.OPERATION_STARTED:
        op.started_at = op.started_at or ts
    elif event.event_type == EventType.PART_STARTED:
        op.current_part = event.part_number
    elif event.event_type == EventType.PART_COMPLETED:
        op.completed_parts = min(op.completed_parts + 1, op.total_parts)
        op.last_part_completed_at = ts
        op.current_part = None
    elif event.event_type in (EventType.PART_FAILED, EventType.OPERATION_FAILED):
        op.last_error = event.error_message
        op.last_error_at = ts
        op.failed_part = event.part_number
    elif event.event_type == EventType.OPERATION_COMPLETED:
        op.completed_at = ts
        op.current_part = None
    elif event.event_type == EventType.ADMIN_INTERVENTION:
        notes = (event.metadata or {}).get("notes")
        if notes:
            op.admin_notes = notes

    # retry_count moves only on failed -> generating, whichever event carries it
    if (
        event.previous_state == OperationState.FAILED
        and event.new_state == OperationState.GENERATING
    ):
        op.retry_count += 1

    if event.new_state is not None:
        op.state = event.new_state
    op.updated_at = ts
    return op


def replay_events(
    operation: Operation, events: Iterable[OperationEvent]
) -> Operation:
    """Rebuild an operation's state from its event log.

    Starts from the operation's identity and tier with all progress reset,
    then applies events in created_at order.
    """
    config = get_tier_config(operation.tier)
    view = Operation(
        operation_id=operation.operation_id,
        session_id=operation.session_id,
        tier=config.tier,
        state=OperationState.INITIALIZED,
        total_parts=config.total_parts,
        triggered_by=operation.triggered_by,
        created_at=operation.created_at,
        updated_at=operation.created_at,
    )
    ordered = sorted(events, key=lambda e: (e.created_at, e.id or 0))
    for event in ordered:
        view = apply_event(view, event)
    return view
