"""Operation lifecycle service.

Every mutator validates the transition first, then builds the event and
derives the new operation view from it with apply_event(), so the stored
row always equals what replaying the event log would produce. The row
update and the event insert go to the store in one conditional write.

Mutators accept either an Operation (checked before any store access) or
an operation_id (loaded first). When the store is unreachable they log
and return None; invalid transitions always raise.
"""

import dataclasses
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

import structlog

from analysis_ops.core.errors import (
    InvalidTransitionError,
    OperationNotFoundError,
    StoreUnavailableError,
    truncate_error,
)
from analysis_ops.operations.models import Operation, OperationEvent, utcnow
from analysis_ops.operations.state_machine import (
    apply_event,
    coerce_tier,
    ensure_transition,
    estimate_completion_at,
    get_tier_config,
    replay_events,
)
from analysis_ops.operations.types import (
    ActorType,
    AdminAction,
    EventType,
    OperationState,
    Tier,
    TriggerSource,
)

logger = structlog.get_logger(__name__)

OperationRef = Union[Operation, str]


@dataclass
class OperationProgress:
    """Read-side progress view; percentage is derived, never stored."""

    operation_id: str
    session_id: str
    tier: Tier
    state: OperationState
    completed_parts: int
    total_parts: int
    percentage: int
    current_part: Optional[int]
    estimated_completion_at: Optional[datetime]
    is_terminal: bool


class OperationService:
    """Drives operations through the state machine with an audited event log."""

    def __init__(
        self,
        operations,
        events,
        error_max_chars: int = 1000,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self._operations = operations
        self._events = events
        self._error_max_chars = error_max_chars
        self._now = now_fn

    # =========================================================================
    # Internals
    # =========================================================================

    async def _resolve(self, ref: OperationRef) -> Optional[Operation]:
        """Return the operation, or None when the store is unavailable."""
        if isinstance(ref, Operation):
            return ref
        try:
            op = await self._operations.get(ref)
        except StoreUnavailableError as e:
            logger.warning("operation_load_degraded", operation_id=ref, error=str(e))
            return None
        if op is None:
            raise OperationNotFoundError(f"operation {ref} not found")
        return op

    def _event(
        self,
        op: Operation,
        event_type: EventType,
        new_state: OperationState,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        **fields: Any,
    ) -> OperationEvent:
        return OperationEvent(
            operation_id=op.operation_id,
            session_id=op.session_id,
            event_type=event_type,
            previous_state=op.state,
            new_state=new_state,
            actor_type=actor_type,
            actor_id=actor_id,
            created_at=self._now(),
            **fields,
        )

    async def _commit(
        self,
        op: Operation,
        event: OperationEvent,
        triggered_by: Union[TriggerSource, str],
    ) -> Optional[Operation]:
        if event.new_state != op.state:
            ensure_transition(op.state, event.new_state)

        updated = apply_event(op, event)
        updated.triggered_by = getattr(triggered_by, "value", triggered_by)
        if updated.state.is_terminal:
            updated.estimated_completion_at = None
        else:
            updated.estimated_completion_at = estimate_completion_at(
                updated.tier, updated.completed_parts, event.created_at
            )

        try:
            saved = await self._operations.save_transition(updated, op.state, event)
        except StoreUnavailableError as e:
            logger.warning(
                "operation_transition_degraded",
                operation_id=op.operation_id,
                event_type=event.event_type.value,
                error=str(e),
            )
            return None

        logger.info(
            "operation_transition",
            operation_id=op.operation_id,
            session_id=op.session_id,
            event_type=event.event_type.value,
            from_state=op.state.value,
            to_state=saved.state.value,
            completed_parts=saved.completed_parts,
        )
        return saved

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_operation(
        self,
        session_id: str,
        tier: Union[Tier, str],
        triggered_by: Union[TriggerSource, str] = TriggerSource.SYSTEM,
    ) -> Optional[Operation]:
        """Create an operation in `initialized`; idempotent per session."""
        config = get_tier_config(coerce_tier(tier))
        now = self._now()
        op = Operation(
            operation_id=str(uuid.uuid4()),
            session_id=session_id,
            tier=config.tier,
            state=OperationState.INITIALIZED,
            total_parts=config.total_parts,
            estimated_completion_at=estimate_completion_at(config.tier, 0, now),
            triggered_by=getattr(triggered_by, "value", triggered_by),
            created_at=now,
            updated_at=now,
        )
        try:
            created = await self._operations.create(op)
        except StoreUnavailableError as e:
            logger.warning("operation_create_degraded", session_id=session_id, error=str(e))
            return None

        logger.info(
            "operation_created",
            operation_id=created.operation_id,
            session_id=session_id,
            tier=config.tier.value,
            total_parts=config.total_parts,
        )
        return created

    async def start_operation(
        self,
        ref: OperationRef,
        triggered_by: Union[TriggerSource, str] = TriggerSource.SYSTEM,
    ) -> Optional[Operation]:
        """initialized -> generating."""
        op = await self._resolve(ref)
        if op is None:
            return None
        if op.state != OperationState.INITIALIZED:
            raise InvalidTransitionError(op.state.value, OperationState.GENERATING.value)
        event = self._event(op, EventType.OPERATION_STARTED, OperationState.GENERATING)
        return await self._commit(op, event, triggered_by)

    async def start_part(
        self,
        ref: OperationRef,
        part_number: int,
        triggered_by: Union[TriggerSource, str] = TriggerSource.SYSTEM,
    ) -> Optional[Operation]:
        """Mark a part as in progress.

        Moves to `generating` when needed; while already generating only the
        event is appended.
        """
        op = await self._resolve(ref)
        if op is None:
            return None
        if not 1 <= part_number <= op.total_parts:
            raise ValueError(
                f"part_number {part_number} outside 1..{op.total_parts}"
            )
        if op.state != OperationState.GENERATING:
            ensure_transition(op.state, OperationState.GENERATING)
        event = self._event(
            op, EventType.PART_STARTED, OperationState.GENERATING, part_number=part_number
        )
        return await self._commit(op, event, triggered_by)

    async def complete_part(
        self,
        ref: OperationRef,
        part_number: Optional[int] = None,
        duration_ms: Optional[int] = None,
        token_count: Optional[int] = None,
        triggered_by: Union[TriggerSource, str] = TriggerSource.SYSTEM,
    ) -> Optional[Operation]:
        """generating -> part_completed, then -> completed once all parts are done."""
        op = await self._resolve(ref)
        if op is None:
            return None
        ensure_transition(op.state, OperationState.PART_COMPLETED)

        event = self._event(
            op,
            EventType.PART_COMPLETED,
            OperationState.PART_COMPLETED,
            part_number=part_number if part_number is not None else op.current_part,
            duration_ms=duration_ms,
            token_count=token_count,
        )
        saved = await self._commit(op, event, triggered_by)
        if saved is None or saved.completed_parts < saved.total_parts:
            return saved

        done = self._event(
            saved, EventType.OPERATION_COMPLETED, OperationState.COMPLETED
        )
        return await self._commit(saved, done, triggered_by)

    async def fail_operation(
        self,
        ref: OperationRef,
        error_code: Optional[str],
        error_message: Optional[str],
        part_number: Optional[int] = None,
        triggered_by: Union[TriggerSource, str] = TriggerSource.SYSTEM,
    ) -> Optional[Operation]:
        """generating -> failed."""
        op = await self._resolve(ref)
        if op is None:
            return None
        ensure_transition(op.state, OperationState.FAILED)

        part = part_number if part_number is not None else op.current_part
        event = self._event(
            op,
            EventType.PART_FAILED if part is not None else EventType.OPERATION_FAILED,
            OperationState.FAILED,
            part_number=part,
            error_code=error_code,
            error_message=truncate_error(error_message, self._error_max_chars),
        )
        return await self._commit(op, event, triggered_by)

    # =========================================================================
    # Control
    # =========================================================================

    async def pause_operation(
        self,
        ref: OperationRef,
        actor_type: ActorType = ActorType.ADMIN,
        actor_id: Optional[str] = None,
        triggered_by: Union[TriggerSource, str] = TriggerSource.ADMIN,
    ) -> Optional[Operation]:
        op = await self._resolve(ref)
        if op is None:
            return None
        ensure_transition(op.state, OperationState.PAUSED)
        event = self._event(
            op, EventType.OPERATION_PAUSED, OperationState.PAUSED, actor_type, actor_id
        )
        return await self._commit(op, event, triggered_by)

    async def resume_operation(
        self,
        ref: OperationRef,
        actor_type: ActorType = ActorType.ADMIN,
        actor_id: Optional[str] = None,
        triggered_by: Union[TriggerSource, str] = TriggerSource.ADMIN,
    ) -> Optional[Operation]:
        """paused -> generating."""
        op = await self._resolve(ref)
        if op is None:
            return None
        if op.state != OperationState.PAUSED:
            raise InvalidTransitionError(op.state.value, OperationState.GENERATING.value)
        event = self._event(
            op, EventType.OPERATION_RESUMED, OperationState.GENERATING, actor_type, actor_id
        )
        return await self._commit(op, event, triggered_by)

    async def cancel_operation(
        self,
        ref: OperationRef,
        actor_type: ActorType = ActorType.ADMIN,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        triggered_by: Union[TriggerSource, str] = TriggerSource.ADMIN,
    ) -> Optional[Operation]:
        op = await self._resolve(ref)
        if op is None:
            return None
        ensure_transition(op.state, OperationState.CANCELLED)
        event = self._event(
            op,
            EventType.OPERATION_CANCELLED,
            OperationState.CANCELLED,
            actor_type,
            actor_id,
            metadata={"reason": reason} if reason else None,
        )
        return await self._commit(op, event, triggered_by)

    async def retry_operation(
        self,
        ref: OperationRef,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        triggered_by: Union[TriggerSource, str] = TriggerSource.SYSTEM,
    ) -> Optional[Operation]:
        """failed -> generating; increments retry_count."""
        op = await self._resolve(ref)
        if op is None:
            return None
        if op.state != OperationState.FAILED:
            raise InvalidTransitionError(op.state.value, OperationState.GENERATING.value)
        event = self._event(
            op,
            EventType.OPERATION_RETRIED,
            OperationState.GENERATING,
            actor_type,
            actor_id,
            metadata={"retry_count": op.retry_count + 1},
        )
        return await self._commit(op, event, triggered_by)

    async def record_admin_intervention(
        self,
        ref: OperationRef,
        admin_id: str,
        action: Union[AdminAction, str],
        notes: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[Operation]:
        """Audit an operator action without changing state."""
        action = AdminAction(action)
        op = await self._resolve(ref)
        if op is None:
            return None
        payload = dict(metadata or {})
        payload["action"] = action.value
        if notes:
            payload["notes"] = notes
        event = self._event(
            op,
            EventType.ADMIN_INTERVENTION,
            op.state,
            ActorType.ADMIN,
            admin_id,
            metadata=payload,
        )
        return await self._commit(op, event, TriggerSource.ADMIN)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_operation(self, operation_id: str) -> Optional[Operation]:
        try:
            return await self._operations.get(operation_id)
        except StoreUnavailableError as e:
            logger.warning("operation_read_degraded", operation_id=operation_id, error=str(e))
            return None

    async def get_operation_by_session(self, session_id: str) -> Optional[Operation]:
        try:
            return await self._operations.get_by_session(session_id)
        except StoreUnavailableError as e:
            logger.warning("operation_read_degraded", session_id=session_id, error=str(e))
            return None

    async def list_active_operations(self, limit: int = 100) -> list[Operation]:
        try:
            return await self._operations.list_active(limit)
        except StoreUnavailableError as e:
            logger.warning("operation_list_degraded", error=str(e))
            return []

    async def get_progress(self, ref: OperationRef) -> Optional[OperationProgress]:
        if isinstance(ref, Operation):
            op = ref
        else:
            op = await self.get_operation(ref)
        if op is None:
            return None
        return OperationProgress(
            operation_id=op.operation_id,
            session_id=op.session_id,
            tier=op.tier,
            state=op.state,
            completed_parts=op.completed_parts,
            total_parts=op.total_parts,
            percentage=op.progress_percentage,
            current_part=op.current_part,
            estimated_completion_at=op.estimated_completion_at,
            is_terminal=op.is_terminal,
        )

    async def get_events(self, operation_id: str) -> list[OperationEvent]:
        """Event history, oldest first."""
        try:
            return await self._events.list_for_operation(operation_id)
        except StoreUnavailableError as e:
            logger.warning("operation_events_degraded", operation_id=operation_id, error=str(e))
            return []

    # =========================================================================
    # Recovery
    # =========================================================================

    async def reconstruct_from_events(self, operation_id: str) -> Optional[Operation]:
        """Replay the event log into an operation view."""
        op = await self.get_operation(operation_id)
        if op is None:
            return None
        events = await self.get_events(operation_id)
        return replay_events(op, events)

    async def reconcile(self, operation_id: str) -> Optional[Operation]:
        """Repair the stored row from the event log if the two disagree.

        The event log is canonical. Returns the (possibly repaired) row.
        """
        op = await self.get_operation(operation_id)
        if op is None:
            return None
        events = await self.get_events(operation_id)
        if not events:
            return op

        replayed = replay_events(op, events)
        drift = {
            name: (getattr(op, name), getattr(replayed, name))
            for name in _EVENT_DERIVED_FIELDS
            if getattr(op, name) != getattr(replayed, name)
        }
        if not drift:
            return op

        repaired = dataclasses.replace(op)
        for name in _EVENT_DERIVED_FIELDS:
            setattr(repaired, name, getattr(replayed, name))
        repaired.updated_at = self._now()

        try:
            saved = await self._operations.replace(repaired)
        except StoreUnavailableError as e:
            logger.warning("operation_reconcile_degraded", operation_id=operation_id, error=str(e))
            return None

        logger.warning(
            "operation_reconciled",
            operation_id=operation_id,
            fields=sorted(drift),
            stored_state=op.state.value,
            replayed_state=replayed.state.value,
        )
        return saved


_EVENT_DERIVED_FIELDS = (
    "state",
    "completed_parts",
    "current_part",
    "retry_count",
    "started_at",
    "last_part_completed_at",
    "completed_at",
    "last_error",
    "last_error_at",
    "failed_part",
)
