"""Repository for analysis operations.

State changes are written together with their event in one transaction.
The update is conditional on the state the caller read, so two writers
racing on the same operation cannot both apply a transition.
"""

import dataclasses
from typing import Any, Optional

import structlog

from analysis_ops.core.errors import ConcurrentModificationError
from analysis_ops.operations.models import Operation, OperationEvent
from analysis_ops.operations.types import OperationState, Tier
from analysis_ops.repositories.operation_events import (
    InMemoryOperationEventRepository,
    insert_event,
)
from analysis_ops.repositories.utils import MemoryStoreMixin, connection

logger = structlog.get_logger(__name__)

_TERMINAL_STATES = [s.value for s in OperationState if s.is_terminal]

_UPDATE_SQL = """
    UPDATE analysis_operations SET
        state = $2,
        completed_parts = $3,
        current_part = $4,
        started_at = $5,
        last_part_completed_at = $6,
        completed_at = $7,
        estimated_completion_at = $8,
        last_error = $9,
        last_error_at = $10,
        failed_part = $11,
        retry_count = $12,
        triggered_by = $13,
        admin_notes = $14,
        updated_at = $15
    WHERE operation_id = $1
"""


def _update_params(op: Operation) -> list[Any]:
    return [
        op.operation_id,
        op.state.value,
        op.completed_parts,
        op.current_part,
        op.started_at,
        op.last_part_completed_at,
        op.completed_at,
        op.estimated_completion_at,
        op.last_error,
        op.last_error_at,
        op.failed_part,
        op.retry_count,
        op.triggered_by,
        op.admin_notes,
        op.updated_at,
    ]


def row_to_operation(row) -> Operation:
    """Convert a database row to an Operation."""
    return Operation(
        operation_id=row["operation_id"],
        session_id=row["session_id"],
        tier=Tier(row["tier"]),
        state=OperationState(row["state"]),
        total_parts=row["total_parts"],
        completed_parts=row["completed_parts"],
        current_part=row["current_part"],
        started_at=row["started_at"],
        last_part_completed_at=row["last_part_completed_at"],
        completed_at=row["completed_at"],
        estimated_completion_at=row["estimated_completion_at"],
        last_error=row["last_error"],
        last_error_at=row["last_error_at"],
        failed_part=row["failed_part"],
        retry_count=row["retry_count"],
        triggered_by=row["triggered_by"],
        admin_notes=row["admin_notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class OperationRepository:
    """Postgres-backed operation store."""

    def __init__(self, pool):
        self._pool = pool

    async def create(self, op: Operation) -> Operation:
        """Insert a new operation; returns the existing row for a known session."""
        query = """
            INSERT INTO analysis_operations (
                operation_id, session_id, tier, state, total_parts,
                completed_parts, retry_count, triggered_by,
                created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (session_id) DO NOTHING
            RETURNING *
        """
        async with connection(self._pool) as conn:
            row = await conn.fetchrow(
                query,
                op.operation_id,
                op.session_id,
                op.tier.value,
                op.state.value,
                op.total_parts,
                op.completed_parts,
                op.retry_count,
                op.triggered_by,
                op.created_at,
                op.updated_at,
            )
            if row is None:
                row = await conn.fetchrow(
                    "SELECT * FROM analysis_operations WHERE session_id = $1",
                    op.session_id,
                )
        return row_to_operation(row)

    async def get(self, operation_id: str) -> Optional[Operation]:
        query = "SELECT * FROM analysis_operations WHERE operation_id = $1"
        async with connection(self._pool) as conn:
            row = await conn.fetchrow(query, operation_id)
        return row_to_operation(row) if row else None

    async def get_by_session(self, session_id: str) -> Optional[Operation]:
        query = "SELECT * FROM analysis_operations WHERE session_id = $1"
        async with connection(self._pool) as conn:
            row = await conn.fetchrow(query, session_id)
        return row_to_operation(row) if row else None

    async def list_active(self, limit: int = 100) -> list[Operation]:
        """List non-terminal operations, oldest first."""
        query = """
            SELECT * FROM analysis_operations
            WHERE state <> ALL($1::text[])
            ORDER BY created_at ASC
            LIMIT $2
        """
        async with connection(self._pool) as conn:
            rows = await conn.fetch(query, _TERMINAL_STATES, limit)
        return [row_to_operation(row) for row in rows]

    async def save_transition(
        self,
        op: Operation,
        expected_state: OperationState,
        event: OperationEvent,
    ) -> Operation:
        """Persist the new operation state and its event atomically.

        Raises ConcurrentModificationError if the stored state is no longer
        expected_state; nothing is written in that case.
        """
        query = _UPDATE_SQL + " AND state = $16 RETURNING *"
        async with connection(self._pool) as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    query, *_update_params(op), expected_state.value
                )
                if row is None:
                    raise ConcurrentModificationError(
                        f"operation {op.operation_id} is no longer {expected_state.value}"
                    )
                await insert_event(conn, event)
        return row_to_operation(row)

    async def replace(self, op: Operation) -> Optional[Operation]:
        """Unconditionally overwrite the mutable columns (repair path)."""
        query = _UPDATE_SQL + " RETURNING *"
        async with connection(self._pool) as conn:
            row = await conn.fetchrow(query, *_update_params(op))
        return row_to_operation(row) if row else None


class InMemoryOperationRepository(MemoryStoreMixin):
    """Process-local operation store sharing an in-memory event log."""

    def __init__(self, events: InMemoryOperationEventRepository):
        self._events = events
        self._by_id: dict[str, Operation] = {}

    @property
    def available(self) -> bool:
        return self._events.available

    @available.setter
    def available(self, value: bool) -> None:
        self._events.available = value

    async def create(self, op: Operation) -> Operation:
        self._check_available()
        for existing in self._by_id.values():
            if existing.session_id == op.session_id:
                return dataclasses.replace(existing)
        self._by_id[op.operation_id] = dataclasses.replace(op)
        return dataclasses.replace(op)

    async def get(self, operation_id: str) -> Optional[Operation]:
        self._check_available()
        op = self._by_id.get(operation_id)
        return dataclasses.replace(op) if op else None

    async def get_by_session(self, session_id: str) -> Optional[Operation]:
        self._check_available()
        for op in self._by_id.values():
            if op.session_id == session_id:
                return dataclasses.replace(op)
        return None

    async def list_active(self, limit: int = 100) -> list[Operation]:
        self._check_available()
        active = sorted(
            (op for op in self._by_id.values() if not op.state.is_terminal),
            key=lambda op: op.created_at,
        )
        return [dataclasses.replace(op) for op in active[:limit]]

    async def save_transition(
        self,
        op: Operation,
        expected_state: OperationState,
        event: OperationEvent,
    ) -> Operation:
        self._check_available()
        stored = self._by_id.get(op.operation_id)
        if stored is None or stored.state != expected_state:
            raise ConcurrentModificationError(
                f"operation {op.operation_id} is no longer {expected_state.value}"
            )
        self._by_id[op.operation_id] = dataclasses.replace(op)
        self._events._store(event)
        return dataclasses.replace(op)

    async def replace(self, op: Operation) -> Optional[Operation]:
        self._check_available()
        if op.operation_id not in self._by_id:
            return None
        self._by_id[op.operation_id] = dataclasses.replace(op)
        return dataclasses.replace(op)
