"""Repository for the append-only operation event log."""

import itertools
from typing import Any, Optional

import structlog

from analysis_ops.operations.models import OperationEvent
from analysis_ops.operations.types import ActorType, EventType, OperationState
from analysis_ops.repositories.utils import (
    MemoryStoreMixin,
    connection,
    dump_json,
    ensure_json,
)

logger = structlog.get_logger(__name__)

INSERT_EVENT_SQL = """
    INSERT INTO operation_events (
        operation_id, session_id, event_type, previous_state, new_state,
        part_number, error_code, error_message, duration_ms, token_count,
        actor_type, actor_id, metadata, created_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
    RETURNING id
"""


def _event_params(event: OperationEvent) -> list[Any]:
    return [
        event.operation_id,
        event.session_id,
        event.event_type.value,
        event.previous_state.value if event.previous_state else None,
        event.new_state.value if event.new_state else None,
        event.part_number,
        event.error_code,
        event.error_message,
        event.duration_ms,
        event.token_count,
        event.actor_type.value,
        event.actor_id,
        dump_json(event.metadata),
        event.created_at,
    ]


async def insert_event(conn, event: OperationEvent) -> OperationEvent:
    """Insert an event on an already-acquired connection.

    Used inside the operation repository's transition transaction.
    """
    event.id = await conn.fetchval(INSERT_EVENT_SQL, *_event_params(event))
    return event


def row_to_event(row) -> OperationEvent:
    """Convert a database row to an OperationEvent."""
    return OperationEvent(
        id=row["id"],
        operation_id=row["operation_id"],
        session_id=row["session_id"],
        event_type=EventType(row["event_type"]),
        previous_state=(
            OperationState(row["previous_state"]) if row["previous_state"] else None
        ),
        new_state=OperationState(row["new_state"]) if row["new_state"] else None,
        part_number=row["part_number"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        duration_ms=row["duration_ms"],
        token_count=row["token_count"],
        actor_type=ActorType(row["actor_type"]),
        actor_id=row["actor_id"],
        metadata=ensure_json(row["metadata"]),
        created_at=row["created_at"],
    )


class OperationEventRepository:
    """Postgres-backed event log."""

    def __init__(self, pool):
        self._pool = pool

    async def append(self, event: OperationEvent) -> OperationEvent:
        """Append one event.

        Raises StoreUnavailableError when the store cannot be reached.
        """
        async with connection(self._pool) as conn:
            await insert_event(conn, event)
        logger.debug(
            "operation_event_appended",
            operation_id=event.operation_id,
            event_type=event.event_type.value,
        )
        return event

    async def list_for_operation(
        self, operation_id: str, limit: Optional[int] = None
    ) -> list[OperationEvent]:
        """List events for an operation, oldest first."""
        query = """
            SELECT * FROM operation_events
            WHERE operation_id = $1
            ORDER BY created_at ASC, id ASC
        """
        params: list[Any] = [operation_id]
        if limit is not None:
            query += " LIMIT $2"
            params.append(limit)

        async with connection(self._pool) as conn:
            rows = await conn.fetch(query, *params)
        return [row_to_event(row) for row in rows]


class InMemoryOperationEventRepository(MemoryStoreMixin):
    """Process-local event log with the same contract."""

    def __init__(self):
        self._events: list[OperationEvent] = []
        self._ids = itertools.count(1)

    def _store(self, event: OperationEvent) -> OperationEvent:
        event.id = next(self._ids)
        self._events.append(event)
        return event

    async def append(self, event: OperationEvent) -> OperationEvent:
        self._check_available()
        return self._store(event)

    async def list_for_operation(
        self, operation_id: str, limit: Optional[int] = None
    ) -> list[OperationEvent]:
        self._check_available()
        events = sorted(
            (e for e in self._events if e.operation_id == operation_id),
            key=lambda e: (e.created_at, e.id),
        )
        return events[:limit] if limit is not None else events
