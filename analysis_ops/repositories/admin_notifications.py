"""Repository for the admin alert audit trail."""

import dataclasses
import itertools
from dataclasses import dataclass
from typing import Optional

import structlog

from analysis_ops.repositories.utils import (
    MemoryStoreMixin,
    connection,
    dump_json,
    ensure_json,
)
from analysis_ops.services.alerts.models import Alert, AlertSeverity, AlertType

logger = structlog.get_logger(__name__)


@dataclass
class StoredAlert:
    id: int
    alert: Alert


def row_to_stored_alert(row) -> StoredAlert:
    return StoredAlert(
        id=row["id"],
        alert=Alert(
            type=AlertType(row["alert_type"]),
            title=row["title"],
            message=row["message"],
            severity=AlertSeverity(row["severity"]),
            metadata=ensure_json(row["metadata"]),
            created_at=row["created_at"],
        ),
    )


class AdminNotificationRepository:
    """Postgres-backed alert audit log."""

    def __init__(self, pool):
        self._pool = pool

    async def insert(self, alert: Alert) -> int:
        query = """
            INSERT INTO admin_notifications (
                alert_type, title, message, severity, metadata, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING id
        """
        async with connection(self._pool) as conn:
            return await conn.fetchval(
                query,
                alert.type.value,
                alert.title,
                alert.message,
                alert.severity.value,
                dump_json(alert.metadata),
                alert.created_at,
            )

    async def list_recent(
        self, limit: int = 50, alert_type: Optional[AlertType] = None
    ) -> list[StoredAlert]:
        """List alerts, newest first."""
        if alert_type is not None:
            query = """
                SELECT * FROM admin_notifications
                WHERE alert_type = $1
                ORDER BY created_at DESC
                LIMIT $2
            """
            params = [alert_type.value, limit]
        else:
            query = """
                SELECT * FROM admin_notifications
                ORDER BY created_at DESC
                LIMIT $1
            """
            params = [limit]

        async with connection(self._pool) as conn:
            rows = await conn.fetch(query, *params)
        return [row_to_stored_alert(row) for row in rows]


class InMemoryAdminNotificationRepository(MemoryStoreMixin):
    def __init__(self):
        self._rows: list[StoredAlert] = []
        self._ids = itertools.count(1)

    async def insert(self, alert: Alert) -> int:
        self._check_available()
        stored = StoredAlert(id=next(self._ids), alert=dataclasses.replace(alert))
        self._rows.append(stored)
        return stored.id

    async def list_recent(
        self, limit: int = 50, alert_type: Optional[AlertType] = None
    ) -> list[StoredAlert]:
        self._check_available()
        rows = [
            r for r in self._rows if alert_type is None or r.alert.type == alert_type
        ]
        rows.sort(key=lambda r: (r.alert.created_at, r.id), reverse=True)
        return rows[:limit]
