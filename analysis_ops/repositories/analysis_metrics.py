"""Repository for raw analysis metrics and hourly aggregates."""

import dataclasses
import itertools
from datetime import datetime
from typing import Any, Optional

import structlog

from analysis_ops.operations.types import Tier
from analysis_ops.repositories.utils import (
    MemoryStoreMixin,
    connection,
    dump_json,
    ensure_json,
)
from analysis_ops.services.metrics.models import (
    HourlyMetrics,
    MetricEvent,
    MetricEventType,
)

logger = structlog.get_logger(__name__)

_HOURLY_COLUMNS = [f.name for f in dataclasses.fields(HourlyMetrics)]


def row_to_metric(row) -> MetricEvent:
    return MetricEvent(
        id=row["id"],
        session_id=row["session_id"],
        tier=Tier(row["tier"]),
        event_type=MetricEventType(row["event_type"]),
        duration_ms=row["duration_ms"],
        part_number=row["part_number"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        metadata=ensure_json(row["metadata"]),
        created_at=row["created_at"],
    )


def row_to_hourly(row) -> HourlyMetrics:
    return HourlyMetrics(**{name: row[name] for name in _HOURLY_COLUMNS})


class AnalysisMetricsRepository:
    """Postgres-backed metrics storage."""

    def __init__(self, pool):
        self._pool = pool

    async def insert(self, metric: MetricEvent) -> int:
        query = """
            INSERT INTO analysis_metrics (
                session_id, tier, event_type, duration_ms, part_number,
                error_code, error_message, metadata, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING id
        """
        async with connection(self._pool) as conn:
            return await conn.fetchval(
                query,
                metric.session_id,
                metric.tier.value,
                metric.event_type.value,
                metric.duration_ms,
                metric.part_number,
                metric.error_code,
                metric.error_message,
                dump_json(metric.metadata),
                metric.created_at,
            )

    async def list_between(
        self,
        start: datetime,
        end: datetime,
        event_type: Optional[MetricEventType] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[MetricEvent]:
        """Raw metrics with start <= created_at < end."""
        params: list[Any] = [start, end]
        type_filter = ""
        if event_type is not None:
            params.append(event_type.value)
            type_filter = f"AND event_type = ${len(params)}"
        order = "DESC" if newest_first else "ASC"
        limit_clause = ""
        if limit is not None:
            params.append(limit)
            limit_clause = f"LIMIT ${len(params)}"

        query = f"""
            SELECT * FROM analysis_metrics
            WHERE created_at >= $1 AND created_at < $2
            {type_filter}
            ORDER BY created_at {order}
            {limit_clause}
        """
        async with connection(self._pool) as conn:
            rows = await conn.fetch(query, *params)
        return [row_to_metric(row) for row in rows]

    async def upsert_hourly(self, hourly: HourlyMetrics) -> None:
        columns = ", ".join(_HOURLY_COLUMNS)
        placeholders = ", ".join(f"${i}" for i in range(1, len(_HOURLY_COLUMNS) + 1))
        updates = ", ".join(
            f"{name} = EXCLUDED.{name}" for name in _HOURLY_COLUMNS if name != "hour_start"
        )
        query = f"""
            INSERT INTO hourly_metrics ({columns})
            VALUES ({placeholders})
            ON CONFLICT (hour_start) DO UPDATE SET {updates}, updated_at = now()
        """
        values = [getattr(hourly, name) for name in _HOURLY_COLUMNS]
        async with connection(self._pool) as conn:
            await conn.execute(query, *values)

    async def list_hourly(self, start: datetime, end: datetime) -> list[HourlyMetrics]:
        """Hourly rows with start <= hour_start <= end, oldest first."""
        query = """
            SELECT * FROM hourly_metrics
            WHERE hour_start >= $1 AND hour_start <= $2
            ORDER BY hour_start ASC
        """
        async with connection(self._pool) as conn:
            rows = await conn.fetch(query, start, end)
        return [row_to_hourly(row) for row in rows]


class InMemoryAnalysisMetricsRepository(MemoryStoreMixin):
    def __init__(self):
        self._metrics: list[MetricEvent] = []
        self._hourly: dict[datetime, HourlyMetrics] = {}
        self._ids = itertools.count(1)

    async def insert(self, metric: MetricEvent) -> int:
        self._check_available()
        stored = dataclasses.replace(metric, id=next(self._ids))
        self._metrics.append(stored)
        return stored.id

    async def list_between(
        self,
        start: datetime,
        end: datetime,
        event_type: Optional[MetricEventType] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[MetricEvent]:
        self._check_available()
        rows = sorted(
            (
                m
                for m in self._metrics
                if start <= m.created_at < end
                and (event_type is None or m.event_type == event_type)
            ),
            key=lambda m: (m.created_at, m.id),
            reverse=newest_first,
        )
        return rows[:limit] if limit is not None else rows

    async def upsert_hourly(self, hourly: HourlyMetrics) -> None:
        self._check_available()
        self._hourly[hourly.hour_start] = dataclasses.replace(hourly)

    async def list_hourly(self, start: datetime, end: datetime) -> list[HourlyMetrics]:
        self._check_available()
        return [
            dataclasses.replace(self._hourly[h])
            for h in sorted(self._hourly)
            if start <= h <= end
        ]
