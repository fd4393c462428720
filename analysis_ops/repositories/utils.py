"""Utility functions for repository operations."""

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Union

from analysis_ops.core.errors import StoreUnavailableError, is_store_unavailable_error


def ensure_json(value: Optional[Union[str, dict, list]]) -> Optional[Union[dict, list]]:
    """
    Normalize JSONB values from database to Python dict/list.

    asyncpg returns JSONB as str unless a codec is configured on the pool,
    so rows are normalized here regardless of pool setup.

    Raises:
        TypeError: If value is an unexpected type
        json.JSONDecodeError: If string is not valid JSON
    """
    if value is None:
        return None

    if isinstance(value, (dict, list)):
        return value

    if isinstance(value, str):
        return json.loads(value)

    raise TypeError(
        f"Expected str, dict, list, or None for JSONB value, got {type(value).__name__}"
    )


def dump_json(value: Optional[Union[dict, list]]) -> Optional[str]:
    """Serialize a dict/list for a JSONB parameter."""
    if value is None:
        return None
    return json.dumps(value, default=str)


@asynccontextmanager
async def connection(pool) -> AsyncIterator[Any]:
    """Acquire a pooled connection, mapping outages to StoreUnavailableError.

    A missing pool (store not configured or unreachable at startup) is
    reported the same way as a dropped connection.
    """
    if pool is None:
        raise StoreUnavailableError("database pool not available")
    try:
        async with pool.acquire() as conn:
            yield conn
    except StoreUnavailableError:
        raise
    except Exception as exc:
        if is_store_unavailable_error(exc):
            raise StoreUnavailableError(str(exc) or type(exc).__name__) from exc
        raise


class MemoryStoreMixin:
    """Availability switch shared by the in-memory repositories.

    Tests flip `available` to exercise degraded-store behavior.
    """

    available: bool = True

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("memory store marked unavailable")
