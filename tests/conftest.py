"""Root conftest for test suite.

Shared fixtures: a controllable clock, a mocked asyncpg pool and
engine settings that never read the developer's .env file.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from analysis_ops.config import Settings

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic now_fn for services that take one."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_conn():
    """An asyncpg connection double; configure fetch/fetchrow/execute per test."""
    conn = AsyncMock()
    conn.transaction = MagicMock()
    conn.transaction.return_value.__aenter__ = AsyncMock(return_value=None)
    conn.transaction.return_value.__aexit__ = AsyncMock(return_value=False)
    return conn


@pytest.fixture
def mock_pool(mock_conn):
    """Create a mock asyncpg pool whose acquire() yields mock_conn."""
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = mock_conn
    return pool


@pytest.fixture
def settings() -> Settings:
    """Engine settings for tests: memory store, log-only alerts, no Prometheus."""
    return Settings(
        _env_file=None,
        store_backend="memory",
        database_url=None,
        telegram_bot_token=None,
        telegram_chat_id=None,
        alert_webhook_url=None,
        sentry_dsn=None,
        metrics_enabled=False,
        retry_processor_interval_s=0.01,
        retry_executor_timeout_s=1.0,
        log_json=False,
    )
