"""Per-key alert cooldown.

The limiter is an explicit state object with process lifetime. The backing
store is pluggable so several replicas can share one suppression map; the
in-memory store gives per-process suppression only.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

import structlog

from analysis_ops.operations.models import utcnow

logger = structlog.get_logger(__name__)


class AlertRateLimitStore(Protocol):
    """Backing store for last-sent timestamps per alert key."""

    async def get_last_sent(self, key: str) -> Optional[datetime]:
        ...

    async def set_last_sent(self, key: str, sent_at: datetime) -> None:
        ...

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Drop entries last sent before cutoff; returns how many were dropped."""
        ...


class InMemoryRateLimitStore:
    def __init__(self):
        self._last_sent: dict[str, datetime] = {}

    async def get_last_sent(self, key: str) -> Optional[datetime]:
        return self._last_sent.get(key)

    async def set_last_sent(self, key: str, sent_at: datetime) -> None:
        self._last_sent[key] = sent_at

    async def purge_older_than(self, cutoff: datetime) -> int:
        stale = [k for k, v in self._last_sent.items() if v < cutoff]
        for k in stale:
            del self._last_sent[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._last_sent)


class AlertRateLimiter:
    """Allows one dispatch per key per cooldown window."""

    def __init__(
        self,
        cooldown_s: float = 300.0,
        store: Optional[AlertRateLimitStore] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.cooldown = timedelta(seconds=cooldown_s)
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._now = now_fn

    async def can_send(self, key: str) -> bool:
        last_sent = await self.store.get_last_sent(key)
        if last_sent is None:
            return True
        return self._now() - last_sent >= self.cooldown

    async def mark_sent(self, key: str) -> None:
        """Record a dispatch and drop entries older than twice the cooldown."""
        now = self._now()
        await self.store.set_last_sent(key, now)
        purged = await self.store.purge_older_than(now - self.cooldown * 2)
        if purged:
            logger.debug("alert_rate_limit_purged", count=purged)
