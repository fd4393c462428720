"""Circuit breaker for the job execution dependency.

States:
    closed     calls pass through, failures are counted
    open       calls are rejected without touching the dependency
    half_open  one probe call is admitted after the reset timeout

The breaker opens when consecutive failures, or failures inside the rolling
window, reach the threshold. A successful probe closes it; a failed probe
reopens it. Listeners are notified on every state change.

Usage:
    registry = CircuitBreakerRegistry(failure_threshold=5)
    breaker = registry.get("job_executor")
    result = await breaker.call(executor.execute, session_id, tier, statement)
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

import structlog

from analysis_ops.core.errors import CircuitOpenError
from analysis_ops.operations.models import utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    """Snapshot handed to listeners and health views."""

    service: str
    state: CircuitState
    failures: int
    recent_failures: int
    last_error: Optional[str] = None
    last_failure_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "recent_failures": self.recent_failures,
            "last_error": self.last_error,
            "last_failure": (
                self.last_failure_at.isoformat() if self.last_failure_at else None
            ),
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
        }


class StateChangeListener(Protocol):
    def __call__(self, service: str, new_state: CircuitState, stats: CircuitStats) -> None:
        ...


class CircuitBreaker:
    """Breaker state for one named dependency."""

    def __init__(
        self,
        service: str,
        failure_threshold: int = 5,
        reset_timeout_s: float = 60.0,
        failure_window_s: float = 300.0,
        now_fn: Callable[[], datetime] = utcnow,
        listeners: Optional[list[StateChangeListener]] = None,
    ):
        self.service = service
        self.failure_threshold = failure_threshold
        self.reset_timeout = timedelta(seconds=reset_timeout_s)
        self.failure_window = timedelta(seconds=failure_window_s)
        self.listeners: list[StateChangeListener] = list(listeners or [])
        self._now = now_fn

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._failure_times: deque[datetime] = deque()
        self._last_error: Optional[str] = None
        self._last_failure_at: Optional[datetime] = None
        self._opened_at: Optional[datetime] = None
        self._probe_in_flight = False

    def get_state(self) -> CircuitState:
        return self._state

    def get_stats(self) -> CircuitStats:
        self._prune_window(self._now())
        return CircuitStats(
            service=self.service,
            state=self._state,
            failures=self._consecutive_failures,
            recent_failures=len(self._failure_times),
            last_error=self._last_error,
            last_failure_at=self._last_failure_at,
            opened_at=self._opened_at,
        )

    def allow_request(self) -> bool:
        """Check if a call may proceed.

        Moves open -> half_open once the reset timeout has passed and admits
        a single probe until its outcome is recorded.
        """
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self._opened_at and self._now() >= self._opened_at + self.reset_timeout:
                self._transition(CircuitState.HALF_OPEN)
                self._probe_in_flight = True
                return True
            return False

        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def release_probe(self) -> None:
        """Give back an admitted half-open probe that was never used."""
        self._probe_in_flight = False

    def record_success(self) -> None:
        self._probe_in_flight = False
        self._consecutive_failures = 0
        if self._state == CircuitState.HALF_OPEN:
            self._failure_times.clear()
            self._opened_at = None
            self._transition(CircuitState.CLOSED)

    def record_failure(self, error: Optional[str] = None) -> None:
        now = self._now()
        self._probe_in_flight = False
        self._consecutive_failures += 1
        self._failure_times.append(now)
        self._prune_window(now)
        self._last_failure_at = now
        if error:
            self._last_error = error

        if self._state == CircuitState.HALF_OPEN:
            self._opened_at = now
            self._transition(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED and (
            self._consecutive_failures >= self.failure_threshold
            or len(self._failure_times) >= self.failure_threshold
        ):
            self._opened_at = now
            self._transition(CircuitState.OPEN)

    def force_reset(self) -> None:
        """Operator recovery: back to closed with all counters cleared."""
        previous = self._state
        self._consecutive_failures = 0
        self._failure_times.clear()
        self._last_error = None
        self._last_failure_at = None
        self._opened_at = None
        self._probe_in_flight = False
        logger.info("circuit_force_reset", service=self.service, previous_state=previous.value)
        if previous != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await fn through the breaker.

        Raises CircuitOpenError without calling fn when the breaker rejects.
        """
        if not self.allow_request():
            raise CircuitOpenError(self.service)
        try:
            result = await fn(*args, **kwargs)
        except Exception as e:
            self.record_failure(str(e) or type(e).__name__)
            raise
        self.record_success()
        return result

    def _prune_window(self, now: datetime) -> None:
        cutoff = now - self.failure_window
        while self._failure_times and self._failure_times[0] < cutoff:
            self._failure_times.popleft()

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        self._state = new_state
        stats = self.get_stats()

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"circuit_{new_state.value}",
            service=self.service,
            previous_state=previous.value,
            failures=stats.failures,
            recent_failures=stats.recent_failures,
        )

        for listener in self.listeners:
            try:
                listener(self.service, new_state, stats)
            except Exception:
                logger.exception("circuit_listener_failed", service=self.service)


class CircuitBreakerRegistry:
    """One breaker per named dependency, sharing configuration and listeners."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_s: float = 60.0,
        failure_window_s: float = 300.0,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout_s = reset_timeout_s
        self.failure_window_s = failure_window_s
        self._now = now_fn
        self._listeners: list[StateChangeListener] = []
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings, now_fn: Callable[[], datetime] = utcnow):
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout_s=settings.circuit_reset_timeout_s,
            failure_window_s=settings.circuit_failure_window_s,
            now_fn=now_fn,
        )

    def add_listener(self, listener: StateChangeListener) -> None:
        """Attach a listener to existing and future breakers."""
        self._listeners.append(listener)
        for breaker in self._breakers.values():
            breaker.listeners.append(listener)

    def get(self, service: str) -> CircuitBreaker:
        breaker = self._breakers.get(service)
        if breaker is None:
            breaker = CircuitBreaker(
                service,
                failure_threshold=self.failure_threshold,
                reset_timeout_s=self.reset_timeout_s,
                failure_window_s=self.failure_window_s,
                now_fn=self._now,
                listeners=self._listeners,
            )
            self._breakers[service] = breaker
        return breaker

    def get_circuit_status(self) -> dict[str, dict[str, Any]]:
        """Current breaker status for health checks."""
        return {name: b.get_stats().to_dict() for name, b in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.force_reset()
