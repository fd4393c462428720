"""Sliding failure-rate window feeding the high-failure-rate alert."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from analysis_ops.operations.models import utcnow

logger = structlog.get_logger(__name__)


@dataclass
class FailureRateWindow:
    """Counter state; reset when its age exceeds the window length."""

    requests: int = 0
    failures: int = 0
    window_start: datetime = field(default_factory=utcnow)
    recent_errors: deque = field(default_factory=lambda: deque(maxlen=5))

    @property
    def failure_rate(self) -> float:
        if self.requests == 0:
            return 0.0
        return self.failures / self.requests * 100


@dataclass
class FailureRateStats:
    requests: int
    failures: int
    failure_rate: float
    window_minutes: float


class FailureRateMonitor:
    """Counts request outcomes and fires an alert when the rate crosses the threshold."""

    def __init__(
        self,
        alerter=None,
        window_minutes: float = 15.0,
        threshold_pct: float = 30.0,
        min_requests: int = 10,
        now_fn: Callable[[], datetime] = utcnow,
        window: Optional[FailureRateWindow] = None,
    ):
        self._alerter = alerter
        self.window_minutes = window_minutes
        self.threshold_pct = threshold_pct
        self.min_requests = min_requests
        self._now = now_fn
        self.window = window or FailureRateWindow(window_start=now_fn())

    @classmethod
    def from_settings(cls, settings, alerter=None, now_fn: Callable[[], datetime] = utcnow):
        return cls(
            alerter=alerter,
            window_minutes=settings.failure_rate_window_minutes,
            threshold_pct=settings.failure_rate_threshold_pct,
            min_requests=settings.failure_rate_min_requests,
            now_fn=now_fn,
        )

    def record(self, success: bool, error: Optional[str] = None) -> None:
        """Record one request outcome; may schedule an alert, never raises."""
        now = self._now()
        if now - self.window.window_start > timedelta(minutes=self.window_minutes):
            self.reset(now)

        self.window.requests += 1
        if not success:
            self.window.failures += 1
            if error:
                self.window.recent_errors.append(error[:200])

        if self.window.requests < self.min_requests:
            return

        rate = self.window.failure_rate
        if rate >= self.threshold_pct:
            logger.warning(
                "failure_rate_threshold_reached",
                failure_rate=round(rate, 2),
                requests=self.window.requests,
                failures=self.window.failures,
            )
            if self._alerter is not None:
                self._alerter.fire_and_forget(
                    self._alerter.alert_high_failure_rate(
                        rate,
                        self.threshold_pct,
                        self.window_minutes,
                        list(self.window.recent_errors),
                    ),
                    name="high_failure_rate_alert",
                )

    def get_stats(self) -> FailureRateStats:
        return FailureRateStats(
            requests=self.window.requests,
            failures=self.window.failures,
            failure_rate=self.window.failure_rate,
            window_minutes=self.window_minutes,
        )

    def reset(self, now: Optional[datetime] = None) -> None:
        self.window = FailureRateWindow(window_start=now or self._now())
