"""Admin alerting with per-key suppression.

send_alert() never raises: persistence, rate-limit store and sink failures
are logged and turned into a False return, so a broken alert path cannot
fail the job that triggered it.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Coroutine, Optional, Union

import structlog

from analysis_ops.core.circuit_breaker import CircuitState, CircuitStats
from analysis_ops.core.errors import truncate_error
from analysis_ops.operations.models import utcnow
from analysis_ops.services.alerts.models import (
    Alert,
    AlertSeverity,
    AlertType,
    format_content,
    format_title,
)
from analysis_ops.services.alerts.notifiers import Notifier
from analysis_ops.services.alerts.rate_limit import AlertRateLimiter

logger = structlog.get_logger(__name__)


class AdminAlerter:
    """Deduplicated, rate-limited operator notifications."""

    def __init__(
        self,
        notifier: Notifier,
        rate_limiter: Optional[AlertRateLimiter] = None,
        repository=None,
        error_max_chars: int = 500,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self._notifier = notifier
        self._rate_limiter = rate_limiter or AlertRateLimiter(now_fn=now_fn)
        self._repository = repository
        self._error_max_chars = error_max_chars
        self._now = now_fn
        self._background: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()

    async def send_alert(
        self,
        alert_type: Union[AlertType, str],
        title: str,
        message: str,
        severity: Union[AlertSeverity, str] = AlertSeverity.WARNING,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Dispatch an alert unless an identical key was sent within the cooldown.

        Returns True only if a sink accepted the message.
        """
        try:
            alert = Alert(
                type=AlertType(alert_type),
                title=title,
                message=message,
                severity=AlertSeverity(severity),
                metadata=metadata,
                created_at=self._now(),
            )
            key = alert.key
        except Exception as e:
            logger.error("admin_alert_failed", title=title, error=str(e), exc_info=True)
            return False

        # Reserved before the first await; concurrent sends of the same key
        # are suppressed until this one is delivered or has failed.
        if key in self._in_flight:
            logger.info("admin_alert_suppressed", key=key, title=title, in_flight=True)
            return False
        self._in_flight.add(key)

        try:
            if not await self._can_send(key):
                logger.info("admin_alert_suppressed", key=key, title=title)
                return False

            await self._persist(alert)

            delivered = await self._notifier.notify(
                format_title(alert), format_content(alert, alert.created_at)
            )
            if delivered:
                await self._rate_limiter.mark_sent(key)
                logger.info("admin_alert_sent", key=key, severity=alert.severity.value)
            else:
                logger.warning("admin_alert_not_delivered", key=key, title=title)
            return bool(delivered)

        except Exception as e:
            logger.error("admin_alert_failed", title=title, error=str(e), exc_info=True)
            return False
        finally:
            self._in_flight.discard(key)

    async def _can_send(self, key: str) -> bool:
        try:
            return await self._rate_limiter.can_send(key)
        except Exception as e:
            # Without the suppression map, sending is preferred over silence
            logger.warning("alert_rate_limit_unavailable", key=key, error=str(e))
            return True

    async def _persist(self, alert: Alert) -> None:
        if self._repository is None:
            return
        try:
            await self._repository.insert(alert)
        except Exception as e:
            logger.warning("admin_alert_persist_failed", key=alert.key, error=str(e))

    # =========================================================================
    # Convenience triggers
    # =========================================================================

    async def alert_circuit_breaker_open(
        self, service: str, failure_count: int, last_error: Optional[str] = None
    ) -> bool:
        return await self.send_alert(
            AlertType.CIRCUIT_BREAKER_OPEN,
            f"Circuit Breaker Opened: {service}",
            f"The circuit breaker for {service} has opened due to repeated failures. "
            "The service will be temporarily unavailable to prevent cascading failures. "
            "Manual intervention may be required.",
            AlertSeverity.CRITICAL,
            {
                "service": service,
                "failure_count": failure_count,
                "last_error": truncate_error(last_error, self._error_max_chars),
            },
        )

    async def alert_high_failure_rate(
        self,
        failure_rate: float,
        threshold: float,
        window_minutes: float,
        recent_errors: Optional[list[str]] = None,
    ) -> bool:
        return await self.send_alert(
            AlertType.HIGH_FAILURE_RATE,
            f"High Failure Rate Detected: {failure_rate:.1f}%",
            f"The analysis failure rate has exceeded the threshold of {threshold:g}%. "
            f"{failure_rate:.1f}% of requests in the last {window_minutes:g} minutes "
            "have failed. Please investigate the root cause.",
            AlertSeverity.CRITICAL if failure_rate > 50 else AlertSeverity.WARNING,
            {
                "failure_rate": round(failure_rate, 2),
                "threshold": threshold,
                "window_minutes": window_minutes,
                "recent_errors": list(recent_errors or [])[:5],
            },
        )

    async def alert_critical_error(
        self,
        error_type: str,
        message: str,
        context: Optional[dict[str, Any]] = None,
    ) -> bool:
        return await self.send_alert(
            AlertType.CRITICAL_ERROR,
            f"Critical Error: {error_type}",
            message,
            AlertSeverity.CRITICAL,
            {"error_type": error_type, **(context or {})},
        )

    async def alert_system_issue(
        self,
        title: str,
        message: str,
        severity: Union[AlertSeverity, str] = AlertSeverity.WARNING,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        return await self.send_alert(AlertType.SYSTEM_ALERT, title, message, severity, metadata)

    async def alert_retries_exhausted(
        self,
        session_id: str,
        tier: str,
        retry_count: int,
        last_error: Optional[str],
    ) -> bool:
        return await self.alert_critical_error(
            "Retry Queue Exhausted",
            f"Session {session_id} has failed after {retry_count} retry attempts. "
            "Manual intervention required.",
            {
                "session_id": session_id,
                "tier": tier,
                "last_error": truncate_error(last_error, self._error_max_chars),
            },
        )

    # =========================================================================
    # Background dispatch
    # =========================================================================

    def fire_and_forget(
        self, coro: Coroutine[Any, Any, Any], name: str = "admin_alert"
    ) -> Optional[asyncio.Task]:
        """Schedule an alert coroutine without awaiting it.

        A reference is held until the task finishes; failures are logged.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("admin_alert_no_event_loop", name=name)
            return None

        task = loop.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("admin_alert_task_failed", name=task.get_name(), error=str(exc))

    async def drain(self) -> None:
        """Wait for scheduled alerts (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def on_circuit_state_change(
        self, service: str, new_state: CircuitState, stats: CircuitStats
    ) -> None:
        """Circuit breaker listener: alert when a breaker opens."""
        if new_state != CircuitState.OPEN:
            return
        self.fire_and_forget(
            self.alert_circuit_breaker_open(service, stats.failures, stats.last_error),
            name=f"circuit_open_alert:{service}",
        )
