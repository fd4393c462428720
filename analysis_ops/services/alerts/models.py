"""Admin alert models and formatting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from analysis_ops.operations.models import utcnow


class AlertType(str, Enum):
    """Alert kinds; part of the suppression key."""

    CIRCUIT_BREAKER_OPEN = "circuit_breaker_open"
    HIGH_FAILURE_RATE = "high_failure_rate"
    CRITICAL_ERROR = "critical_error"
    SYSTEM_ALERT = "system_alert"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class Alert:
    """One alert as persisted and dispatched."""

    type: AlertType
    title: str
    message: str
    severity: AlertSeverity
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return alert_key(self.type, self.metadata)


def alert_key(alert_type: AlertType, metadata: Optional[dict[str, Any]] = None) -> str:
    """Suppression key: the type, plus the service name when one is given."""
    key = AlertType(alert_type).value
    service = (metadata or {}).get("service")
    if service:
        return f"{key}:{service}"
    return key


def format_title(alert: Alert) -> str:
    return f"[{alert.severity.value.upper()}] {alert.title}"


def format_content(alert: Alert, timestamp: datetime) -> str:
    """Human-readable body with flattened metadata and an ISO-8601 timestamp."""
    lines = [
        f"**Alert Type:** {alert.type.value}",
        f"**Severity:** {alert.severity.value.upper()}",
        "",
        alert.message,
    ]

    if alert.metadata:
        lines.append("")
        lines.append("**Details:**")
        for key, value in alert.metadata.items():
            lines.append(f"- {key}: {json.dumps(value, default=str)}")

    lines.append("")
    lines.append(f"*Timestamp: {timestamp.isoformat()}*")
    return "\n".join(lines)
