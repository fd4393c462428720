"""Engine exceptions and failure classification.

Classification decides whether a job failure is worth re-driving through the
retry queue. Connection-level store errors are mapped to
StoreUnavailableError so callers can degrade instead of crashing.
"""

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import asyncpg


class AnalysisOpsError(Exception):
    """Base class for engine errors."""


class StoreUnavailableError(AnalysisOpsError):
    """The durable store cannot be reached."""


class InvalidTransitionError(AnalysisOpsError):
    """An operation state change that the transition table does not allow."""

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state} -> {to_state}")


class UnknownTierError(AnalysisOpsError, ValueError):
    """Tier name not present in the tier configuration."""

    def __init__(self, tier: Any):
        self.tier = tier
        super().__init__(f"Unknown tier: {tier!r}")


class OperationNotFoundError(AnalysisOpsError, LookupError):
    """No operation for the given identifier."""


class ConcurrentModificationError(AnalysisOpsError):
    """The operation changed state between read and conditional write."""


class CircuitOpenError(AnalysisOpsError):
    """A call was rejected because the circuit breaker is open."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Circuit breaker open for {service}")


# Postgres SQLSTATEs meaning "the server is gone", not "the query is wrong"
_UNAVAILABLE_SQLSTATES = {
    "08000",  # connection_exception
    "08001",  # sqlclient_unable_to_establish_sqlconnection
    "08003",  # connection_does_not_exist
    "08004",  # sqlserver_rejected_establishment_of_sqlconnection
    "08006",  # connection_failure
    "57P01",  # admin_shutdown
    "57P02",  # crash_shutdown
    "57P03",  # cannot_connect_now
    "53300",  # too_many_connections
}


def is_store_unavailable_error(error: BaseException) -> bool:
    """Check if a store error means the store cannot be reached.

    Returns True for connection errors, timeouts and pool exhaustion.
    Returns False for query errors, constraint violations, etc.
    """
    if isinstance(error, StoreUnavailableError):
        return True

    if isinstance(
        error,
        (
            asyncpg.InterfaceError,
            asyncpg.InternalClientError,
            ConnectionRefusedError,
            ConnectionResetError,
            TimeoutError,
            asyncio.TimeoutError,
            OSError,
        ),
    ):
        return True

    if isinstance(error, asyncpg.PostgresError):
        return getattr(error, "sqlstate", None) in _UNAVAILABLE_SQLSTATES

    return False


def truncate_error(message: Optional[str], limit: int) -> Optional[str]:
    """Cap an error string at limit characters."""
    if message is None:
        return None
    return message[:limit]


class ErrorCategory(str, Enum):
    """Failure categories for job errors."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    UPSTREAM = "upstream"
    VALIDATION = "validation"
    INTERNAL = "internal"

    @property
    def is_retryable(self) -> bool:
        return self in (
            ErrorCategory.NETWORK,
            ErrorCategory.TIMEOUT,
            ErrorCategory.RATE_LIMIT,
            ErrorCategory.UPSTREAM,
        )


@dataclass(eq=False)
class AnalysisError(AnalysisOpsError):
    """A classified job failure."""

    message: str
    category: ErrorCategory
    code: str
    context: dict[str, Any] = field(default_factory=dict)
    cause: Optional[BaseException] = None

    def __post_init__(self):
        super().__init__(self.message)

    @property
    def is_retryable(self) -> bool:
        return self.category.is_retryable


_NETWORK_PATTERNS = re.compile(
    r"econnrefused|econnreset|enotfound|socket hang up|network|connection (refused|reset|closed|error)",
    re.IGNORECASE,
)
_TIMEOUT_PATTERNS = re.compile(r"timeout|timed out|etimedout", re.IGNORECASE)
_RATE_LIMIT_PATTERNS = re.compile(r"rate.?limit|too many requests|\b429\b|quota", re.IGNORECASE)
_UPSTREAM_PATTERNS = re.compile(
    r"\b50[0234]\b|bad gateway|service unavailable|overloaded|upstream",
    re.IGNORECASE,
)
_VALIDATION_PATTERNS = re.compile(r"invalid|validation|malformed|\b400\b|\b422\b", re.IGNORECASE)

_CATEGORY_CODES = {
    ErrorCategory.NETWORK: "NETWORK_ERROR",
    ErrorCategory.TIMEOUT: "TIMEOUT",
    ErrorCategory.RATE_LIMIT: "RATE_LIMITED",
    ErrorCategory.UPSTREAM: "UPSTREAM_ERROR",
    ErrorCategory.VALIDATION: "VALIDATION_ERROR",
    ErrorCategory.INTERNAL: "INTERNAL_ERROR",
}


def _categorize(error: BaseException) -> ErrorCategory:
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, CircuitOpenError):
        return ErrorCategory.UPSTREAM

    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(getattr(error, "response", None), "status_code", None)
    if status == 429:
        return ErrorCategory.RATE_LIMIT
    if isinstance(status, int) and status >= 500:
        return ErrorCategory.UPSTREAM
    if isinstance(status, int) and 400 <= status < 500:
        return ErrorCategory.VALIDATION

    message = str(error)
    if _RATE_LIMIT_PATTERNS.search(message):
        return ErrorCategory.RATE_LIMIT
    if _TIMEOUT_PATTERNS.search(message):
        return ErrorCategory.TIMEOUT
    if _NETWORK_PATTERNS.search(message):
        return ErrorCategory.NETWORK
    if _UPSTREAM_PATTERNS.search(message):
        return ErrorCategory.UPSTREAM
    if isinstance(error, (ValueError, TypeError, KeyError)) or _VALIDATION_PATTERNS.search(
        message
    ):
        return ErrorCategory.VALIDATION
    # Unknown failures from the generator are treated as transient
    return ErrorCategory.UPSTREAM


def classify_error(
    error: BaseException, context: Optional[dict[str, Any]] = None
) -> AnalysisError:
    """Classify an exception into an AnalysisError.

    Already-classified errors keep their category and gain any new context.
    """
    context = dict(context or {})
    if isinstance(error, AnalysisError):
        error.context.update(context)
        return error

    if isinstance(error, (InvalidTransitionError, UnknownTierError)):
        category = ErrorCategory.INTERNAL
    else:
        category = _categorize(error)

    return AnalysisError(
        message=str(error) or type(error).__name__,
        category=category,
        code=_CATEGORY_CODES[category],
        context=context,
        cause=error,
    )
