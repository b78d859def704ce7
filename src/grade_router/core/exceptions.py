"""
Custom exception hierarchy for grade-router.

Batch-level backend errors are caught inside the pipeline and turned into
fallback decisions. Only per-item terminal failures (as result statuses)
and group-level unavailability reach the caller.
"""

import asyncio
from typing import Optional


class GradeRouterError(Exception):
    """
    Base exception for all grade-router errors.

    All custom exceptions should inherit from this class.
    """

    def __init__(self, message: str, details: dict | None = None):
        """
        Initialize the exception.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error context
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# ==================== Configuration Errors ====================

class ConfigurationError(GradeRouterError):
    """Raised when required configuration is missing or invalid."""
    pass


# ==================== Backend Errors ====================

class BackendError(GradeRouterError):
    """
    Base error for scoring backend failures.

    ``counts_toward_breaker`` tells the dispatcher whether the failure
    is evidence that the tier itself is unhealthy.
    """
    counts_toward_breaker: bool = False
    availability_failure: bool = False


class RateLimitedError(BackendError):
    """Raised when the remote backend signals throttling."""
    counts_toward_breaker = True
    availability_failure = True


class BackendTimeoutError(BackendError):
    """Raised when a backend call exceeds its deadline."""
    counts_toward_breaker = True
    availability_failure = True


class MalformedResultError(BackendError):
    """Raised when backend output fails schema or identity validation."""
    pass


class BackendUnavailableError(BackendError):
    """Raised for any other backend failure (connection, server error)."""
    availability_failure = True


class CircuitOpenError(BackendError):
    """Raised without any backend attempt while a tier's breaker is open."""
    availability_failure = True

    def __init__(self, tier, retry_after_s: Optional[float] = None):
        details = {"tier": getattr(tier, "value", tier)}
        if retry_after_s is not None:
            details["retry_after_s"] = round(retry_after_s, 2)
        super().__init__(f"Circuit open for tier {details['tier']}", details)
        self.tier = tier
        self.retry_after_s = retry_after_s


# ==================== Pipeline Errors ====================

class ItemIrrecoverableError(GradeRouterError):
    """
    All fallback levels exhausted for one item.

    Never raised out of the pipeline: converted to a FAILED result whose
    ``error`` carries this exception's message.
    """

    def __init__(self, group_id: str, item_index: int, last_error: Optional[str] = None):
        super().__init__(
            f"Item {group_id}#{item_index} could not be graded",
            {"last_error": last_error} if last_error else None
        )
        self.group_id = group_id
        self.item_index = item_index
        self.last_error = last_error


class AllTiersUnavailableError(GradeRouterError):
    """Raised when no item of a group could be graded because every tier was unavailable."""
    pass


class CacheError(GradeRouterError):
    """Raised by persistent cache stores; the cache degrades it to a miss."""
    pass


def classify_backend_error(error: BaseException) -> BackendError:
    """
    Map an arbitrary exception raised by a backend to the error taxonomy.

    Args:
        error: Exception raised by a backend call

    Returns:
        A BackendError subclass instance (the input itself if already one)
    """
    if isinstance(error, BackendError):
        return error

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return BackendTimeoutError("Backend call timed out", {"cause": type(error).__name__})

    message = str(error).lower()
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if status == 429 or "rate limit" in message or "quota" in message or "429" in message:
        return RateLimitedError(str(error) or "Rate limited", {"cause": type(error).__name__})
    if "timeout" in message or "timed out" in message:
        return BackendTimeoutError(str(error), {"cause": type(error).__name__})
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return MalformedResultError(str(error), {"cause": type(error).__name__})
    return BackendUnavailableError(str(error) or type(error).__name__, {"cause": type(error).__name__})
