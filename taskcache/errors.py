"""Exceptions and failure introspection for the task cache.

The cache layer never depends on a concrete upstream client. Fetch callbacks
signal failures with any exception; a rate limit is recognised by a numeric
``status`` of 429 and an optional ``retry_after`` in seconds, read duck-typed
from the exception (or from an attached HTTP ``response``).
"""

import math
from typing import Any

RATE_LIMIT_STATUS = 429


class TaskCacheError(Exception):
    """Base exception for cache-layer errors."""

    pass


class ServiceUnavailableError(TaskCacheError):
    """Raised when no fresh or stale data can be produced for a key.

    Attributes:
        key: The cache key that could not be served.
        retry_after: Suggested client back-off in seconds.
        status: HTTP-style status for the condition (always 503).
    """

    status = 503

    def __init__(self, key: str, retry_after: float = 1) -> None:
        self.key = key
        self.retry_after = retry_after
        super().__init__(f"Service unavailable for {key}, retry after {retry_after}s")


def failure_status(exc: BaseException) -> int | None:
    """Extract a numeric upstream status from a failure, if it carries one."""
    for attr in ("status", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def failure_retry_after(exc: BaseException) -> float | None:
    """Extract a positive, finite retry hint (seconds) from a failure.

    Returns None when the failure carries no usable hint.
    """
    raw: Any = getattr(exc, "retry_after", None)
    if raw is None:
        headers = getattr(getattr(exc, "response", None), "headers", None)
        if headers is not None:
            raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def is_rate_limited(exc: BaseException) -> bool:
    """Check whether a failure is an upstream rate-limit signal."""
    return failure_status(exc) == RATE_LIMIT_STATUS
