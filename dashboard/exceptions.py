"""Custom exception classes for the Notion Task Dashboard.

This module defines a hierarchy of exceptions for consistent error handling
across the dashboard application. All exceptions inherit from DashboardError
to allow catch-all handling when needed.

Exception Hierarchy:
    DashboardError (base)
    ├── TaskError (task-related errors)
    │   ├── TaskNotFoundError (unknown task id)
    │   └── TaskValidationError (invalid id or update payload)
    ├── NotionConfigError (missing credentials)
    └── NotionAPIError (upstream request failures)
        └── NotionRateLimitError (HTTP 429 from Notion)

Cache-layer conditions (taskcache.errors.ServiceUnavailableError) live in
the cache package and are mapped to HTTP responses by the app.
"""

from typing import Any


class DashboardError(Exception):
    """Base exception for all dashboard errors.

    Attributes:
        message: Human-readable error description.
        detail: Technical details for debugging (optional).
        status_code: Suggested HTTP status code for API responses.
    """

    def __init__(
        self,
        message: str,
        detail: str | None = None,
        status_code: int = 500,
    ) -> None:
        self.message = message
        self.detail = detail
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a dictionary for JSON responses."""
        result: dict[str, Any] = {
            "error": self.__class__.__name__,
            "message": self.message,
        }
        if self.detail:
            result["detail"] = self.detail
        return result


class TaskError(DashboardError):
    """Base exception for task-related errors."""

    def __init__(
        self,
        message: str,
        task_id: str | None = None,
        detail: str | None = None,
        status_code: int = 500,
    ) -> None:
        self.task_id = task_id
        super().__init__(message, detail, status_code)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.task_id:
            result["task_id"] = self.task_id
        return result


class TaskNotFoundError(TaskError):
    """Raised when a task ID doesn't exist in Notion."""

    def __init__(self, task_id: str, message: str | None = None) -> None:
        msg = message or f"Task not found: {task_id}"
        super().__init__(msg, task_id=task_id, status_code=404)


class TaskValidationError(TaskError):
    """Raised when task input validation fails."""

    def __init__(self, message: str, field: str | None = None, task_id: str | None = None) -> None:
        detail = f"field: {field}" if field else None
        super().__init__(message, task_id=task_id, detail=detail, status_code=400)
        self.field = field


class NotionConfigError(DashboardError):
    """Raised when Notion credentials are not configured."""

    def __init__(
        self,
        message: str = "Notion credentials missing. Set NOTION_API_KEY and NOTION_DATABASE_ID.",
    ) -> None:
        super().__init__(message, status_code=500)


class NotionAPIError(DashboardError):
    """Raised when a Notion API request fails.

    Attributes:
        status: HTTP status returned by Notion (None for transport errors).
        retry_after: Back-off hint in seconds, when Notion sent one.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        detail: str | None = None,
        retry_after: float | None = None,
        status_code: int = 502,
    ) -> None:
        super().__init__(message, detail=detail, status_code=status_code)
        self.status = status
        self.retry_after = retry_after


class NotionRateLimitError(NotionAPIError):
    """Raised when Notion answers 429 Too Many Requests.

    The cache layer recognises this failure by its ``status`` of 429 and
    starts a cooldown of ``retry_after`` seconds.
    """

    def __init__(self, retry_after: float | None = None, detail: str | None = None) -> None:
        super().__init__(
            "Rate limited by Notion",
            status=429,
            detail=detail,
            retry_after=retry_after,
            status_code=429,
        )
