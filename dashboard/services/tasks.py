"""Service layer for task operations.

All task reads and writes go through TaskService, which combines the Notion
client with the two cache strategies:

- ``swr``: per-filter datasets in the shared key-value store, served by the
  stale-while-revalidate engine (headers describe the cache state).
- ``periodic``: one in-process snapshot kept warm by a polling task and
  filtered locally.

Writes always go to Notion first, then invalidate the SWR task namespace and
merge the change into the periodic snapshot.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from taskcache import CacheResult, CacheStatus, PeriodicRefreshStore, SWRCache

from dashboard.exceptions import NotionConfigError, TaskValidationError
from dashboard.services.notion import UPDATABLE_FIELDS, NotionClient

logger = logging.getLogger(__name__)

# Notion page ids are UUIDs, with or without dashes
TASK_ID_PATTERN = re.compile(r"^[0-9a-f]{8}-?(?:[0-9a-f]{4}-?){3}[0-9a-f]{12}$", re.IGNORECASE)

TASKS_PREFIX = "notion:tasks:"
ALL_TASKS_KEY = f"{TASKS_PREFIX}all"
ASSIGNEES_KEY = "notion:assignees:list"
ASSIGN_OPTIONS_KEY = "notion:assign-options:list"


@dataclass(frozen=True)
class TaskFilters:
    """Task list filters. Empty values mean "no filter".

    ``assignee`` matches the task's ``assign`` label, which is resolved from
    several properties and can only be filtered after fetching.
    """

    team: str | None = None
    assignee: str | None = None
    status: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.team or self.assignee or self.status)

    def signature(self) -> str:
        """Stable cache-key suffix for this filter combination.

        Values are URL-encoded, so separators inside a value cannot make two
        different combinations share a key.
        """
        if self.is_empty:
            return "all"
        criteria = (("team", self.team), ("assignee", self.assignee), ("status", self.status))
        return urlencode([(name, value) for name, value in criteria if value])

    def cache_key(self) -> str:
        return f"{TASKS_PREFIX}{self.signature()}"

    def to_notion_filter(self) -> dict[str, Any] | None:
        """Server-side Notion filter for the team and status criteria."""
        conditions = []
        if self.team:
            conditions.append({"property": "Team", "select": {"equals": self.team}})
        if self.status:
            conditions.append({"property": "Status", "select": {"equals": self.status}})
        if not conditions:
            return None
        return {"and": conditions}

    def matches(self, task: dict[str, Any]) -> bool:
        if self.team and task.get("team") != self.team:
            return False
        if self.assignee and task.get("assign") != self.assignee:
            return False
        if self.status and task.get("status") != self.status:
            return False
        return True

    def apply(self, tasks: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if self.is_empty:
            return list(tasks)
        return [task for task in tasks if self.matches(task)]


def validate_task_id(task_id: str) -> None:
    """Validate a task ID to prevent malformed upstream requests.

    Raises:
        TaskValidationError: If the ID is not a Notion page id.
    """
    if not task_id or not TASK_ID_PATTERN.match(task_id):
        raise TaskValidationError(
            f"Invalid task ID format: {task_id}", field="task_id", task_id=task_id
        )


class TaskService:
    """Task reads and writes over Notion, using the configured cache strategy."""

    def __init__(
        self,
        client: NotionClient | None,
        swr: SWRCache,
        refresh_store: PeriodicRefreshStore,
        strategy: str = "swr",
    ) -> None:
        """Initialize the service.

        Args:
            client: Notion client, or None when credentials are missing.
            swr: Stale-while-revalidate engine over the shared store.
            refresh_store: In-process snapshot of all tasks.
            strategy: Which cache serves the task list ("swr" or "periodic").
        """
        self._client = client
        self.swr = swr
        self.refresh_store = refresh_store
        self.strategy = strategy

    @property
    def client(self) -> NotionClient:
        """The Notion client.

        Raises:
            NotionConfigError: If credentials are not configured.
        """
        if self._client is None:
            raise NotionConfigError()
        return self._client

    async def list_tasks(self, filters: TaskFilters) -> CacheResult:
        """List tasks matching filters.

        Args:
            filters: Team, assignee and status criteria.

        Returns:
            CacheResult whose data is the list of task dictionaries.

        Raises:
            NotionConfigError: If credentials are not configured.
            ServiceUnavailableError: If the SWR engine has nothing to serve.
            NotionAPIError: If Notion fails and no cached data exists.
        """
        client = self.client
        if self.strategy == "periodic":
            tasks = await self.refresh_store.get_items()
            return self._snapshot_result(filters.apply(tasks))

        async def fetch() -> list[dict[str, Any]]:
            tasks = await client.query_tasks(filters.to_notion_filter())
            return filters.apply(tasks)

        return await self.swr.with_cache(filters.cache_key(), fetch)

    def _snapshot_result(self, tasks: list[dict[str, Any]]) -> CacheResult:
        """Describe snapshot data as hit, or stale when overdue or after a failed refresh."""
        stats = self.refresh_store.get_stats()
        overdue = stats.age_seconds is not None and stats.age_seconds > stats.refresh_interval
        if stats.last_error or overdue:
            return CacheResult(
                data=tasks,
                status=CacheStatus.STALE,
                cooldown=stats.cooldown_seconds if stats.is_in_cooldown else None,
                age_seconds=stats.age_seconds,
            )
        return CacheResult(data=tasks, status=CacheStatus.HIT, age_seconds=stats.age_seconds)

    async def list_assignees(self) -> CacheResult:
        """List workspace people, SWR-cached."""
        return await self.swr.with_cache(ASSIGNEES_KEY, self.client.list_assignees)

    async def list_assign_options(self) -> CacheResult:
        """List option names of the assign property, SWR-cached."""
        return await self.swr.with_cache(ASSIGN_OPTIONS_KEY, self.client.get_assign_options)

    async def update_task(self, task_id: str, changes: dict[str, str | None]) -> None:
        """Update a task in Notion, then refresh local views of it.

        Args:
            task_id: Notion page id.
            changes: Task fields to change (status, team, assignee_id,
                assign). Empty strings clear a field.

        Raises:
            TaskValidationError: If the id is malformed or nothing changes.
            NotionConfigError: If credentials are not configured.
            NotionAPIError: If the Notion update fails.
        """
        validate_task_id(task_id)
        unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
        if unknown:
            raise TaskValidationError(
                f"Unsupported task fields: {', '.join(unknown)}", field=unknown[0], task_id=task_id
            )
        if not changes:
            raise TaskValidationError("No fields to update", task_id=task_id)

        await self.client.update_task(task_id, changes)

        try:
            await self.swr.invalidate(TASKS_PREFIX)
        except Exception as e:
            logger.error("Cache invalidation failed after updating task %s: %s", task_id, e)

        snapshot_fields = {name: value or None for name, value in changes.items()}
        self.refresh_store.update_item(task_id, snapshot_fields)

    async def refresh(self) -> dict[str, Any]:
        """Force a refresh of the task snapshot and drop cached task lists.

        Returns:
            Summary with ``success``, ``task_count`` and a millisecond
            ``timestamp``; ``error`` is added when the upstream fetch failed
            (the previous snapshot is kept).
        """
        client = self.client
        tasks = await self.refresh_store.force_refresh()
        try:
            await self.swr.invalidate(TASKS_PREFIX)
        except Exception as e:
            logger.error("Cache invalidation failed during refresh: %s", e)

        result: dict[str, Any] = {
            "success": True,
            "task_count": len(tasks),
            "timestamp": int(time.time() * 1000),
        }
        last_error = self.refresh_store.state.last_error
        if last_error:
            logger.warning("Forced refresh of %s failed: %s", client.database_id, last_error)
            result["success"] = False
            result["error"] = last_error
        else:
            logger.info("Forced refresh of %s: %d tasks", client.database_id, len(tasks))
        return result

    async def debug_fields(self) -> dict[str, Any]:
        """Describe the Notion database schema (uncached)."""
        return await self.client.debug_fields()

    async def get_store_stats(self) -> dict[str, Any]:
        """Collect cache state for both strategies."""
        stats = self.refresh_store.get_stats().to_dict()
        stats["strategy"] = self.strategy
        stats["swr"] = {
            **self.swr.get_stats(),
            "cooldown_seconds": await self.swr.cooldown_remaining(),
            "all_tasks": await self.swr.describe(ALL_TASKS_KEY),
        }
        return stats
