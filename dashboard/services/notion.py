"""Async client for the Notion REST API.

This module only performs HTTP calls, maps Notion pages to task dictionaries
and translates failures into dashboard exceptions. Caching decisions belong
to the task service.
"""

import logging
import math
from typing import Any

import httpx

from dashboard.config import Settings
from dashboard.exceptions import NotionAPIError, NotionRateLimitError, TaskNotFoundError

logger = logging.getLogger(__name__)

# Maximum page size accepted by the Notion query endpoints
PAGE_SIZE = 100

# Upper bound on user-list pages fetched for the assignee list
MAX_USER_PAGES = 20

# Properties that may hold the "assign" value, in lookup order
ASSIGN_PROPERTY_NAMES = ("Assign", "Assigned to", "Assigned To", "assignedTo", "assigned")

# Task fields accepted by update_task(), mapped to Notion property names
UPDATABLE_FIELDS = {
    "status": "Status",
    "team": "Team",
    "assignee_id": "Assignee",
    "assign": "Assign",
}


def _first(values: Any) -> dict[str, Any]:
    """Return the first element of a Notion list value, or an empty dict."""
    if isinstance(values, list) and values and isinstance(values[0], dict):
        return values[0]
    return {}


def _select_name(prop: dict[str, Any] | None) -> str | None:
    if not prop:
        return None
    return (prop.get("select") or {}).get("name") or None


def _assign_value(properties: dict[str, Any]) -> str | None:
    """Resolve the assign label from the first property that carries one."""
    assign = properties.get("Assign") or {}
    value = _first(assign.get("multi_select")).get("name") or _select_name(assign)
    if value:
        return value
    for name in ASSIGN_PROPERTY_NAMES[1:]:
        value = _select_name(properties.get(name))
        if value:
            return value
    return _first((properties.get("Assignee") or {}).get("people")).get("name") or None


def parse_page(page: dict[str, Any]) -> dict[str, Any]:
    """Map a Notion database page to a task dictionary.

    Args:
        page: A page object from a database query.

    Returns:
        Task dictionary with keys id, title, status, assignee, assignee_id,
        assign, team, due_date, created_date, last_modified, priority and
        description. Missing optional values are None.
    """
    properties = page.get("properties") or {}
    person = _first((properties.get("Assignee") or {}).get("people"))
    return {
        "id": page.get("id"),
        "title": _first((properties.get("Name") or {}).get("title")).get("plain_text")
        or "Untitled",
        "status": _select_name(properties.get("Status")) or "Not Started",
        "assignee": person.get("name") or None,
        "assignee_id": person.get("id") or None,
        "assign": _assign_value(properties),
        "team": _select_name(properties.get("Team")),
        "due_date": ((properties.get("Due Date") or {}).get("date") or {}).get("start"),
        "created_date": page.get("created_time"),
        "last_modified": page.get("last_edited_time"),
        "priority": _select_name(properties.get("Priority")),
        "description": _first((properties.get("Description") or {}).get("rich_text")).get(
            "plain_text"
        )
        or None,
    }


def build_update_properties(changes: dict[str, str | None]) -> dict[str, Any]:
    """Translate task field changes into a Notion ``properties`` payload.

    Empty strings and None clear the property.

    Args:
        changes: Mapping of task field (status, team, assignee_id, assign)
            to its new value.

    Returns:
        The ``properties`` object for a single page update.

    Raises:
        ValueError: If a field is not updatable.
    """
    properties: dict[str, Any] = {}
    for field_name, value in changes.items():
        if field_name not in UPDATABLE_FIELDS:
            raise ValueError(f"Field is not updatable: {field_name}")
        value = value or None
        if field_name == "status":
            properties["Status"] = {"select": {"name": value} if value else None}
        elif field_name == "team":
            properties["Team"] = {"select": {"name": value} if value else None}
        elif field_name == "assignee_id":
            properties["Assignee"] = {"people": [{"id": value}] if value else []}
        else:
            properties["Assign"] = {"multi_select": [{"name": value}] if value else []}
    return properties


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return seconds


class NotionClient:
    """Minimal Notion API client bound to one task database."""

    def __init__(
        self,
        api_key: str,
        database_id: str,
        http_client: httpx.AsyncClient,
        *,
        base_url: str = "https://api.notion.com/v1",
        notion_version: str = "2022-06-28",
    ) -> None:
        """Initialize the client.

        Args:
            api_key: Notion integration token.
            database_id: Id of the task database.
            http_client: Shared httpx.AsyncClient (owned by the caller).
            base_url: API root without trailing slash.
            notion_version: Value of the Notion-Version header.
        """
        self.database_id = database_id
        self._api_key = api_key
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._notion_version = notion_version

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> "NotionClient":
        """Create a client from dashboard settings."""
        return cls(
            settings.notion_api_key,
            settings.notion_database_id,
            http_client,
            base_url=settings.notion_api_url,
            notion_version=settings.notion_version,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Notion-Version": self._notion_version,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one API request and return the decoded JSON body.

        Raises:
            NotionRateLimitError: If Notion answered 429.
            NotionAPIError: On any other HTTP or transport failure.
        """
        url = f"{self._base_url}{path}"
        try:
            response = await self._http_client.request(
                method, url, headers=self._headers(), json=json, params=params
            )
        except httpx.HTTPError as e:
            logger.error("Notion request %s %s failed: %s", method, path, e)
            raise NotionAPIError("Failed to reach Notion", detail=str(e)) from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("retry-after"))
            logger.warning("Notion rate limit on %s %s (retry_after=%s)", method, path, retry_after)
            raise NotionRateLimitError(retry_after=retry_after)
        if response.status_code >= 400:
            logger.error("Notion API error %d on %s %s", response.status_code, method, path)
            raise NotionAPIError(
                f"Notion API error {response.status_code}",
                status=response.status_code,
                detail=response.text[:500] or None,
            )
        return response.json()

    async def query_tasks(
        self, notion_filter: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Fetch every task of the database, following pagination.

        Args:
            notion_filter: Optional Notion filter object.

        Returns:
            Tasks newest first, mapped with parse_page().
        """
        pages: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            body: dict[str, Any] = {
                "page_size": PAGE_SIZE,
                "sorts": [{"timestamp": "created_time", "direction": "descending"}],
            }
            if notion_filter:
                body["filter"] = notion_filter
            if cursor:
                body["start_cursor"] = cursor
            data = await self._request("POST", f"/databases/{self.database_id}/query", json=body)
            pages.extend(data.get("results") or [])
            cursor = data.get("next_cursor")
            if not data.get("has_more") or not cursor:
                break
            logger.debug("Fetched %d tasks so far, fetching more", len(pages))

        logger.info("Total tasks fetched from Notion: %d", len(pages))
        return [parse_page(page) for page in pages]

    async def list_assignees(self) -> list[dict[str, str]]:
        """List workspace people usable as assignees.

        Returns:
            ``{"id", "name"}`` entries, de-duplicated by id, sorted by name.
        """
        people: dict[str, dict[str, str]] = {}
        cursor: str | None = None
        for _ in range(MAX_USER_PAGES):
            params: dict[str, Any] = {"page_size": PAGE_SIZE}
            if cursor:
                params["start_cursor"] = cursor
            data = await self._request("GET", "/users", params=params)
            for user in data.get("results") or []:
                if user.get("type") == "person" and user.get("id") and user.get("name"):
                    people[user["id"]] = {"id": user["id"], "name": user["name"]}
            cursor = data.get("next_cursor")
            if not data.get("has_more") or not cursor:
                break
        return sorted(people.values(), key=lambda person: person["name"].lower())

    async def retrieve_database(self) -> dict[str, Any]:
        """Fetch the database object (schema and metadata)."""
        return await self._request("GET", f"/databases/{self.database_id}")

    async def get_assign_options(self) -> list[str]:
        """List the option names of the database's assign property, sorted."""
        meta = await self.retrieve_database()
        properties = meta.get("properties") or {}
        prop: dict[str, Any] = {}
        for name in (*ASSIGN_PROPERTY_NAMES, "Assignee", "assignee"):
            if properties.get(name):
                prop = properties[name]
                break
        logger.debug("Assign property type: %s", prop.get("type", "none"))
        options = (prop.get("multi_select") or prop.get("select") or {}).get("options") or []
        names = [option["name"] for option in options if option.get("name")]
        return sorted(names, key=str.lower)

    async def update_task(self, task_id: str, changes: dict[str, str | None]) -> None:
        """Apply field changes to one task with a single page update.

        Args:
            task_id: Notion page id.
            changes: Task fields to change; see build_update_properties().

        Raises:
            TaskNotFoundError: If Notion reports the page as missing.
            NotionRateLimitError: If Notion answered 429.
            NotionAPIError: On any other failure.
        """
        properties = build_update_properties(changes)
        try:
            await self._request("PATCH", f"/pages/{task_id}", json={"properties": properties})
        except NotionAPIError as e:
            if e.status == 404:
                raise TaskNotFoundError(task_id) from e
            raise
        logger.info("Updated task %s (%s)", task_id, ", ".join(sorted(changes)))

    async def debug_fields(self, sample_size: int = 3) -> dict[str, Any]:
        """Describe the database schema and the assignment data of sample pages."""
        meta = await self.retrieve_database()
        properties = meta.get("properties") or {}
        data = await self._request(
            "POST",
            f"/databases/{self.database_id}/query",
            json={"page_size": sample_size},
        )
        samples = []
        for page in data.get("results") or []:
            page_props = page.get("properties") or {}
            samples.append(
                {
                    "id": page.get("id"),
                    "title": parse_page(page)["title"],
                    "all_property_names": list(page_props),
                    "assignment_fields": {
                        name: page_props.get(name)
                        for name in ("Assign", "Assignee", *ASSIGN_PROPERTY_NAMES[1:])
                    },
                }
            )
        return {
            "database_properties": list(properties),
            "property_types": {name: prop.get("type") for name, prop in properties.items()},
            "sample_tasks": samples,
        }
