"""REST API endpoints for task operations."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Response
from pydantic import BaseModel, ConfigDict, Field

from dashboard.context import get_task_service
from dashboard.services.tasks import TaskFilters, TaskService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


class Task(BaseModel):
    """Response model for a task."""

    id: str
    title: str
    status: str = Field(..., description="Not Started, In Progress or Done")
    assignee: str | None = None
    assignee_id: str | None = None
    assign: str | None = None
    team: str | None = None
    due_date: str | None = None
    created_date: str | None = None
    last_modified: str | None = None
    priority: str | None = Field(None, description="Low, Medium or High")
    description: str | None = None


class TaskListResponse(BaseModel):
    """Response model for the task list."""

    tasks: list[Task]


class TaskUpdate(BaseModel):
    """Request model for updating a task.

    Omitted fields are left untouched; an empty string or null clears the
    field in Notion.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    status: str | None = Field(None, description="New status")
    team: str | None = Field(None, description="New team")
    assignee_id: str | None = Field(None, alias="assigneeId", description="Notion user id")
    assign: str | None = Field(None, description="New assign label")


@router.get("", response_model=TaskListResponse)
async def list_tasks(
    response: Response,
    team: str | None = Query(None, description="Filter by team"),
    assignee: str | None = Query(None, description="Filter by assign label"),
    status: str | None = Query(None, description="Filter by status"),
    service: TaskService = Depends(get_task_service),
) -> dict[str, Any]:
    """List tasks with optional filters.

    Cache state is reported in the X-Cache (and related) response headers.
    """
    filters = TaskFilters(team=team or None, assignee=assignee or None, status=status or None)
    result = await service.list_tasks(filters)
    response.headers.update(result.headers)
    return {"tasks": result.data}


@router.patch("/{task_id}")
async def update_task(
    task_id: str,
    update: TaskUpdate = Body(...),
    service: TaskService = Depends(get_task_service),
) -> dict[str, Any]:
    """Update a task's status, team or assignment."""
    changes = update.model_dump(exclude_unset=True)
    logger.info("Updating task %s: %s", task_id, ", ".join(sorted(changes)) or "nothing")
    await service.update_task(task_id, changes)
    return {"success": True}
