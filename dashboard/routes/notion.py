"""REST API endpoints for Notion workspace metadata."""

from typing import Any

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from dashboard.context import get_task_service
from dashboard.services.tasks import TaskService

router = APIRouter(prefix="/api", tags=["notion"])


class Assignee(BaseModel):
    """A Notion workspace person."""

    id: str
    name: str


class AssigneeListResponse(BaseModel):
    assignees: list[Assignee]


class AssignOptionsResponse(BaseModel):
    options: list[str]


@router.get("/assignees", response_model=AssigneeListResponse)
async def list_assignees(
    response: Response,
    service: TaskService = Depends(get_task_service),
) -> dict[str, Any]:
    """List people who can be assigned to tasks."""
    result = await service.list_assignees()
    response.headers.update(result.headers)
    return {"assignees": result.data}


@router.get("/assign-options", response_model=AssignOptionsResponse)
async def list_assign_options(
    response: Response,
    service: TaskService = Depends(get_task_service),
) -> dict[str, Any]:
    """List the options of the database's assign property."""
    result = await service.list_assign_options()
    response.headers.update(result.headers)
    return {"options": result.data}


@router.get("/debug-fields")
async def debug_fields(service: TaskService = Depends(get_task_service)) -> dict[str, Any]:
    """Show database property names and types plus sample assignment data.

    Not cached; every call hits Notion.
    """
    return await service.debug_fields()
