"""REST API endpoints for cache status and manual refresh."""

import logging
from typing import Any

from fastapi import APIRouter, Depends

from dashboard.context import get_task_service
from dashboard.services.tasks import TaskService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["store"])


@router.get("/store-stats")
async def store_stats(service: TaskService = Depends(get_task_service)) -> dict[str, Any]:
    """Report the state of the task snapshot and the SWR cache."""
    return await service.get_store_stats()


@router.post("/refresh")
async def refresh_tasks(service: TaskService = Depends(get_task_service)) -> dict[str, Any]:
    """Force a refresh of the task snapshot, bypassing the cooldown."""
    logger.info("Force refresh requested")
    return await service.refresh()
