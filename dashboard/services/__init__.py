"""Services layer for the Notion Task Dashboard.

This module provides centralized business logic and external integrations.
"""

from dashboard.services.notion import NotionClient
from dashboard.services.tasks import TaskFilters, TaskService

__all__ = ["NotionClient", "TaskFilters", "TaskService"]
