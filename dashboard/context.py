"""Application context holding every stateful dashboard component.

One AppContext is built per application in the FastAPI lifespan and stored
on ``app.state.context``. Route handlers reach it through the get_context
dependency.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import Request

from taskcache import CacheOptions, KeyValueStore, PeriodicRefreshStore, SWRCache, create_store

from dashboard.config import Settings
from dashboard.services.notion import NotionClient
from dashboard.services.tasks import TaskService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Stateful components shared by all requests of one application."""

    settings: Settings
    store: KeyValueStore
    swr: SWRCache
    refresh_store: PeriodicRefreshStore
    tasks: TaskService
    http_client: httpx.AsyncClient | None = None
    owns_http_client: bool = True

    @property
    def backend_name(self) -> str:
        return getattr(self.store, "backend_name", type(self.store).__name__)

    async def aclose(self) -> None:
        """Stop the refresh timer and release store and HTTP connections."""
        await self.refresh_store.stop()
        await self.store.close()
        if self.http_client is not None and self.owns_http_client:
            await self.http_client.aclose()
        logger.info("Application context closed")


def build_context(
    settings: Settings,
    *,
    store: KeyValueStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AppContext:
    """Wire the store, cache engines, Notion client and task service.

    Args:
        settings: Runtime settings.
        store: Key-value store to use instead of create_store(settings.redis_url).
        http_client: HTTP client to use for Notion. When given, the caller
            keeps ownership and must close it.

    Returns:
        A ready AppContext. No network I/O happens here.
    """
    if store is None:
        store = create_store(settings.redis_url)

    owns_http_client = http_client is None
    client: NotionClient | None = None
    if settings.has_notion_credentials:
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=settings.notion_timeout)
        client = NotionClient.from_settings(settings, http_client)
    else:
        logger.warning("Notion credentials missing; task endpoints will return errors")

    swr = SWRCache(
        store,
        upstream="notion",
        defaults=CacheOptions(
            fresh_ttl=settings.fresh_ttl,
            stale_max_age=settings.stale_max_age,
            lock_ttl=settings.lock_ttl,
        ),
    )

    service: TaskService

    async def fetch_all_tasks() -> list[dict[str, Any]]:
        return await service.client.query_tasks()

    refresh_store = PeriodicRefreshStore(
        fetch_all_tasks,
        refresh_interval=settings.refresh_interval,
        poll_interval=settings.poll_interval,
        rate_limit_cooldown=settings.rate_limit_cooldown,
        error_cooldown=settings.error_cooldown,
    )
    service = TaskService(client, swr, refresh_store, strategy=settings.cache_strategy)

    return AppContext(
        settings=settings,
        store=store,
        swr=swr,
        refresh_store=refresh_store,
        tasks=service,
        http_client=http_client,
        owns_http_client=owns_http_client,
    )


def get_context(request: Request) -> AppContext:
    """FastAPI dependency returning the application's context."""
    context: AppContext = request.app.state.context
    return context


def get_task_service(request: Request) -> TaskService:
    """FastAPI dependency returning the task service."""
    return get_context(request).tasks
