"""Notion Task Dashboard - FastAPI application."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskcache import ServiceUnavailableError
from taskcache.swr import format_seconds

from dashboard.config import CORS_ORIGINS, HOST, LOG_LEVEL_STR, PORT, Settings, setup_logging
from dashboard.context import AppContext, build_context
from dashboard.exceptions import DashboardError, NotionAPIError
from dashboard.routes.notion import router as notion_router
from dashboard.routes.store import router as store_router
from dashboard.routes.tasks import router as tasks_router
from dashboard.version import __version__

# Configure logging using centralized setup
setup_logging()
logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, context: AppContext | None = None) -> FastAPI:
    """Create the dashboard application.

    Args:
        settings: Runtime settings. Read from the environment at startup
            when omitted.
        context: Prebuilt application context. The caller keeps ownership
            and is responsible for closing it.

    Returns:
        The configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build the application context on startup and close it on shutdown."""
        owned = context is None
        ctx = context or build_context(settings or Settings.from_env())
        app.state.context = ctx
        logger.info(
            "Dashboard starting: host=%s, port=%d, log_level=%s, strategy=%s, backend=%s",
            HOST,
            PORT,
            LOG_LEVEL_STR,
            ctx.settings.cache_strategy,
            ctx.backend_name,
        )
        yield
        logger.info("Dashboard shutting down")
        if owned:
            await ctx.aclose()
        else:
            # The refresh timer runs on this app's event loop
            await ctx.refresh_store.stop()

    app = FastAPI(
        title="Notion Task Dashboard",
        description="Task dashboard API backed by a Notion database",
        version=__version__,
        lifespan=lifespan,
    )
    if context is not None:
        app.state.context = context

    @app.exception_handler(DashboardError)
    async def dashboard_error_handler(request: Request, exc: DashboardError) -> JSONResponse:
        """Handle all DashboardError exceptions with consistent JSON responses."""
        logger.error(
            "Dashboard error: %s - %s (status=%d)",
            exc.__class__.__name__,
            exc.message,
            exc.status_code,
        )
        headers: dict[str, str] = {}
        if isinstance(exc, NotionAPIError) and exc.retry_after:
            headers["Retry-After"] = format_seconds(exc.retry_after)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(ServiceUnavailableError)
    async def service_unavailable_handler(
        request: Request, exc: ServiceUnavailableError
    ) -> JSONResponse:
        """Tell clients to retry shortly when no cached data could be served."""
        logger.warning("Service unavailable for %s", exc.key)
        return JSONResponse(
            status_code=exc.status,
            content={
                "error": "ServiceUnavailable",
                "message": "Data is being refreshed, please retry shortly.",
            },
            headers={"Retry-After": format_seconds(exc.retry_after)},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions with a generic error response."""
        logger.exception("Unexpected error: %s", exc)
        return JSONResponse(
            status_code=500,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(tasks_router)
    app.include_router(notion_router)
    app.include_router(store_router)

    @app.get("/health")
    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint with configuration presence flags."""
        ctx: AppContext = request.app.state.context
        return JSONResponse(
            content={
                "status": "ok",
                "env": {
                    "has_notion_api_key": bool(ctx.settings.notion_api_key),
                    "notion_database_id_length": len(ctx.settings.notion_database_id),
                    "cache_strategy": ctx.settings.cache_strategy,
                    "cache_backend": ctx.backend_name,
                },
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("dashboard.app:app", host=HOST, port=PORT, reload=True)
