"""taskboard CLI - run and inspect the Notion Task Dashboard.

Configuration comes from the same environment variables as the server
(NOTION_API_KEY, NOTION_DATABASE_ID, REDIS_URL, ...).
"""

import asyncio
import json
from typing import Any

import click

from taskcache import SWRCache, create_store

from dashboard.config import HOST, PORT, Settings
from dashboard.context import build_context
from dashboard.exceptions import DashboardError
from dashboard.services.tasks import TASKS_PREFIX
from dashboard.version import __version__


@click.group()
@click.version_option(version=__version__, prog_name="taskboard")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Notion Task Dashboard - serve and inspect the task API."""
    ctx.ensure_object(dict)
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.option("--host", default=HOST, show_default=True, help="Interface to bind")
@click.option("--port", "-p", type=int, default=PORT, show_default=True, help="Port to listen on")
@click.option("--reload", is_flag=True, help="Reload on code changes (development)")
def serve(host: str, port: int, reload: bool) -> None:
    """Run the dashboard API server with uvicorn."""
    import uvicorn

    click.echo(f"Starting dashboard on http://{host}:{port}")
    uvicorn.run("dashboard.app:app", host=host, port=port, reload=reload)


async def _debug_fields(settings: Settings) -> dict[str, Any]:
    context = build_context(settings)
    try:
        return await context.tasks.debug_fields()
    finally:
        await context.aclose()


@cli.command("debug-fields")
@click.pass_context
def debug_fields(ctx: click.Context) -> None:
    """Print the Notion database properties and sample assignment data."""
    settings: Settings = ctx.obj["settings"]
    try:
        fields = asyncio.run(_debug_fields(settings))
    except DashboardError as e:
        click.echo(f"Error: {e.message}", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(fields, indent=2))


async def _invalidate(settings: Settings, prefix: str) -> int:
    store = create_store(settings.redis_url)
    try:
        return await SWRCache(store).invalidate(prefix)
    finally:
        await store.close()


@cli.command()
@click.option(
    "--prefix",
    default=TASKS_PREFIX,
    show_default=True,
    help="Cache key namespace to clear",
)
@click.pass_context
def invalidate(ctx: click.Context, prefix: str) -> None:
    """Delete cached datasets under a key prefix."""
    settings: Settings = ctx.obj["settings"]
    if not prefix:
        click.echo("Error: prefix must not be empty", err=True)
        raise SystemExit(1)
    if not settings.redis_url:
        click.echo("Warning: REDIS_URL not set, only this process's in-memory store is cleared")
    deleted = asyncio.run(_invalidate(settings, prefix))
    click.echo(f"Deleted {deleted} cache entries under {prefix}")


if __name__ == "__main__":
    cli()
