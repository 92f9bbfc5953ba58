"""In-process snapshot store refreshed on a timer.

An alternative to the SWR engine for datasets that need no per-filter
variation: one shared snapshot, refreshed in the background by a polling
task, with a cooldown after upstream failures.

Refresh state machine: Idle -> Refreshing -> Idle (success or cooldown set).
A refresh is skipped while another one is in progress or while in cooldown.
"""

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from taskcache.errors import failure_retry_after, is_rate_limited

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 60.0
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS = 60.0
DEFAULT_ERROR_COOLDOWN_SECONDS = 10.0


@dataclass
class StoreState:
    """Mutable snapshot state owned by one PeriodicRefreshStore."""

    items: list[dict[str, Any]] = field(default_factory=list)
    fetched_at: float | None = None
    is_refreshing: bool = False
    cooldown_until: float | None = None
    last_error: str | None = None


@dataclass
class StoreStats:
    """Introspection snapshot returned by PeriodicRefreshStore.get_stats()."""

    item_count: int
    fetched_at: float | None
    age_seconds: int | None
    is_refreshing: bool
    is_in_cooldown: bool
    cooldown_seconds: int
    last_error: str | None
    refresh_interval: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "item_count": self.item_count,
            "fetched_at": self.fetched_at,
            "age_seconds": self.age_seconds,
            "is_refreshing": self.is_refreshing,
            "is_in_cooldown": self.is_in_cooldown,
            "cooldown_seconds": self.cooldown_seconds,
            "last_error": self.last_error,
            "refresh_interval": self.refresh_interval,
        }


class PeriodicRefreshStore:
    """Process-local snapshot of a dataset kept warm by a polling task.

    Items are dictionaries identified by ``id_field``. The background task
    is started lazily by get_items() and must be stopped with stop() on
    shutdown.
    """

    def __init__(
        self,
        fetch_fn: Callable[[], Awaitable[list[dict[str, Any]]]],
        *,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        rate_limit_cooldown: float = DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS,
        error_cooldown: float = DEFAULT_ERROR_COOLDOWN_SECONDS,
        id_field: str = "id",
        modified_field: str = "last_modified",
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the store.

        Args:
            fetch_fn: Async callable returning the full dataset.
            refresh_interval: Snapshot age (s) after which the timer refreshes.
            poll_interval: How often (s) the timer checks the snapshot age.
            rate_limit_cooldown: Cooldown (s) after a 429 without retry hint.
            error_cooldown: Cooldown (s) after any other fetch failure.
            id_field: Item field used by update_item() to find an item.
            modified_field: Item field stamped by update_item().
            clock: Returns the current time in seconds. Injectable for tests.
        """
        self._fetch_fn = fetch_fn
        self.refresh_interval = refresh_interval
        self.poll_interval = poll_interval
        self.rate_limit_cooldown = rate_limit_cooldown
        self.error_cooldown = error_cooldown
        self.id_field = id_field
        self.modified_field = modified_field
        self._clock = clock
        self.state = StoreState()
        self._inflight: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None

    # -- cooldown -------------------------------------------------------

    def is_in_cooldown(self) -> bool:
        """Check if upstream calls are currently suppressed."""
        if self.state.cooldown_until is None:
            return False
        return self._clock() < self.state.cooldown_until

    def _set_cooldown(self, seconds: float) -> None:
        self.state.cooldown_until = self._clock() + seconds
        logger.warning("Refresh cooldown set for %.0fs", seconds)

    def should_refresh(self) -> bool:
        """Check if the snapshot is due for a refresh."""
        if self.is_in_cooldown():
            return False
        if self.state.fetched_at is None:
            return True
        return self._clock() - self.state.fetched_at > self.refresh_interval

    # -- refresh --------------------------------------------------------

    async def refresh(self) -> None:
        """Run one refresh unless one is in progress or in cooldown."""
        if self.state.is_refreshing:
            logger.debug("Refresh already in progress, skipping")
            return
        if self.is_in_cooldown():
            remaining = self.get_stats().cooldown_seconds
            logger.debug("In cooldown, skipping refresh (%ds remaining)", remaining)
            return

        self.state.is_refreshing = True
        self._inflight = asyncio.create_task(self._do_refresh())
        await asyncio.shield(self._inflight)

    async def _do_refresh(self) -> None:
        start = time.monotonic()
        try:
            logger.debug("Fetching snapshot from upstream")
            items = await self._fetch_fn()
            self.state.items = list(items)
            self.state.fetched_at = self._clock()
            self.state.last_error = None
            logger.info(
                "Snapshot refreshed in %.2fs: %d items", time.monotonic() - start, len(items)
            )
        except Exception as e:
            if is_rate_limited(e):
                logger.error("Rate limited by upstream while refreshing snapshot")
                self._set_cooldown(failure_retry_after(e) or self.rate_limit_cooldown)
                self.state.last_error = "Rate limited"
            else:
                logger.error("Snapshot refresh failed after %.2fs: %s", time.monotonic() - start, e)
                self.state.last_error = str(e) or e.__class__.__name__
                self._set_cooldown(self.error_cooldown)
        finally:
            self.state.is_refreshing = False

    async def _wait_inflight(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            await asyncio.shield(self._inflight)

    # -- background timer -------------------------------------------------

    def start(self) -> None:
        """Start the polling task (no-op if already running)."""
        if self._poll_task is not None and not self._poll_task.done():
            return
        logger.info(
            "Starting background refresh (interval=%.0fs, poll=%.0fs)",
            self.refresh_interval,
            self.poll_interval,
        )
        self._poll_task = asyncio.create_task(self._poll_loop())

    @property
    def is_running(self) -> bool:
        """Whether the polling task is active."""
        return self._poll_task is not None and not self._poll_task.done()

    async def stop(self) -> None:
        """Cancel the polling task and wait for it to finish."""
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None
        logger.info("Background refresh stopped")

    async def _poll_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.poll_interval)
                if self.should_refresh():
                    await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Background refresh tick failed: %s", e)

    # -- public API -------------------------------------------------------

    async def get_items(self) -> list[dict[str, Any]]:
        """Return the snapshot, fetching it first if it was never loaded.

        Starts the background timer on first use. Only the very first call
        (or a call on an empty snapshot) may block on the upstream.
        """
        self.start()
        if not self.state.items:
            if self.state.is_refreshing:
                await self._wait_inflight()
            else:
                await self.refresh()
        return self.state.items

    def set_items(self, items: list[dict[str, Any]]) -> None:
        """Replace the whole snapshot."""
        self.state.items = list(items)
        self.state.fetched_at = self._clock()
        logger.info("Snapshot replaced with %d items", len(items))

    def update_item(self, item_id: str, fields: dict[str, Any]) -> bool:
        """Merge fields into one item and stamp its modification time.

        Args:
            item_id: Value of ``id_field`` identifying the item.
            fields: Fields to merge into the item.

        Returns:
            True if the item was found and updated.
        """
        for index, item in enumerate(self.state.items):
            if item.get(self.id_field) == item_id:
                modified = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
                self.state.items[index] = {
                    **item,
                    **fields,
                    self.modified_field: modified.isoformat(),
                }
                logger.debug("Item %s updated in snapshot", item_id)
                return True
        logger.warning("Item %s not found in snapshot", item_id)
        return False

    async def force_refresh(self) -> list[dict[str, Any]]:
        """Clear the cooldown and refresh immediately.

        A refresh already in progress is awaited rather than duplicated.
        """
        self.state.cooldown_until = None
        if self.state.is_refreshing:
            await self._wait_inflight()
        else:
            await self.refresh()
        return self.state.items

    def get_stats(self) -> StoreStats:
        """Cheap, I/O-free introspection of the snapshot state."""
        now = self._clock()
        fetched_at = self.state.fetched_at
        cooldown = 0
        if self.state.cooldown_until is not None:
            cooldown = max(0, math.ceil(self.state.cooldown_until - now))
        return StoreStats(
            item_count=len(self.state.items),
            fetched_at=fetched_at,
            age_seconds=int(now - fetched_at) if fetched_at is not None else None,
            is_refreshing=self.state.is_refreshing,
            is_in_cooldown=self.is_in_cooldown(),
            cooldown_seconds=cooldown,
            last_error=self.state.last_error,
            refresh_interval=self.refresh_interval,
        )

    def clear(self) -> None:
        """Reset the snapshot to its initial empty state."""
        self.state = StoreState()
        logger.info("Snapshot cleared")
