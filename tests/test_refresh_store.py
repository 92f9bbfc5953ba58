"""Tests for the periodic refresh store."""

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from taskcache.refresh_store import PeriodicRefreshStore

TASKS = [
    {"id": "t1", "title": "Write docs", "status": "Not Started", "last_modified": None},
    {"id": "t2", "title": "Ship it", "status": "In Progress", "last_modified": None},
]


class FakeClock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RateLimited(Exception):
    """Upstream failure carrying a 429 status."""

    status = 429

    def __init__(self, retry_after: float | None = None) -> None:
        super().__init__("Rate limited")
        self.retry_after = retry_after


class CountingFetch:
    """Async fetch callback that records calls and can fail on demand."""

    def __init__(self, error: Exception | None = None, delay: float = 0) -> None:
        self.error = error
        self.delay = delay
        self.calls = 0

    async def __call__(self) -> list[dict[str, Any]]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [dict(task) for task in TASKS]


class TestRefresh:
    """Tests for the refresh routine and cooldown handling."""

    @pytest.mark.asyncio
    async def test_get_items_on_empty_store_fetches_once(self) -> None:
        """Test the first read blocks on one fetch and stamps fetched_at."""
        clock = FakeClock()
        fetch = CountingFetch()
        store = PeriodicRefreshStore(fetch, clock=clock)
        try:
            items = await store.get_items()
            again = await store.get_items()
        finally:
            await store.stop()

        assert fetch.calls == 1
        assert [item["id"] for item in items] == ["t1", "t2"]
        assert again == items
        assert store.state.fetched_at == clock()
        assert store.state.last_error is None

    @pytest.mark.asyncio
    async def test_concurrent_first_reads_share_one_refresh(self) -> None:
        """Test a read during an in-flight refresh awaits it instead of fetching."""
        fetch = CountingFetch(delay=0.05)
        store = PeriodicRefreshStore(fetch)
        try:
            first, second = await asyncio.gather(store.get_items(), store.get_items())
        finally:
            await store.stop()

        assert fetch.calls == 1
        assert len(first) == 2
        assert len(second) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_sets_signalled_cooldown(self) -> None:
        """Test a 429 puts the store into cooldown for retry_after seconds."""
        clock = FakeClock()
        fetch = CountingFetch(error=RateLimited(retry_after=30))
        store = PeriodicRefreshStore(fetch, clock=clock)

        await store.refresh()

        assert store.state.last_error == "Rate limited"
        assert store.is_in_cooldown() is True
        assert store.get_stats().cooldown_seconds == 30

        clock.advance(30)
        assert store.is_in_cooldown() is False

    @pytest.mark.asyncio
    async def test_rate_limit_without_hint_uses_default_cooldown(self) -> None:
        """Test a 429 with no retry hint uses rate_limit_cooldown."""
        clock = FakeClock()
        store = PeriodicRefreshStore(CountingFetch(error=RateLimited()), clock=clock)

        await store.refresh()

        assert store.get_stats().cooldown_seconds == 60

    @pytest.mark.asyncio
    async def test_other_failure_sets_short_cooldown(self) -> None:
        """Test transient failures record the error and cool down for 10s."""
        clock = FakeClock()
        store = PeriodicRefreshStore(CountingFetch(error=RuntimeError("timeout")), clock=clock)

        await store.refresh()

        stats = store.get_stats()
        assert stats.last_error == "timeout"
        assert stats.cooldown_seconds == 10
        assert stats.is_refreshing is False

    @pytest.mark.asyncio
    async def test_refresh_skipped_during_cooldown(self) -> None:
        """Test no fetch happens while the store is cooling down."""
        clock = FakeClock()
        fetch = CountingFetch(error=RuntimeError("timeout"))
        store = PeriodicRefreshStore(fetch, clock=clock)

        await store.refresh()
        await store.refresh()

        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_snapshot(self) -> None:
        """Test a failure never wipes the items already loaded."""
        fetch = CountingFetch()
        store = PeriodicRefreshStore(fetch)
        await store.refresh()

        fetch.error = RuntimeError("boom")
        await store.force_refresh()

        assert len(store.state.items) == 2
        assert store.state.last_error == "boom"

    @pytest.mark.asyncio
    async def test_force_refresh_clears_cooldown(self) -> None:
        """Test force_refresh bypasses an active cooldown."""
        clock = FakeClock()
        fetch = CountingFetch(error=RateLimited(retry_after=60))
        store = PeriodicRefreshStore(fetch, clock=clock)
        await store.refresh()

        fetch.error = None
        items = await store.force_refresh()

        assert fetch.calls == 2
        assert len(items) == 2
        assert store.is_in_cooldown() is False
        assert store.state.last_error is None

    @pytest.mark.asyncio
    async def test_force_refresh_awaits_inflight_refresh(self) -> None:
        """Test force_refresh does not duplicate a running refresh."""
        fetch = CountingFetch(delay=0.05)
        store = PeriodicRefreshStore(fetch)

        await asyncio.gather(store.refresh(), store.force_refresh())

        assert fetch.calls == 1
        assert len(store.state.items) == 2

    def test_should_refresh_follows_interval(self) -> None:
        """Test the timer's refresh decision."""
        clock = FakeClock()
        store = PeriodicRefreshStore(CountingFetch(), refresh_interval=60, clock=clock)
        assert store.should_refresh() is True

        store.set_items(TASKS)
        assert store.should_refresh() is False

        clock.advance(61)
        assert store.should_refresh() is True


class TestSnapshotUpdates:
    """Tests for explicit snapshot mutation."""

    def test_update_item_merges_fields_and_stamps_time(self) -> None:
        """Test update_item changes one item and stamps last_modified."""
        clock = FakeClock()
        store = PeriodicRefreshStore(CountingFetch(), clock=clock)
        store.set_items(TASKS)

        assert store.update_item("t1", {"status": "Done", "team": "Eng"}) is True

        item = store.state.items[0]
        assert item["status"] == "Done"
        assert item["team"] == "Eng"
        assert item["title"] == "Write docs"
        assert store.state.items[1]["status"] == "In Progress"

        clock.advance(60)
        store.update_item("t1", {"status": "Blocked"})

        stamped = datetime.fromisoformat(store.state.items[0]["last_modified"])
        assert stamped == datetime.fromtimestamp(clock(), tz=timezone.utc)
        assert stamped.isoformat() == "2023-11-14T22:14:20+00:00"

    def test_update_item_unknown_id_returns_false(self) -> None:
        """Test updating a missing item leaves the snapshot untouched."""
        store = PeriodicRefreshStore(CountingFetch())
        store.set_items(TASKS)

        assert store.update_item("nope", {"status": "Done"}) is False
        assert store.state.items == TASKS

    def test_set_items_does_not_alias_input(self) -> None:
        """Test the snapshot list is a copy of the given list."""
        store = PeriodicRefreshStore(CountingFetch())
        items = list(TASKS)

        store.set_items(items)
        items.clear()

        assert len(store.state.items) == 2

    def test_clear_resets_state(self) -> None:
        """Test clear() returns the store to its initial state."""
        store = PeriodicRefreshStore(CountingFetch())
        store.set_items(TASKS)

        store.clear()

        stats = store.get_stats()
        assert stats.item_count == 0
        assert stats.fetched_at is None
        assert stats.age_seconds is None

    def test_stats_to_dict(self) -> None:
        """Test stats serialize with every field."""
        clock = FakeClock()
        store = PeriodicRefreshStore(CountingFetch(), refresh_interval=60, clock=clock)
        store.set_items(TASKS)
        clock.advance(12)

        assert store.get_stats().to_dict() == {
            "item_count": 2,
            "fetched_at": clock() - 12,
            "age_seconds": 12,
            "is_refreshing": False,
            "is_in_cooldown": False,
            "cooldown_seconds": 0,
            "last_error": None,
            "refresh_interval": 60,
        }


class TestBackgroundTimer:
    """Tests for the polling task lifecycle."""

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_cancels(self) -> None:
        """Test start() twice keeps one task and stop() ends it."""
        store = PeriodicRefreshStore(CountingFetch(), poll_interval=3600)

        store.start()
        task = store._poll_task
        store.start()

        assert store._poll_task is task
        assert store.is_running is True

        await store.stop()

        assert store.is_running is False
        assert task is not None and task.done()

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self) -> None:
        """Test stopping a never-started store does nothing."""
        store = PeriodicRefreshStore(CountingFetch())

        await store.stop()

        assert store.is_running is False

    @pytest.mark.asyncio
    async def test_timer_refreshes_stale_snapshot(self) -> None:
        """Test the poll loop refreshes when the snapshot is due."""
        fetch = CountingFetch()
        store = PeriodicRefreshStore(fetch, poll_interval=0.01)

        store.start()
        try:
            for _ in range(100):
                if fetch.calls:
                    break
                await asyncio.sleep(0.01)
        finally:
            await store.stop()

        assert fetch.calls >= 1
        assert len(store.state.items) == 2

    @pytest.mark.asyncio
    async def test_timer_survives_failing_ticks(self) -> None:
        """Test errors inside a tick are logged and the loop keeps running."""
        fetch = CountingFetch()
        store = PeriodicRefreshStore(fetch, poll_interval=0.01, error_cooldown=0.01)
        calls = 0

        def broken_should_refresh() -> bool:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("tick failed")
            return True

        store.should_refresh = broken_should_refresh  # type: ignore[method-assign]
        store.start()
        try:
            for _ in range(100):
                if fetch.calls:
                    break
                await asyncio.sleep(0.01)
        finally:
            await store.stop()

        assert calls >= 2
        assert fetch.calls >= 1
