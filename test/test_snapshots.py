"""Tests for the line-status snapshot cache (TfL clients mocked)."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from _helpers import line_status

from journey_core.dispatch import DispatchError
from journey_core.snapshots import (
    InMemorySnapshotStore,
    SnapshotStoreError,
    StatusSnapshot,
    StatusSnapshotCache,
    is_snapshot_fresh,
)
from journey_core.tfl_client import TflClient

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

CACHED = [line_status("victoria")]
REFRESHED = [line_status("victoria", severities=(9,))]
LIVE = [line_status("victoria", severities=(6,))]


def _snapshot(payload, seconds_old, source="cron"):
    return StatusSnapshot(payload=payload, source=source, valid_at=NOW - timedelta(seconds=seconds_old))


class FailingStore:
    """Store whose writes (and optionally reads) fail."""

    def __init__(self, existing=None, fail_reads=False):
        self.existing = existing
        self.fail_reads = fail_reads
        self.insert_attempts = 0

    async def insert(self, snapshot):
        self.insert_attempts += 1
        raise SnapshotStoreError("database unavailable")

    async def latest(self):
        if self.fail_reads:
            raise SnapshotStoreError("database unavailable")
        return self.existing


class TestFreshness:
    def test_none_is_not_fresh(self):
        assert is_snapshot_fresh(None, timedelta(seconds=120), NOW) is False

    def test_boundary_is_fresh(self):
        assert is_snapshot_fresh(_snapshot(CACHED, 120), timedelta(seconds=120), NOW) is True

    def test_older_is_stale(self):
        assert is_snapshot_fresh(_snapshot(CACHED, 121), timedelta(seconds=120), NOW) is False


class TestInMemorySnapshotStore:
    @pytest.mark.asyncio
    async def test_empty(self):
        assert await InMemorySnapshotStore().latest() is None

    @pytest.mark.asyncio
    async def test_latest_by_valid_at(self):
        store = InMemorySnapshotStore()
        newer = _snapshot(CACHED, 10)
        older = _snapshot(REFRESHED, 60)
        await store.insert(newer)
        await store.insert(older)
        assert await store.latest() is newer

    @pytest.mark.asyncio
    async def test_ties_resolved_by_insert_order(self):
        store = InMemorySnapshotStore()
        first = _snapshot(CACHED, 10, source="cron")
        second = _snapshot(REFRESHED, 10, source="live")
        await store.insert(first)
        await store.insert(second)
        assert await store.latest() is second

    @pytest.mark.asyncio
    async def test_rows_capped(self):
        store = InMemorySnapshotStore(max_rows=2)
        for age in (30, 20, 10):
            await store.insert(_snapshot(CACHED, age))
        assert len(store) == 2
        assert (await store.latest()).valid_at == NOW - timedelta(seconds=10)


class TestStatusSnapshotCache:
    def _make_cache(self, store=None, max_age=120):
        store = store if store is not None else InMemorySnapshotStore()
        live = AsyncMock(spec=TflClient)
        refresher = AsyncMock(spec=TflClient)
        live.get_line_status.return_value = LIVE
        refresher.get_line_status.return_value = REFRESHED
        cache = StatusSnapshotCache(
            store=store, client=live, refresh_client=refresher, max_age=max_age, modes=["tube"]
        )
        cache._clock = lambda: NOW
        return cache, store, live, refresher

    @pytest.mark.asyncio
    async def test_fresh_snapshot_served_without_network(self):
        cache, store, live, refresher = self._make_cache()
        await store.insert(_snapshot(CACHED, 90))

        assert await cache.get_line_statuses() == CACHED
        refresher.get_line_status.assert_not_called()
        live.get_line_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_snapshot_triggers_refresh(self):
        cache, store, live, refresher = self._make_cache()
        await store.insert(_snapshot(CACHED, 150))

        assert await cache.get_line_statuses() == REFRESHED
        refresher.get_line_status.assert_awaited_once_with(["tube"])
        live.get_line_status.assert_not_called()
        latest = await store.latest()
        assert latest.source == "manual-refresh"
        assert latest.valid_at == NOW

    @pytest.mark.asyncio
    async def test_empty_store_triggers_refresh(self):
        cache, store, live, refresher = self._make_cache()
        assert await cache.get_line_statuses() == REFRESHED
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_caller_max_age_overrides_default(self):
        cache, store, live, refresher = self._make_cache(max_age=120)
        await store.insert(_snapshot(CACHED, 90))

        assert await cache.get_line_statuses(max_age=60) == REFRESHED

    @pytest.mark.asyncio
    async def test_refresh_failure_falls_back_to_live(self):
        cache, store, live, refresher = self._make_cache()
        refresher.get_line_status.side_effect = DispatchError("quota exceeded", status_code=429)

        assert await cache.get_line_statuses() == LIVE
        latest = await store.latest()
        assert latest.source == "live"
        assert latest.payload == LIVE

    @pytest.mark.asyncio
    async def test_persistence_failures_are_not_fatal(self):
        store = FailingStore(existing=_snapshot(CACHED, 600))
        cache, _, live, refresher = self._make_cache(store=store)

        assert await cache.get_line_statuses() == LIVE
        # One failed insert from the refresh, one from the live fallback.
        assert store.insert_attempts == 2

    @pytest.mark.asyncio
    async def test_unreadable_store_still_serves_live(self):
        store = FailingStore(fail_reads=True)
        cache, _, live, refresher = self._make_cache(store=store)

        assert await cache.get_line_statuses() == LIVE

    @pytest.mark.asyncio
    async def test_live_failure_serves_stale_snapshot(self):
        cache, store, live, refresher = self._make_cache()
        await store.insert(_snapshot(CACHED, 900))
        refresher.get_line_status.side_effect = DispatchError("boom", status_code=500)
        live.get_line_status.side_effect = DispatchError("boom", status_code=500)

        assert await cache.get_line_statuses() == CACHED

    @pytest.mark.asyncio
    async def test_live_failure_without_snapshot_raises(self):
        cache, store, live, refresher = self._make_cache()
        refresher.get_line_status.side_effect = DispatchError("boom", status_code=500)
        live.get_line_status.side_effect = DispatchError("down", status_code=503)

        with pytest.raises(DispatchError, match="down"):
            await cache.get_line_statuses()

    @pytest.mark.asyncio
    async def test_cron_refresh_tags_source(self):
        cache, store, live, refresher = self._make_cache()

        snapshot = await cache.refresh("cron")

        assert snapshot.source == "cron"
        assert snapshot.payload == REFRESHED
        assert await store.latest() is snapshot
        live.get_line_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_refresh_client_defaults_to_live_client(self):
        live = AsyncMock(spec=TflClient)
        live.get_line_status.return_value = LIVE
        cache = StatusSnapshotCache(store=InMemorySnapshotStore(), client=live)

        snapshot = await cache.refresh()

        assert snapshot.payload == LIVE
        assert snapshot.source == "manual-refresh"
