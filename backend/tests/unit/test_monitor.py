"""Unit tests for sync progress and statistics tracking.

Run with: pytest backend/tests/unit/test_monitor.py -v
"""

import asyncio
from uuid import uuid4

import pytest

from licsync.cache import InMemoryCache, sync_progress_key, sync_result_key
from licsync.models import SyncResult, utc_now
from licsync.reconciliation import SyncMonitor


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


class TestProgress:
    """Tests for the processed counter."""

    @pytest.mark.asyncio
    async def test_percent(self):
        """Test percent computation rounded to one decimal."""
        monitor = SyncMonitor()
        await monitor.start(uuid4(), utc_now())
        await monitor.set_total(3)

        progress = await monitor.record_processed()

        assert progress.processed == 1
        assert progress.percent == 33.3

    def test_zero_total(self):
        """Test that an empty run reports zero percent."""
        monitor = SyncMonitor()

        assert monitor.progress.percent == 0.0

    @pytest.mark.asyncio
    async def test_never_moves_backwards(self):
        """Test that non-positive counts are ignored."""
        monitor = SyncMonitor()
        await monitor.set_total(10)
        await monitor.record_processed(4)

        await monitor.record_processed(-2)
        await monitor.record_processed(0)

        assert monitor.processed == 4

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_not_lost(self):
        """Test that concurrent reporters all count."""
        monitor = SyncMonitor()
        await monitor.set_total(100)

        await asyncio.gather(*(monitor.record_processed() for _ in range(100)))

        assert monitor.progress.processed == 100
        assert monitor.progress.percent == 100.0

    @pytest.mark.asyncio
    async def test_start_resets_counters(self):
        """Test that a new run starts from zero."""
        monitor = SyncMonitor()
        await monitor.set_total(5)
        await monitor.record_processed(5)

        await monitor.start(uuid4(), utc_now())

        assert monitor.processed == 0
        assert monitor.total == 0
        assert monitor.in_progress


class TestResults:
    """Tests for end-of-run bookkeeping."""

    @pytest.mark.asyncio
    async def test_statistics_aggregate_runs(self):
        """Test run counts and average duration."""
        monitor = SyncMonitor()

        await monitor.start(uuid4(), utc_now())
        await monitor.record_processed(3)
        await monitor.end(SyncResult(success=True, duration_seconds=2.0))
        await monitor.start(uuid4(), utc_now())
        await monitor.end(SyncResult(success=False, duration_seconds=4.0))

        stats = monitor.statistics()
        assert stats.total_runs == 2
        assert stats.successful_runs == 1
        assert stats.failed_runs == 1
        assert stats.average_duration_seconds == 3.0
        assert stats.total_records_processed == 3
        assert stats.last_run_at == monitor.last_result.timestamp
        assert not monitor.in_progress

    @pytest.mark.asyncio
    async def test_mirrors_to_cache(self, cache):
        """Test that progress and the last result are published to the cache."""
        monitor = SyncMonitor(cache)
        operation_id = uuid4()

        await monitor.start(operation_id, utc_now())
        await monitor.set_total(2)
        await monitor.record_processed()

        progress = await cache.get(sync_progress_key())
        assert progress["operation_id"] == str(operation_id)
        assert progress["processed"] == 1
        assert progress["percent"] == 50.0

        await monitor.end(SyncResult(success=True, operation_id=operation_id))

        assert await cache.get(sync_progress_key()) is None
        result = await cache.get(sync_result_key())
        assert result["success"] is True
        assert result["operation_id"] == str(operation_id)
