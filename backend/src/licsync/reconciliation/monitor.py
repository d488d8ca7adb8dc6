"""Sync progress and statistics tracking."""

import asyncio
from datetime import datetime
from uuid import UUID

from ..cache import CACHE_TTL, CacheBackend, sync_progress_key, sync_result_key
from ..logging import get_context_logger, log_sync_progress
from ..models import SyncProgress, SyncResult, SyncStatistics

logger = get_context_logger(__name__)

# Progress is logged every time it crosses another multiple of this percent
PROGRESS_LOG_STEP = 10.0


class SyncMonitor:
    """Tracks the running sync and aggregates results across runs.

    The processed counter only moves forward and is updated under a lock,
    since batches report concurrently. When a cache backend is given the
    current progress and the last result are mirrored to it.
    """

    def __init__(self, cache: CacheBackend | None = None):
        self.cache = cache
        self._lock = asyncio.Lock()

        self.operation_id: UUID | None = None
        self.started_at: datetime | None = None
        self.in_progress = False
        self.processed = 0
        self.total = 0
        self.last_result: SyncResult | None = None

        self._runs = 0
        self._successes = 0
        self._failures = 0
        self._total_duration = 0.0
        self._records_processed = 0
        self._last_logged_step = 0

    @property
    def progress(self) -> SyncProgress:
        percent = 0.0
        if self.total > 0:
            percent = round(min(self.processed / self.total * 100.0, 100.0), 1)
        return SyncProgress(processed=self.processed, total=self.total, percent=percent)

    async def start(self, operation_id: UUID, started_at: datetime) -> None:
        async with self._lock:
            self.operation_id = operation_id
            self.started_at = started_at
            self.in_progress = True
            self.processed = 0
            self.total = 0
            self._last_logged_step = 0
        await self._publish_progress()

    async def set_total(self, total: int) -> None:
        async with self._lock:
            self.total = max(total, 0)
        await self._publish_progress()

    async def record_processed(self, count: int = 1) -> SyncProgress:
        """Advance the processed counter.

        Args:
            count: Records finished since the last call (negative values
                are ignored)

        Returns:
            Progress after the update
        """
        async with self._lock:
            if count > 0:
                self.processed += count
            progress = self.progress
            step = int(progress.percent // PROGRESS_LOG_STEP)
            should_log = step > self._last_logged_step
            if should_log:
                self._last_logged_step = step

        if should_log and self.operation_id is not None:
            log_sync_progress(
                str(self.operation_id), progress.percent, progress.processed, progress.total
            )
        await self._publish_progress()
        return progress

    async def end(self, result: SyncResult) -> None:
        """Record the end of the running sync."""
        async with self._lock:
            self.in_progress = False
            self.last_result = result
            self._runs += 1
            if result.success:
                self._successes += 1
            else:
                self._failures += 1
            self._total_duration += result.duration_seconds
            self._records_processed += self.processed

        if self.cache is not None:
            await self.cache.delete(sync_progress_key())
            await self.cache.set(
                sync_result_key(),
                result.model_dump(mode="json"),
                ttl=CACHE_TTL["sync_result"],
            )

    async def shared_progress(self, operation_id: UUID) -> SyncProgress | None:
        """Progress of ``operation_id`` as published by whichever process runs it."""
        if self.cache is None:
            return None
        cached = await self.cache.get(sync_progress_key())
        if not cached or cached.get("operation_id") != str(operation_id):
            return None
        return SyncProgress.model_validate(cached)

    async def shared_last_result(self) -> SyncResult | None:
        """Most recent result known here or published to the cache."""
        if self.cache is None:
            return self.last_result
        cached = await self.cache.get(sync_result_key())
        if not cached:
            return self.last_result
        shared = SyncResult.model_validate(cached)
        if self.last_result is None or shared.timestamp > self.last_result.timestamp:
            return shared
        return self.last_result

    def statistics(self) -> SyncStatistics:
        average = self._total_duration / self._runs if self._runs else 0.0
        return SyncStatistics(
            total_runs=self._runs,
            successful_runs=self._successes,
            failed_runs=self._failures,
            average_duration_seconds=round(average, 3),
            total_records_processed=self._records_processed,
            last_run_at=self.last_result.timestamp if self.last_result else None,
        )

    async def _publish_progress(self) -> None:
        if self.cache is None:
            return
        await self.cache.set(
            sync_progress_key(),
            {
                "operation_id": str(self.operation_id) if self.operation_id else None,
                **self.progress.model_dump(),
            },
            ttl=CACHE_TTL["sync_progress"],
        )
