"""Unit tests for concurrent batch reconciliation.

Run with: pytest backend/tests/unit/test_batch.py -v
"""

import asyncio

import pytest

from licsync.config import SyncSettings
from licsync.errors import StorageError
from licsync.models import LicenseFilter, OutcomeKind
from licsync.reconciliation import BatchProcessor, SyncMonitor, partition, plan_concurrency
from licsync.stores import InMemoryInternalLicenseStore


class YieldingStore(InMemoryInternalLicenseStore):
    """In-memory store that yields to the event loop on every call.

    Lets concurrently processed records interleave the way they would
    against a real database.
    """

    def __init__(self, *args, fail_keys=(), fatal=False, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_keys = set(fail_keys)
        self.fatal = fatal

    async def find_by_external_app_id(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().find_by_external_app_id(*args, **kwargs)

    async def find_by_email(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().find_by_email(*args, **kwargs)

    async def find_by_external_count_id(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().find_by_external_count_id(*args, **kwargs)

    async def create(self, record):
        await asyncio.sleep(0)
        if record.external_app_id in self.fail_keys:
            if self.fatal:
                raise StorageError("database unavailable")
            raise ValueError(f"cannot store {record.external_app_id}")
        return await super().create(record)

    async def update(self, *args, **kwargs):
        await asyncio.sleep(0)
        return await super().update(*args, **kwargs)


def settings_with(**overrides) -> SyncSettings:
    return SyncSettings(**overrides)


class TestPlanConcurrency:
    """Tests for adaptive batch concurrency."""

    @pytest.mark.parametrize(
        "batches, expected",
        [(1, 2), (3, 2), (4, 5), (50, 5), (51, 5), (500, 5)],
    )
    def test_default_limit(self, batches, expected):
        """Test small, medium and large runs with the default limit of 5."""
        assert plan_concurrency(batches, settings_with(concurrency_limit=5)) == expected

    def test_large_run_cap(self):
        """Test that a large run is capped at 8 when the configured limit is higher."""
        settings = settings_with(concurrency_limit=10)

        assert plan_concurrency(51, settings) == 8
        assert plan_concurrency(50, settings) == 10
        assert plan_concurrency(3, settings) == 2

    def test_configured_limit_caps_everything(self):
        """Test that the configured limit bounds small and large runs."""
        settings = settings_with(concurrency_limit=1)

        assert plan_concurrency(2, settings) == 1
        assert plan_concurrency(100, settings) == 1

    def test_partition(self, make_external):
        """Test fixed-size batching with a short last batch."""
        records = [make_external(f"A{i}") for i in range(5)]

        assert [len(b) for b in partition(records, 2)] == [2, 2, 1]
        assert partition([], 2) == []


class TestExactlyOnce:
    """Tests for one outcome and at most one create per identity."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrency", range(1, 9))
    async def test_repeated_identities_create_once(self, make_external, concurrency):
        """Test that duplicate keys in one run never create two licenses."""
        records = [
            make_external("A1"),
            make_external("A2"),
            make_external("A1"),
            make_external("B1", emailLicense="shared@biz.com"),
            make_external(None, emailLicense="shared@biz.com"),
            make_external("A2"),
            make_external("A3", countId=7),
            make_external(None, emailLicense=None, countId=7),
        ]
        store = YieldingStore()
        processor = BatchProcessor(
            store,
            settings_with(batch_size=1, concurrency_limit=concurrency, inner_concurrency_limit=4),
        )

        report = await processor.process(records)

        assert report.concurrency == concurrency
        assert len(report.outcomes) == len(records)
        assert report.failed == []
        assert report.count(OutcomeKind.CREATED) == 4
        assert store.create_calls == 4
        licenses = await store.find_licenses(LicenseFilter())
        assert sorted(record.external_app_id for record in licenses) == ["A1", "A2", "A3", "B1"]

    @pytest.mark.asyncio
    async def test_outcomes_in_input_order(self, make_external):
        """Test that outcomes line up with the input records."""
        records = [make_external(f"A{i}") for i in range(7)]
        processor = BatchProcessor(YieldingStore(), settings_with(batch_size=2))

        report = await processor.process(records)

        assert [o.identifier for o in report.outcomes] == [f"A{i}" for i in range(7)]
        assert report.batches == 4

    @pytest.mark.asyncio
    async def test_second_run_writes_nothing(self, make_external):
        """Test that reprocessing an unchanged snapshot is a no-op."""
        records = [make_external(f"A{i}") for i in range(3)]
        store = YieldingStore()
        settings = settings_with(batch_size=2)

        await BatchProcessor(store, settings).process(records)
        writes = store.write_count
        report = await BatchProcessor(store, settings).process(records)

        assert report.count(OutcomeKind.UNCHANGED) == 3
        assert store.write_count == writes


class TestRecordOutcomes:
    """Tests for per-record results."""

    @pytest.mark.asyncio
    async def test_update_reports_changed_fields(self, make_external, make_internal):
        """Test that an update names the fields it changed."""
        existing = make_internal("LIC-1", external_app_id="A1", dba="Old Name")
        store = YieldingStore([existing])

        report = await BatchProcessor(store, settings_with()).process(
            [make_external("A1", dba="New Name")]
        )

        outcome = report.outcomes[0]
        assert outcome.kind == OutcomeKind.UPDATED
        assert outcome.internal_id == existing.id
        assert "dba" in outcome.changed_fields
        stored = await store.find_by_id(existing.id)
        assert stored.dba == "New Name"
        assert stored.last_external_sync_at is not None
        assert stored.product is None

    @pytest.mark.asyncio
    async def test_failing_record_does_not_abort_run(self, make_external):
        """Test that one failure is reported and its siblings still succeed."""
        store = YieldingStore(fail_keys={"A2"})
        records = [make_external(f"A{i}") for i in range(1, 5)]

        report = await BatchProcessor(store, settings_with(batch_size=2)).process(records)

        assert [o.kind for o in report.outcomes] == [
            OutcomeKind.CREATED,
            OutcomeKind.FAILED,
            OutcomeKind.CREATED,
            OutcomeKind.CREATED,
        ]
        failure = report.failed[0]
        assert failure.identifier == "A2"
        assert failure.error_type == "UnknownError"
        assert "cannot store A2" in failure.reason

    @pytest.mark.asyncio
    async def test_fatal_error_aborts_run(self, make_external):
        """Test that a storage failure propagates out of the run."""
        store = YieldingStore(fail_keys={"A2"}, fatal=True)
        records = [make_external(f"A{i}") for i in range(1, 5)]

        with pytest.raises(StorageError):
            await BatchProcessor(store, settings_with(batch_size=2)).process(records)

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, make_external, make_internal):
        """Test that a dry run computes outcomes without touching the store."""
        existing = make_internal("LIC-1", external_app_id="A1", dba="Old Name")
        store = YieldingStore([existing])

        report = await BatchProcessor(store, settings_with(), dry_run=True).process(
            [make_external("A1", dba="New Name"), make_external("A2")]
        )

        assert [o.kind for o in report.outcomes] == [OutcomeKind.UPDATED, OutcomeKind.CREATED]
        assert report.outcomes[1].internal_id is None
        assert store.write_count == 0

    @pytest.mark.asyncio
    async def test_sequential_mode(self, make_external):
        """Test that basic processing runs one record at a time."""
        records = [make_external(f"A{i}") for i in range(10)]

        report = await BatchProcessor(
            YieldingStore(), settings_with(batch_size=2), sequential=True
        ).process(records)

        assert report.concurrency == 1
        assert report.count(OutcomeKind.CREATED) == 10

    @pytest.mark.asyncio
    async def test_progress_reported_to_monitor(self, make_external):
        """Test that every processed record advances the monitor."""
        monitor = SyncMonitor()
        records = [make_external(f"A{i}") for i in range(5)]
        await monitor.set_total(len(records))

        await BatchProcessor(YieldingStore(), settings_with(batch_size=2), monitor=monitor).process(
            records
        )

        assert monitor.progress.processed == 5
        assert monitor.progress.percent == 100.0
