"""Batch reconciliation of external records against the internal ledger.

Records are split into fixed-size batches. Batches run concurrently up to
an adaptive limit and records inside a batch run concurrently up to an
inner limit. Writes touching the same internal license are serialized by a
keyed lock, and every record is matched again once its lock is held, so a
record waiting behind a create of the same business sees the new license
and updates it instead of creating a second one.

Each input record yields exactly one ``RecordOutcome``. A failing record
never aborts its siblings; only fatal errors (storage, auth) propagate.
"""

import asyncio
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Sequence
from uuid import UUID

from ..config import SyncSettings
from ..errors import SyncError, UnknownError, classify_exception
from ..logging import get_context_logger, log_sync_batch
from ..models import (
    ExternalLicenseRecord,
    OutcomeKind,
    RecordOutcome,
    utc_now,
)
from ..stores import InternalLicenseStore
from .matcher import IdentityMatch, LicenseMatcher
from .merge import SYNC_ACTOR, build_new_license, compute_linkage, compute_update
from .monitor import SyncMonitor

logger = get_context_logger(__name__)

# Attempts at re-matching under a lock before giving up on a record
MAX_REMATCH_ATTEMPTS = 3


def plan_concurrency(batch_count: int, settings: SyncSettings) -> int:
    """Batch concurrency for a run of ``batch_count`` batches.

    Small runs gain nothing from parallel batches; large runs are allowed
    more, both capped by the configured limit.
    """
    limit = settings.concurrency_limit
    if batch_count <= settings.small_run_max_batches:
        return min(limit, settings.small_run_concurrency)
    if batch_count > settings.large_run_min_batches:
        return min(limit, settings.large_run_concurrency)
    return limit


def partition(
    records: Sequence[ExternalLicenseRecord], batch_size: int
) -> list[list[ExternalLicenseRecord]]:
    return [list(records[i:i + batch_size]) for i in range(0, len(records), batch_size)]


def _creation_lock_keys(record: ExternalLicenseRecord) -> list[str]:
    keys = []
    if record.app_id:
        keys.append(f"app_id:{record.app_id}")
    if record.normalized_email:
        keys.append(f"email:{record.normalized_email}")
    if record.count_id is not None:
        keys.append(f"count_id:{record.count_id}")
    return sorted(keys)


@dataclass
class BatchReport:
    """Outcomes of one processing run, in input order."""

    outcomes: list[RecordOutcome] = field(default_factory=list)
    batches: int = 0
    concurrency: int = 0

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind == kind)

    @property
    def failed(self) -> list[RecordOutcome]:
        return [o for o in self.outcomes if o.kind == OutcomeKind.FAILED]


class BatchProcessor:
    """Reconciles external records in concurrent batches."""

    def __init__(
        self,
        store: InternalLicenseStore,
        settings: SyncSettings,
        monitor: SyncMonitor | None = None,
        dry_run: bool = False,
        sequential: bool = False,
        operation_id: UUID | None = None,
        actor: str = SYNC_ACTOR,
    ):
        """Initialize the processor.

        Args:
            store: Internal license store written to
            settings: Batch size and concurrency limits
            monitor: Receives per-record progress
            dry_run: Compute outcomes without writing
            sequential: Process one record at a time (basic sync)
            operation_id: Sync operation for log context
            actor: Recorded as created_by / updated_by
        """
        self.store = store
        self.settings = settings
        self.monitor = monitor
        self.dry_run = dry_run
        self.sequential = sequential
        self.operation_id = operation_id
        self.actor = actor
        self.matcher = LicenseMatcher(store)
        self._locks: dict[str, asyncio.Lock] = {}
        self._processed = 0

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def process(self, records: Sequence[ExternalLicenseRecord]) -> BatchReport:
        """Reconcile every record.

        Returns:
            Report with one outcome per input record, in input order

        Raises:
            SyncError: If a fatal error aborts the run
        """
        batches = partition(records, self.settings.batch_size)
        if self.sequential:
            concurrency, inner = 1, 1
        else:
            concurrency = plan_concurrency(len(batches), self.settings)
            inner = self.settings.inner_concurrency_limit

        report = BatchReport(batches=len(batches), concurrency=concurrency)
        if not batches:
            return report

        logger.info(
            f"Reconciling {len(records)} records in {len(batches)} batches "
            f"(concurrency {concurrency})",
            extra={
                "operation_id": str(self.operation_id) if self.operation_id else None,
                "records": len(records),
                "batches": len(batches),
                "concurrency": concurrency,
                "dry_run": self.dry_run,
            },
        )

        semaphore = asyncio.Semaphore(concurrency)
        tasks = [
            asyncio.create_task(self._run_batch(number, batch, semaphore, inner))
            for number, batch in enumerate(batches, start=1)
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for batch_outcomes in results:
            report.outcomes.extend(batch_outcomes)
        return report

    async def _run_batch(
        self,
        number: int,
        batch: list[ExternalLicenseRecord],
        semaphore: asyncio.Semaphore,
        inner: int,
    ) -> list[RecordOutcome]:
        async with semaphore:
            record_semaphore = asyncio.Semaphore(inner)

            async def run_one(record: ExternalLicenseRecord) -> RecordOutcome:
                async with record_semaphore:
                    outcome = await self._process_record(record)
                self._processed += 1
                if self.monitor is not None:
                    await self.monitor.record_processed(1)
                return outcome

            outcomes = list(await asyncio.gather(*(run_one(r) for r in batch)))

        log_sync_batch(
            str(self.operation_id) if self.operation_id else "",
            number,
            len(batch),
            sum(1 for o in outcomes if o.kind == OutcomeKind.FAILED),
            self._processed,
        )
        return outcomes

    async def _process_record(self, record: ExternalLicenseRecord) -> RecordOutcome:
        try:
            return await self.reconcile(record)
        except Exception as e:
            error = classify_exception(e)
            if error.fatal:
                if error is not e:
                    raise error from e
                raise
            logger.warning(
                f"Failed to reconcile external license {record.identifier}: {error.message}",
                extra={"identifier": record.identifier, "error_type": error.error_type},
            )
            return RecordOutcome(
                identifier=record.identifier,
                kind=OutcomeKind.FAILED,
                reason=error.message,
                error_type=error.error_type,
            )

    # =========================
    # Per-record reconciliation
    # =========================

    async def reconcile(self, record: ExternalLicenseRecord) -> RecordOutcome:
        """Match one record and create or update its internal license."""
        for _ in range(MAX_REMATCH_ATTEMPTS):
            match = await self.matcher.match(record)

            if match.is_create:
                async with AsyncExitStack() as stack:
                    for key in _creation_lock_keys(record):
                        await stack.enter_async_context(self._lock(key))
                    current = await self.matcher.match(record)
                    if current.is_create:
                        return await self._create(record)
                continue

            async with self._lock(f"license:{match.internal.id}"):
                current = await self.matcher.match(record)
                if current.internal is not None and current.internal.id == match.internal.id:
                    return await self._update(record, current)

        raise UnknownError(
            f"Match for {record.identifier} kept changing while waiting for its lock"
        )

    async def _create(self, record: ExternalLicenseRecord) -> RecordOutcome:
        new_license = build_new_license(record, now=utc_now(), created_by=self.actor)
        if not self.dry_run:
            new_license = await self.store.create(new_license)
            logger.debug(
                f"Created license {new_license.key} for external {record.identifier}",
                extra={"identifier": record.identifier, "license_id": str(new_license.id)},
            )
        return RecordOutcome(
            identifier=record.identifier,
            kind=OutcomeKind.CREATED,
            internal_id=None if self.dry_run else new_license.id,
        )

    async def _update(self, record: ExternalLicenseRecord, match: IdentityMatch) -> RecordOutcome:
        internal = match.internal
        changes = compute_update(record, internal).changes()
        changes.update(compute_linkage(record, internal))

        if not changes:
            return RecordOutcome(
                identifier=record.identifier,
                kind=OutcomeKind.UNCHANGED,
                internal_id=internal.id,
            )

        changed_fields = sorted(changes)
        if not self.dry_run:
            changes["last_external_sync_at"] = utc_now()
            await self.store.update(internal.id, changes, self.actor)
            logger.debug(
                f"Updated license {internal.key} from external {record.identifier} "
                f"(matched by {match.criterion.value})",
                extra={
                    "identifier": record.identifier,
                    "license_id": str(internal.id),
                    "fields": changed_fields,
                },
            )
        return RecordOutcome(
            identifier=record.identifier,
            kind=OutcomeKind.UPDATED,
            internal_id=internal.id,
            changed_fields=changed_fields,
        )
