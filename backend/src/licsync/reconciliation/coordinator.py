"""Sync coordinator: the state machine driving a reconciliation run.

    idle -> fetching -> deduplicating -> reconciling -> reporting -> idle

Any stage moves to ``failed`` on an unrecoverable error (auth, storage,
timeout); the coordinator is idle again once the run is finalized.

A run is single-flight: an in-process lock rejects overlapping requests
and the operation store rejects a second ``running`` operation across
processes. The whole run is bounded by ``timeout_seconds``. Triggers always
return a ``SyncResult``; the only exception they raise is
``SyncInProgressError``.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable
from uuid import UUID

from ..config import SyncSettings, get_settings
from ..errors import (
    ApiTimeoutError,
    ConsolidationError,
    LicenseNotFoundError,
    SyncError,
    SyncInProgressError,
    classify_exception,
)
from ..external import ExternalLicenseClient
from ..logging import get_context_logger, log_sync_complete, log_sync_error, log_sync_start
from ..models import (
    AppliedBy,
    DuplicateCandidate,
    DuplicateMatch,
    DuplicateRouting,
    DuplicateScope,
    EntitySystem,
    ExternalLicenseRecord,
    ExternalSyncStatus,
    LicenseFilter,
    OutcomeKind,
    RecordFailure,
    RecordOutcome,
    ReviewStatus,
    SyncOperation,
    SyncOperationStatus,
    SyncOperationType,
    SyncProgress,
    SyncResult,
    SyncStage,
    SyncStatus,
    utc_now,
)
from ..stores import Stores
from .batch import BatchProcessor
from .consolidation import Consolidator
from .duplicates import DuplicateDetector, external_master_rank
from .merge import SYNC_ACTOR, build_external_payload
from .monitor import SyncMonitor
from .review import ReviewQueue

logger = get_context_logger(__name__)

PENDING_REVIEW_REASON = "pending duplicate review"


@dataclass(frozen=True)
class SyncOptions:
    """Options of one sync trigger.

    Attributes:
        comprehensive: Batched concurrent processing (False = one record at
            a time)
        detect_duplicates: Run duplicate detection before reconciling
        dry_run: Fetch and analyse without writing to any license store
        bidirectional: Push internal licenses pending sync to the API
    """

    comprehensive: bool = True
    detect_duplicates: bool = True
    dry_run: bool = False
    bidirectional: bool = False


def collapse_identities(
    records: list[ExternalLicenseRecord],
) -> tuple[list[ExternalLicenseRecord], list[tuple[ExternalLicenseRecord, ExternalLicenseRecord]]]:
    """Keep one record per identity key.

    Returns:
        Tuple of (kept records in input order, (dropped, kept master) pairs)
    """
    masters: dict[str, ExternalLicenseRecord] = {}
    for record in records:
        current = masters.get(record.identity_key)
        if current is None or external_master_rank(record) > external_master_rank(current):
            masters[record.identity_key] = record

    kept = []
    dropped = []
    for record in records:
        master = masters[record.identity_key]
        if record is master:
            kept.append(record)
        else:
            dropped.append((record, master))
    return kept, dropped


class SyncCoordinator:
    """Runs external license syncs."""

    def __init__(
        self,
        stores: Stores,
        client: ExternalLicenseClient,
        settings: SyncSettings | None = None,
        monitor: SyncMonitor | None = None,
        detector: DuplicateDetector | None = None,
    ):
        self.stores = stores
        self.client = client
        self.settings = settings or get_settings().sync
        self.monitor = monitor or SyncMonitor()
        self.detector = detector or DuplicateDetector.from_settings(self.settings)
        self.consolidator = Consolidator(stores)
        self.review_queue = ReviewQueue(stores.reviews, self.consolidator)

        self.stage = SyncStage.IDLE
        self._lock = asyncio.Lock()
        self._operation: SyncOperation | None = None

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    # =========================
    # Triggers
    # =========================

    async def run_sync(self, options: SyncOptions | None = None) -> SyncResult:
        """Run a full sync.

        Raises:
            SyncInProgressError: If a sync is already running
        """
        options = options or SyncOptions()
        if options.comprehensive and self.settings.enable_comprehensive_sync:
            operation_type = SyncOperationType.COMPREHENSIVE
        else:
            operation_type = SyncOperationType.BASIC
        return await self._run(operation_type, options, self._sync_all)

    async def sync_single(self, app_id: str, dry_run: bool = False) -> SyncResult:
        """Sync one license fetched by appId.

        Raises:
            SyncInProgressError: If a sync is already running
        """
        options = SyncOptions(comprehensive=False, detect_duplicates=False, dry_run=dry_run)

        async def body(operation: SyncOperation, opts: SyncOptions) -> None:
            await self._sync_one(app_id, operation, opts)

        return await self._run(SyncOperationType.SINGLE, options, body)

    async def _run(
        self,
        operation_type: SyncOperationType,
        options: SyncOptions,
        body: Callable[[SyncOperation, SyncOptions], Awaitable[None]],
    ) -> SyncResult:
        if self._lock.locked():
            raise SyncInProgressError(str(self._operation.id) if self._operation else None)

        async with self._lock:
            operation = SyncOperation(type=operation_type, dry_run=options.dry_run)

            if options.dry_run and not self.settings.enable_dry_run_mode:
                return self._rejected(operation, "Dry run mode is disabled")

            try:
                started = await self.stores.operations.try_start(operation)
            except Exception as e:
                error = classify_exception(e)
                logger.error(f"Could not record sync start: {error.message}")
                return self._rejected(operation, error.message, error.error_type)

            if not started:
                running = await self.stores.operations.find_running()
                raise SyncInProgressError(str(running.id) if running else None)

            self._operation = operation
            log_sync_start(operation_type.value, str(operation.id), **asdict(options))
            await self.monitor.start(operation.id, operation.started_at)

            try:
                error = await self._execute(body, operation, options)
                return await self._finalize(operation, error)
            finally:
                if operation.status == SyncOperationStatus.RUNNING:
                    # Cancelled from outside: do not leave the run marked running
                    operation.status = SyncOperationStatus.FAILED
                    operation.error = "Sync cancelled"
                    operation.ended_at = utc_now()
                    await self.stores.operations.save(operation)
                    await self.monitor.end(
                        SyncResult(
                            success=False,
                            operation_id=operation.id,
                            totals=operation.totals,
                            errors=operation.failures,
                            error=operation.error,
                            error_type="CancelledError",
                            duration_seconds=operation.duration_seconds or 0.0,
                            dry_run=operation.dry_run,
                            api_status=self.client.api_status,
                            circuit_breaker_state=self.client.breaker.state.value,
                        )
                    )
                self._operation = None
                self.stage = SyncStage.IDLE

    async def _execute(
        self,
        body: Callable[[SyncOperation, SyncOptions], Awaitable[None]],
        operation: SyncOperation,
        options: SyncOptions,
    ) -> SyncError | None:
        timeout = self.settings.timeout_seconds
        try:
            await asyncio.wait_for(body(operation, options), timeout=timeout)
        except asyncio.TimeoutError:
            return ApiTimeoutError(f"Sync timed out after {timeout:g}s")
        except Exception as e:
            error = classify_exception(e)
            logger.exception(
                f"Sync {operation.id} failed in stage {self.stage.value}",
                extra={"operation_id": str(operation.id), "error_type": error.error_type},
            )
            return error
        return None

    async def _finalize(self, operation: SyncOperation, error: SyncError | None) -> SyncResult:
        operation.ended_at = utc_now()
        if error is None:
            self.stage = SyncStage.REPORTING
            operation.status = SyncOperationStatus.SUCCESS
        else:
            self.stage = SyncStage.FAILED
            operation.status = SyncOperationStatus.FAILED
            operation.error = error.message

        try:
            await self.stores.operations.save(operation)
        except Exception as e:
            save_error = classify_exception(e)
            logger.error(
                f"Could not record the end of sync {operation.id}: {save_error.message}",
                extra={"operation_id": str(operation.id)},
            )
            error = error or save_error

        duration = operation.duration_seconds or 0.0
        if error is None:
            log_sync_complete(
                operation.type.value,
                str(operation.id),
                operation.totals.model_dump(),
                duration,
            )
        else:
            log_sync_error(operation.type.value, str(operation.id), error.message)

        result = SyncResult(
            success=error is None,
            operation_id=operation.id,
            totals=operation.totals,
            errors=operation.failures,
            error=error.message if error else None,
            error_type=error.error_type if error else None,
            duration_seconds=duration,
            dry_run=operation.dry_run,
            api_status=self.client.api_status,
            circuit_breaker_state=self.client.breaker.state.value,
        )
        await self.monitor.end(result)
        return result

    def _rejected(
        self, operation: SyncOperation, message: str, error_type: str = "ValidationError"
    ) -> SyncResult:
        logger.warning(f"Sync not started: {message}")
        return SyncResult(
            success=False,
            error=message,
            error_type=error_type,
            dry_run=operation.dry_run,
            api_status=self.client.api_status,
            circuit_breaker_state=self.client.breaker.state.value,
        )

    # =========================
    # Stages
    # =========================

    async def _sync_all(self, operation: SyncOperation, options: SyncOptions) -> None:
        totals = operation.totals

        self.stage = SyncStage.FETCHING
        fetch = await self.client.get_all_licenses(self.settings.batch_size)
        totals.fetched = fetch.fetched
        totals.skipped += len(fetch.skipped)
        operation.failures.extend(fetch.skipped)
        if not options.dry_run:
            await self.stores.external.bulk_upsert(fetch.records)

        skip: dict[str, str] = {}
        if options.detect_duplicates and self.settings.enable_duplicate_detection:
            self.stage = SyncStage.DEDUPLICATING
            skip = await self._deduplicate(fetch.records, operation, options)

        remaining = []
        for record in fetch.records:
            reason = skip.get(record.identity_key)
            if reason is None:
                remaining.append(record)
            else:
                self._apply_outcome(
                    operation,
                    RecordOutcome(
                        identifier=record.identifier, kind=OutcomeKind.SKIPPED, reason=reason
                    ),
                )

        remaining, dropped = collapse_identities(remaining)
        for record, master in dropped:
            self._apply_outcome(
                operation,
                RecordOutcome(
                    identifier=record.identifier,
                    kind=OutcomeKind.SKIPPED,
                    reason=f"duplicate of {master.identity_key} in snapshot",
                ),
            )

        self.stage = SyncStage.RECONCILING
        await self.monitor.set_total(len(remaining))
        processor = BatchProcessor(
            self.stores.internal,
            self.settings,
            monitor=self.monitor,
            dry_run=options.dry_run,
            sequential=operation.type == SyncOperationType.BASIC,
            operation_id=operation.id,
        )
        report = await processor.process(remaining)
        for outcome in report.outcomes:
            self._apply_outcome(operation, outcome)

        if options.bidirectional:
            if not self.settings.enable_bidirectional_sync:
                logger.warning("Bidirectional sync requested but disabled by configuration")
            elif options.dry_run:
                logger.info("Dry run: skipping push of pending internal licenses")
            else:
                await self._push_pending(operation)

        self.stage = SyncStage.REPORTING

    async def _sync_one(
        self, app_id: str, operation: SyncOperation, options: SyncOptions
    ) -> None:
        self.stage = SyncStage.FETCHING
        record = await self.client.get_license_by_app_id(app_id)
        if record is None:
            raise LicenseNotFoundError(f"External license not found: {app_id}")
        operation.totals.fetched = 1
        if not options.dry_run:
            await self.stores.external.bulk_upsert([record])

        self.stage = SyncStage.RECONCILING
        await self.monitor.set_total(1)
        processor = BatchProcessor(
            self.stores.internal,
            self.settings,
            dry_run=options.dry_run,
            sequential=True,
            operation_id=operation.id,
        )
        # Errors propagate so the result carries their type
        outcome = await processor.reconcile(record)
        await self.monitor.record_processed(1)
        self._apply_outcome(operation, outcome)
        self.stage = SyncStage.REPORTING

    def _apply_outcome(self, operation: SyncOperation, outcome: RecordOutcome) -> None:
        operation.totals.add_outcome(outcome)
        if outcome.kind == OutcomeKind.FAILED:
            operation.failures.append(
                RecordFailure(
                    identifier=outcome.identifier,
                    reason=outcome.reason or "unknown error",
                    error_type=outcome.error_type or "UnknownError",
                )
            )

    # =========================
    # Duplicates
    # =========================

    async def _deduplicate(
        self,
        records: list[ExternalLicenseRecord],
        operation: SyncOperation,
        options: SyncOptions,
    ) -> dict[str, str]:
        """Detect duplicates and act on them.

        Returns:
            External identity keys to leave out of reconciliation, with the
            reason reported for each
        """
        internal = await self.stores.internal.find_licenses(LicenseFilter())
        report = self.detector.detect_all(records, internal)

        skip: dict[str, str] = {}
        for candidate in report.candidates:
            try:
                if candidate.routing == DuplicateRouting.AUTO_CONSOLIDATE:
                    await self._auto_consolidate(candidate, skip, options)
                    operation.totals.duplicates_handled += 1
                elif candidate.routing == DuplicateRouting.MANUAL_REVIEW:
                    await self._route_to_review(candidate, skip, operation, options)
            except ConsolidationError as e:
                # Usually a member already folded by an earlier candidate of this run
                logger.warning(
                    f"Skipping duplicate candidate {candidate.id}: {e.message}",
                    extra={"candidate_id": str(candidate.id), "scope": candidate.scope.value},
                )
        return skip

    async def _auto_consolidate(
        self, candidate: DuplicateCandidate, skip: dict[str, str], options: SyncOptions
    ) -> None:
        if candidate.scope == DuplicateScope.EXTERNAL:
            # The snapshot is rebuilt every sync, so this is re-derived each run
            # rather than recorded as a decision
            master = candidate.master.identifier
            for ref in candidate.duplicates:
                if ref.identifier != master:
                    skip[ref.identifier] = f"consolidated into {master}"
            return

        if options.dry_run:
            if candidate.scope == DuplicateScope.CROSS_SYSTEM:
                internal_ref, external_ref = self._cross_system_refs(candidate)
                skip[external_ref.identifier] = (
                    f"would link to internal license {internal_ref.label or internal_ref.identifier}"
                )
            return

        await self.consolidator.apply_candidate(candidate, applied_by=AppliedBy.SYSTEM)

    async def _route_to_review(
        self,
        candidate: DuplicateCandidate,
        skip: dict[str, str],
        operation: SyncOperation,
        options: SyncOptions,
    ) -> None:
        status = await self.review_queue.status_of(candidate)
        if status == ReviewStatus.REJECTED:
            return

        if status == ReviewStatus.APPROVED:
            if candidate.scope == DuplicateScope.EXTERNAL:
                master = candidate.master.identifier
                for ref in candidate.duplicates:
                    if ref.identifier != master:
                        skip[ref.identifier] = f"consolidated into {master}"
            return

        if status is None and not options.dry_run:
            await self.review_queue.enqueue(candidate, operation.id)

        if candidate.scope == DuplicateScope.EXTERNAL:
            for ref in candidate.duplicates:
                if ref.identifier != candidate.master.identifier:
                    skip.setdefault(ref.identifier, PENDING_REVIEW_REASON)
        elif candidate.scope == DuplicateScope.CROSS_SYSTEM:
            _, external_ref = self._cross_system_refs(candidate)
            skip.setdefault(external_ref.identifier, PENDING_REVIEW_REASON)

    @staticmethod
    def _cross_system_refs(candidate: DuplicateCandidate):
        internal_ref = next(m for m in candidate.members if m.system == EntitySystem.INTERNAL)
        external_ref = next(m for m in candidate.members if m.system == EntitySystem.EXTERNAL)
        return internal_ref, external_ref

    async def check_duplicates(
        self,
        dba: str | None = None,
        email: str | None = None,
        zip_code: str | None = None,
        phone: str | None = None,
        threshold: float | None = None,
        limit: int = 20,
    ) -> list[DuplicateMatch]:
        """Rank internal licenses that look like the given business."""
        internal = await self.stores.internal.find_licenses(LicenseFilter())
        return self.detector.check(
            internal,
            dba=dba,
            email=email,
            zip_code=zip_code,
            phone=phone,
            threshold=threshold,
            limit=limit,
        )

    # =========================
    # Bidirectional
    # =========================

    async def _push_pending(self, operation: SyncOperation) -> None:
        """Push linked internal licenses marked pending to the external API."""
        store = self.stores.internal
        pending = await store.find_licenses(
            LicenseFilter(linked=True, external_sync_status=ExternalSyncStatus.PENDING)
        )
        if not pending:
            return

        logger.info(
            f"Pushing {len(pending)} pending licenses to the external API",
            extra={"operation_id": str(operation.id), "count": len(pending)},
        )
        for record in pending:
            try:
                await self.client.update_license(
                    record.external_app_id, build_external_payload(record)
                )
            except SyncError as e:
                if e.fatal:
                    raise
                await store.update(
                    record.id, {"external_sync_status": ExternalSyncStatus.FAILED}, SYNC_ACTOR
                )
                operation.totals.failed += 1
                operation.failures.append(
                    RecordFailure(
                        identifier=record.external_app_id,
                        reason=f"push failed: {e.message}",
                        error_type=e.error_type,
                    )
                )
                continue

            await store.update(
                record.id,
                {
                    "external_sync_status": ExternalSyncStatus.SYNCED,
                    "last_external_sync_at": utc_now(),
                },
                SYNC_ACTOR,
            )
            operation.totals.pushed += 1

    # =========================
    # Status
    # =========================

    async def status(self) -> SyncStatus:
        """Snapshot for status polling.

        A run started by another process (worker or CLI) is found through
        the persisted running operation and the progress it publishes.
        """
        in_progress = self.in_progress
        operation_id = self._operation.id if self._operation else None
        progress = self.monitor.progress
        if not in_progress:
            running = await self.stores.operations.find_running()
            if running is not None:
                in_progress = True
                operation_id = running.id
                progress = await self.monitor.shared_progress(running.id) or SyncProgress()

        return SyncStatus(
            sync_in_progress=in_progress,
            stage=self.stage,
            operation_id=operation_id,
            progress=progress,
            last_result=await self.monitor.shared_last_result(),
            circuit_breaker_state=self.client.breaker.state.value,
            api_status=self.client.api_status,
            statistics=self.monitor.statistics(),
        )

    async def history(self, limit: int = 20) -> list[SyncOperation]:
        return await self.stores.operations.list_recent(limit)

    async def get_operation(self, operation_id: UUID) -> SyncOperation | None:
        return await self.stores.operations.get(operation_id)


# =========================
# Process-wide instance
# =========================

_coordinator: SyncCoordinator | None = None


async def get_coordinator() -> SyncCoordinator:
    """Get or create the process-wide coordinator backed by the SQL stores."""
    global _coordinator

    if _coordinator is None:
        from ..cache import get_cache
        from ..stores.sql import create_sql_stores

        settings = get_settings()
        _coordinator = SyncCoordinator(
            create_sql_stores(),
            ExternalLicenseClient(settings=settings),
            settings=settings.sync,
            monitor=SyncMonitor(await get_cache()),
        )
    return _coordinator


def set_coordinator(coordinator: SyncCoordinator | None) -> None:
    """Install a coordinator instance (used by tests)."""
    global _coordinator
    _coordinator = coordinator


async def close_coordinator() -> None:
    global _coordinator
    if _coordinator is not None:
        await _coordinator.client.close()
        _coordinator = None
