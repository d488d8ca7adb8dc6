"""External license sync API endpoints."""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query

from ..models import SyncOperation, SyncResult
from ..reconciliation import SyncOptions
from . import CamelModel, NotFoundError
from .dependencies import Coordinator

router = APIRouter(prefix="/external-licenses")


# =========================
# Response Models
# =========================


class RecordFailureResponse(CamelModel):
    identifier: str
    reason: str
    error_type: str


class SyncResultResponse(CamelModel):
    """Result of a sync trigger."""

    success: bool
    operation_id: UUID | None = None
    fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    duplicates_handled: int = 0
    pushed: int = 0
    errors: list[RecordFailureResponse] = []
    error: str | None = None
    error_type: str | None = None
    duration_seconds: float = 0.0
    dry_run: bool = False
    api_status: str
    circuit_breaker_state: str
    timestamp: datetime

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncResultResponse":
        return cls(
            success=result.success,
            operation_id=result.operation_id,
            **result.totals.model_dump(),
            errors=[RecordFailureResponse(**f.model_dump()) for f in result.errors],
            error=result.error,
            error_type=result.error_type,
            duration_seconds=result.duration_seconds,
            dry_run=result.dry_run,
            api_status=result.api_status,
            circuit_breaker_state=result.circuit_breaker_state,
            timestamp=result.timestamp,
        )


class SyncProgressResponse(CamelModel):
    processed: int
    total: int
    percent: float


class LastSyncResultResponse(CamelModel):
    timestamp: datetime
    success: bool
    created: int
    updated: int
    failed: int
    error: str | None = None


class SyncStatusResponse(CamelModel):
    """State of the sync engine for polling clients."""

    sync_in_progress: bool
    stage: str
    operation_id: UUID | None = None
    sync_progress: SyncProgressResponse
    last_sync_result: LastSyncResultResponse | None = None
    circuit_breaker_state: str
    api_status: str
    statistics: dict[str, Any]


class SyncOperationResponse(CamelModel):
    id: UUID
    type: str
    status: str
    started_at: datetime
    ended_at: datetime | None = None
    duration_seconds: float | None = None
    totals: dict[str, int]
    failure_count: int
    error: str | None = None
    dry_run: bool

    @classmethod
    def from_operation(cls, operation: SyncOperation) -> "SyncOperationResponse":
        return cls(
            id=operation.id,
            type=operation.type.value,
            status=operation.status.value,
            started_at=operation.started_at,
            ended_at=operation.ended_at,
            duration_seconds=operation.duration_seconds,
            totals=operation.totals.model_dump(),
            failure_count=len(operation.failures),
            error=operation.error,
            dry_run=operation.dry_run,
        )


class SyncHistoryResponse(CamelModel):
    results: list[SyncOperationResponse]
    total: int
    limit: int


class ExternalApiHealthResponse(CamelModel):
    healthy: bool
    api_status: str
    circuit_breaker_state: str
    base_url: str


# =========================
# Sync Triggers
# =========================


@router.post("/sync", response_model=SyncResultResponse, status_code=202)
async def trigger_sync(
    coordinator: Coordinator,
    comprehensive: bool = Query(True),
    detect_duplicates: bool = Query(True, alias="detectDuplicates"),
    dry_run: bool = Query(False, alias="dryRun"),
    bidirectional: bool = Query(False),
) -> SyncResultResponse:
    """Run a sync of all external licenses.

    Responds 409 while another sync is in flight.
    """
    result = await coordinator.run_sync(
        SyncOptions(
            comprehensive=comprehensive,
            detect_duplicates=detect_duplicates,
            dry_run=dry_run,
            bidirectional=bidirectional,
        )
    )
    return SyncResultResponse.from_result(result)


@router.post("/{app_id}/sync", response_model=SyncResultResponse)
async def sync_single_license(
    app_id: str,
    coordinator: Coordinator,
    dry_run: bool = Query(False, alias="dryRun"),
) -> SyncResultResponse:
    """Sync one license by appId."""
    result = await coordinator.sync_single(app_id, dry_run=dry_run)
    if not result.success and result.error_type == "LicenseNotFoundError":
        raise NotFoundError("External license", app_id)
    return SyncResultResponse.from_result(result)


# =========================
# Status
# =========================


@router.get("/sync/status", response_model=SyncStatusResponse)
async def get_sync_status(coordinator: Coordinator) -> SyncStatusResponse:
    """Current sync state, progress and the last result."""
    status = await coordinator.status()

    last = None
    if status.last_result is not None:
        result = status.last_result
        last = LastSyncResultResponse(
            timestamp=result.timestamp,
            success=result.success,
            created=result.totals.created,
            updated=result.totals.updated,
            failed=result.totals.failed,
            error=result.error,
        )

    return SyncStatusResponse(
        sync_in_progress=status.sync_in_progress,
        stage=status.stage.value,
        operation_id=status.operation_id,
        sync_progress=SyncProgressResponse(**status.progress.model_dump()),
        last_sync_result=last,
        circuit_breaker_state=status.circuit_breaker_state,
        api_status=status.api_status,
        statistics=status.statistics.model_dump(mode="json"),
    )


@router.get("/sync/history", response_model=SyncHistoryResponse)
async def get_sync_history(
    coordinator: Coordinator,
    limit: int = Query(20, ge=1, le=100),
) -> SyncHistoryResponse:
    """Most recent sync operations, newest first."""
    operations = await coordinator.history(limit)
    return SyncHistoryResponse(
        results=[SyncOperationResponse.from_operation(op) for op in operations],
        total=len(operations),
        limit=limit,
    )


@router.get("/health", response_model=ExternalApiHealthResponse)
async def external_api_health(coordinator: Coordinator) -> ExternalApiHealthResponse:
    """Check connectivity to the external license API."""
    client = coordinator.client
    healthy = await client.test_connectivity()
    return ExternalApiHealthResponse(
        healthy=healthy,
        api_status=client.api_status,
        circuit_breaker_state=client.breaker.state.value,
        base_url=client.base_url,
    )
