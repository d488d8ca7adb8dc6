"""Sync operation, progress and result models."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from .base import ensure_utc, utc_now


class SyncOperationType(str, Enum):
    """Kind of sync run."""

    COMPREHENSIVE = "comprehensive"
    BASIC = "basic"
    SINGLE = "single"


class SyncOperationStatus(str, Enum):
    """Status of a sync run."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class SyncStage(str, Enum):
    """Coordinator state machine stages."""

    IDLE = "idle"
    FETCHING = "fetching"
    DEDUPLICATING = "deduplicating"
    RECONCILING = "reconciling"
    REPORTING = "reporting"
    FAILED = "failed"


class OutcomeKind(str, Enum):
    """What happened to one external record during reconciliation."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


class RecordOutcome(BaseModel):
    """Outcome of reconciling one external record."""

    identifier: str
    kind: OutcomeKind
    internal_id: UUID | None = None
    changed_fields: list[str] = Field(default_factory=list)
    reason: str | None = None
    error_type: str | None = None


class RecordFailure(BaseModel):
    """A record that could not be reconciled, with the reason."""

    identifier: str
    reason: str
    error_type: str


class SyncTotals(BaseModel):
    """Counters for one sync run."""

    fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    duplicates_handled: int = 0
    pushed: int = 0

    def add_outcome(self, outcome: RecordOutcome) -> None:
        if outcome.kind == OutcomeKind.CREATED:
            self.created += 1
        elif outcome.kind == OutcomeKind.UPDATED:
            self.updated += 1
        elif outcome.kind == OutcomeKind.UNCHANGED:
            self.unchanged += 1
        elif outcome.kind == OutcomeKind.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


class SyncOperation(BaseModel):
    """Persistent record of a sync run, queryable as history."""

    id: UUID = Field(default_factory=uuid4)
    type: SyncOperationType = SyncOperationType.COMPREHENSIVE
    status: SyncOperationStatus = SyncOperationStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: datetime | None = None
    totals: SyncTotals = Field(default_factory=SyncTotals)
    failures: list[RecordFailure] = Field(default_factory=list)
    error: str | None = None
    dry_run: bool = False

    @field_validator("started_at", "ended_at")
    @classmethod
    def _utc_dates(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def duration_seconds(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class SyncProgress(BaseModel):
    """Transient progress of the running sync."""

    processed: int = 0
    total: int = 0
    percent: float = 0.0


class SyncResult(BaseModel):
    """What a sync trigger returns to its caller."""

    success: bool
    operation_id: UUID | None = None
    totals: SyncTotals = Field(default_factory=SyncTotals)
    errors: list[RecordFailure] = Field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    duration_seconds: float = 0.0
    dry_run: bool = False
    api_status: str = "unknown"
    circuit_breaker_state: str = "CLOSED"
    timestamp: datetime = Field(default_factory=utc_now)


class SyncStatistics(BaseModel):
    """Aggregate statistics across sync runs since process start."""

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    average_duration_seconds: float = 0.0
    total_records_processed: int = 0
    last_run_at: datetime | None = None


class SyncStatus(BaseModel):
    """Snapshot of the coordinator for status polling."""

    sync_in_progress: bool
    stage: SyncStage
    operation_id: UUID | None = None
    progress: SyncProgress = Field(default_factory=SyncProgress)
    last_result: SyncResult | None = None
    circuit_breaker_state: str = "CLOSED"
    api_status: str = "unknown"
    statistics: SyncStatistics = Field(default_factory=SyncStatistics)
