"""Domain models for license-sync."""

from .base import ensure_utc, parse_datetime, utc_now
from .duplicates import (
    AppliedBy,
    ConsolidationDecision,
    ConsolidationStrategy,
    DuplicateCandidate,
    DuplicateMatch,
    DuplicateRouting,
    DuplicateScope,
    EntityRef,
    EntitySystem,
    ReviewStatus,
)
from .licenses import (
    ACTIVE_FAMILY,
    INACTIVE_FAMILY,
    ExternalLicenseRecord,
    ExternalSyncStatus,
    InternalLicenseRecord,
    LicenseDiff,
    LicenseFilter,
    LicenseStatus,
)
from .sync import (
    OutcomeKind,
    RecordFailure,
    RecordOutcome,
    SyncOperation,
    SyncOperationStatus,
    SyncOperationType,
    SyncProgress,
    SyncResult,
    SyncStage,
    SyncStatistics,
    SyncStatus,
    SyncTotals,
)

__all__ = [
    # Base
    "ensure_utc",
    "parse_datetime",
    "utc_now",
    # Licenses
    "ACTIVE_FAMILY",
    "INACTIVE_FAMILY",
    "ExternalLicenseRecord",
    "ExternalSyncStatus",
    "InternalLicenseRecord",
    "LicenseDiff",
    "LicenseFilter",
    "LicenseStatus",
    # Duplicates
    "AppliedBy",
    "ConsolidationDecision",
    "ConsolidationStrategy",
    "DuplicateCandidate",
    "DuplicateMatch",
    "DuplicateRouting",
    "DuplicateScope",
    "EntityRef",
    "EntitySystem",
    "ReviewStatus",
    # Sync
    "OutcomeKind",
    "RecordFailure",
    "RecordOutcome",
    "SyncOperation",
    "SyncOperationStatus",
    "SyncOperationType",
    "SyncProgress",
    "SyncResult",
    "SyncStage",
    "SyncStatistics",
    "SyncStatus",
    "SyncTotals",
]
