"""Reconciliation engine: matching, merging, duplicates and sync runs."""

from .batch import BatchProcessor, BatchReport, partition, plan_concurrency
from .consolidation import Consolidator
from .coordinator import (
    SyncCoordinator,
    SyncOptions,
    close_coordinator,
    collapse_identities,
    get_coordinator,
    set_coordinator,
)
from .duplicates import (
    DetectionReport,
    DuplicateDetector,
    DuplicateScorer,
    IdentityIndex,
    ScoringWeights,
    Signals,
)
from .matcher import IdentityMatch, LicenseMatcher, MatchCriterion
from .merge import (
    build_external_payload,
    build_new_license,
    compute_linkage,
    compute_update,
    fill_missing_fields,
    generate_license_key,
)
from .monitor import SyncMonitor
from .review import ReviewQueue

__all__ = [
    # Matching
    "IdentityMatch",
    "LicenseMatcher",
    "MatchCriterion",
    # Merging
    "build_external_payload",
    "build_new_license",
    "compute_linkage",
    "compute_update",
    "fill_missing_fields",
    "generate_license_key",
    # Duplicates
    "Consolidator",
    "DetectionReport",
    "DuplicateDetector",
    "DuplicateScorer",
    "IdentityIndex",
    "ReviewQueue",
    "ScoringWeights",
    "Signals",
    # Runs
    "BatchProcessor",
    "BatchReport",
    "SyncCoordinator",
    "SyncMonitor",
    "SyncOptions",
    "close_coordinator",
    "collapse_identities",
    "get_coordinator",
    "partition",
    "plan_concurrency",
    "set_coordinator",
]
