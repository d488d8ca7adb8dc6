"""License, sync-history and review stores."""

from .base import (
    ConsolidationStore,
    DuplicateReviewStore,
    ExternalLicenseStore,
    InternalLicenseStore,
    Stores,
    SyncOperationStore,
)
from .memory import (
    InMemoryConsolidationStore,
    InMemoryDuplicateReviewStore,
    InMemoryExternalLicenseStore,
    InMemoryInternalLicenseStore,
    InMemorySyncOperationStore,
    create_memory_stores,
)

__all__ = [
    "ConsolidationStore",
    "DuplicateReviewStore",
    "ExternalLicenseStore",
    "InternalLicenseStore",
    "Stores",
    "SyncOperationStore",
    "InMemoryConsolidationStore",
    "InMemoryDuplicateReviewStore",
    "InMemoryExternalLicenseStore",
    "InMemoryInternalLicenseStore",
    "InMemorySyncOperationStore",
    "create_memory_stores",
]
