"""Store interfaces consumed by the reconciliation engine.

Two implementations are provided: ``memory`` (tests, dry runs, local
experiments) and ``sql`` (SQLAlchemy async, production).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable
from uuid import UUID

from ..models import (
    ConsolidationDecision,
    DuplicateCandidate,
    ExternalLicenseRecord,
    InternalLicenseRecord,
    LicenseFilter,
    ReviewStatus,
    SyncOperation,
)


class ExternalLicenseStore(ABC):
    """Snapshot of the external system's licenses."""

    @abstractmethod
    async def bulk_upsert(self, records: Iterable[ExternalLicenseRecord]) -> int:
        """Insert or replace records by identity. Returns rows written."""

    @abstractmethod
    async def find_by_app_id(self, app_id: str) -> ExternalLicenseRecord | None:
        ...

    @abstractmethod
    async def find_by_email(self, email: str) -> list[ExternalLicenseRecord]:
        ...

    @abstractmethod
    async def find_by_count_id(self, count_id: int) -> ExternalLicenseRecord | None:
        ...

    @abstractmethod
    async def list_all(self) -> list[ExternalLicenseRecord]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...


class InternalLicenseStore(ABC):
    """The internal license ledger.

    Finders skip consolidated records unless ``include_consolidated`` is set.
    Records are never deleted through this interface.
    """

    @abstractmethod
    async def find_by_id(self, license_id: UUID) -> InternalLicenseRecord | None:
        ...

    @abstractmethod
    async def find_by_key(self, key: str) -> InternalLicenseRecord | None:
        ...

    @abstractmethod
    async def find_by_external_app_id(
        self, app_id: str, include_consolidated: bool = False
    ) -> InternalLicenseRecord | None:
        ...

    @abstractmethod
    async def find_by_email(
        self, email: str, include_consolidated: bool = False
    ) -> InternalLicenseRecord | None:
        """Case-insensitive match on ``external_email`` or contact ``email``."""

    @abstractmethod
    async def find_by_external_count_id(
        self, count_id: int, include_consolidated: bool = False
    ) -> InternalLicenseRecord | None:
        ...

    @abstractmethod
    async def create(self, record: InternalLicenseRecord) -> InternalLicenseRecord:
        ...

    @abstractmethod
    async def update(
        self,
        license_id: UUID,
        changes: dict[str, Any],
        updated_by: str | None = None,
    ) -> InternalLicenseRecord:
        """Apply ``changes`` and bump ``updated_at``.

        Raises:
            KeyError: If the license does not exist
        """

    @abstractmethod
    async def find_licenses(
        self, filter: LicenseFilter | None = None
    ) -> list[InternalLicenseRecord]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...


class SyncOperationStore(ABC):
    """History of sync runs."""

    @abstractmethod
    async def try_start(self, operation: SyncOperation) -> bool:
        """Persist ``operation`` as running unless another run is in flight.

        Returns:
            False if a running operation already exists
        """

    @abstractmethod
    async def save(self, operation: SyncOperation) -> None:
        ...

    @abstractmethod
    async def get(self, operation_id: UUID) -> SyncOperation | None:
        ...

    @abstractmethod
    async def find_running(self) -> SyncOperation | None:
        ...

    @abstractmethod
    async def list_recent(self, limit: int = 20) -> list[SyncOperation]:
        ...

    @abstractmethod
    async def fail_orphaned(self, error: str) -> int:
        """Mark every running operation as failed. Returns how many."""


class DuplicateReviewStore(ABC):
    """Manual-review queue for medium-confidence duplicate candidates."""

    @abstractmethod
    async def add(self, candidate: DuplicateCandidate) -> None:
        ...

    @abstractmethod
    async def get(self, candidate_id: UUID) -> DuplicateCandidate | None:
        ...

    @abstractmethod
    async def save(self, candidate: DuplicateCandidate) -> None:
        ...

    @abstractmethod
    async def list_by_status(
        self, status: ReviewStatus | None = None, limit: int = 100
    ) -> list[DuplicateCandidate]:
        ...

    @abstractmethod
    async def find_by_members(
        self, member_keys: frozenset[str]
    ) -> DuplicateCandidate | None:
        """Latest candidate over exactly this member set, in any status."""


class ConsolidationStore(ABC):
    """Append-only audit log of consolidation decisions."""

    @abstractmethod
    async def record(self, decision: ConsolidationDecision) -> None:
        ...

    @abstractmethod
    async def list_recent(self, limit: int = 50) -> list[ConsolidationDecision]:
        ...


@dataclass
class Stores:
    """Bundle of store instances handed to the coordinator."""

    external: ExternalLicenseStore
    internal: InternalLicenseStore
    operations: SyncOperationStore
    reviews: DuplicateReviewStore
    consolidations: ConsolidationStore


def member_key_string(member_keys: frozenset[str]) -> str:
    """Canonical string for a member set, order independent."""
    return "|".join(sorted(member_keys))
