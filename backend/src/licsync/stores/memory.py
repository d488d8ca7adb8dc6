"""In-memory store implementations.

Used by the test suite and for local runs without a database. Records are
copied on the way in and out so callers cannot mutate stored state.
"""

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
    SyncOperationStatus,
    utc_now,
)
from .base import (
    ConsolidationStore,
    DuplicateReviewStore,
    ExternalLicenseStore,
    InternalLicenseStore,
    Stores,
    SyncOperationStore,
)


class InMemoryExternalLicenseStore(ExternalLicenseStore):
    def __init__(self):
        self._records: dict[str, ExternalLicenseRecord] = {}
        self.upsert_calls = 0

    async def bulk_upsert(self, records: Iterable[ExternalLicenseRecord]) -> int:
        self.upsert_calls += 1
        written = 0
        for record in records:
            self._records[record.identity_key] = record
            written += 1
        return written

    async def find_by_app_id(self, app_id: str) -> ExternalLicenseRecord | None:
        return next((r for r in self._records.values() if r.app_id == app_id), None)

    async def find_by_email(self, email: str) -> list[ExternalLicenseRecord]:
        email = email.lower()
        return [r for r in self._records.values() if r.normalized_email == email]

    async def find_by_count_id(self, count_id: int) -> ExternalLicenseRecord | None:
        return next(
            (r for r in self._records.values() if r.count_id == count_id), None
        )

    async def list_all(self) -> list[ExternalLicenseRecord]:
        return list(self._records.values())

    async def count(self) -> int:
        return len(self._records)


class InMemoryInternalLicenseStore(InternalLicenseStore):
    def __init__(self, records: Iterable[InternalLicenseRecord] = ()):
        self._records: dict[UUID, InternalLicenseRecord] = {}
        for record in records:
            self._records[record.id] = record.model_copy(deep=True)
        # Counters let tests assert on write volume
        self.create_calls = 0
        self.update_calls = 0

    @property
    def write_count(self) -> int:
        return self.create_calls + self.update_calls

    def _first(self, predicate, include_consolidated: bool) -> InternalLicenseRecord | None:
        for record in self._records.values():
            if not include_consolidated and record.is_consolidated:
                continue
            if predicate(record):
                return record.model_copy(deep=True)
        return None

    async def find_by_id(self, license_id: UUID) -> InternalLicenseRecord | None:
        record = self._records.get(license_id)
        return record.model_copy(deep=True) if record else None

    async def find_by_key(self, key: str) -> InternalLicenseRecord | None:
        return self._first(lambda r: r.key == key, include_consolidated=True)

    async def find_by_external_app_id(
        self, app_id: str, include_consolidated: bool = False
    ) -> InternalLicenseRecord | None:
        return self._first(lambda r: r.external_app_id == app_id, include_consolidated)

    async def find_by_email(
        self, email: str, include_consolidated: bool = False
    ) -> InternalLicenseRecord | None:
        email = email.lower()

        def matches(record: InternalLicenseRecord) -> bool:
            return any(
                value and value.lower() == email
                for value in (record.external_email, record.email)
            )

        return self._first(matches, include_consolidated)

    async def find_by_external_count_id(
        self, count_id: int, include_consolidated: bool = False
    ) -> InternalLicenseRecord | None:
        return self._first(
            lambda r: r.external_count_id == count_id, include_consolidated
        )

    async def create(self, record: InternalLicenseRecord) -> InternalLicenseRecord:
        if any(r.key == record.key for r in self._records.values()):
            raise ValueError(f"Duplicate license key: {record.key}")
        self.create_calls += 1
        self._records[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def update(
        self,
        license_id: UUID,
        changes: dict[str, Any],
        updated_by: str | None = None,
    ) -> InternalLicenseRecord:
        record = self._records.get(license_id)
        if record is None:
            raise KeyError(f"License not found: {license_id}")
        self.update_calls += 1
        updated = record.model_copy(
            update={**changes, "updated_by": updated_by, "updated_at": utc_now()},
            deep=True,
        )
        self._records[license_id] = updated
        return updated.model_copy(deep=True)

    async def find_licenses(
        self, filter: LicenseFilter | None = None
    ) -> list[InternalLicenseRecord]:
        filter = filter or LicenseFilter()
        results = []
        for record in self._records.values():
            if not filter.include_consolidated and record.is_consolidated:
                continue
            if filter.status is not None and record.status != filter.status:
                continue
            if filter.linked is not None and record.is_linked != filter.linked:
                continue
            if (
                filter.external_sync_status is not None
                and record.external_sync_status != filter.external_sync_status
            ):
                continue
            if filter.dba_prefix and not (
                record.dba and record.dba.lower().startswith(filter.dba_prefix.lower())
            ):
                continue
            results.append(record.model_copy(deep=True))
            if filter.limit and len(results) >= filter.limit:
                break
        return results

    async def count(self) -> int:
        return len(self._records)


class InMemorySyncOperationStore(SyncOperationStore):
    def __init__(self):
        self._operations: dict[UUID, SyncOperation] = {}

    async def try_start(self, operation: SyncOperation) -> bool:
        if await self.find_running() is not None:
            return False
        self._operations[operation.id] = operation.model_copy(deep=True)
        return True

    async def save(self, operation: SyncOperation) -> None:
        self._operations[operation.id] = operation.model_copy(deep=True)

    async def get(self, operation_id: UUID) -> SyncOperation | None:
        operation = self._operations.get(operation_id)
        return operation.model_copy(deep=True) if operation else None

    async def find_running(self) -> SyncOperation | None:
        for operation in self._operations.values():
            if operation.status == SyncOperationStatus.RUNNING:
                return operation.model_copy(deep=True)
        return None

    async def list_recent(self, limit: int = 20) -> list[SyncOperation]:
        ordered = sorted(
            self._operations.values(), key=lambda op: op.started_at, reverse=True
        )
        return [op.model_copy(deep=True) for op in ordered[:limit]]

    async def fail_orphaned(self, error: str) -> int:
        count = 0
        for op_id, operation in list(self._operations.items()):
            if operation.status == SyncOperationStatus.RUNNING:
                self._operations[op_id] = operation.model_copy(
                    update={
                        "status": SyncOperationStatus.FAILED,
                        "ended_at": utc_now(),
                        "error": error,
                    }
                )
                count += 1
        return count


class InMemoryDuplicateReviewStore(DuplicateReviewStore):
    def __init__(self):
        self._candidates: dict[UUID, DuplicateCandidate] = {}

    async def add(self, candidate: DuplicateCandidate) -> None:
        self._candidates[candidate.id] = candidate.model_copy(deep=True)

    async def get(self, candidate_id: UUID) -> DuplicateCandidate | None:
        candidate = self._candidates.get(candidate_id)
        return candidate.model_copy(deep=True) if candidate else None

    async def save(self, candidate: DuplicateCandidate) -> None:
        self._candidates[candidate.id] = candidate.model_copy(deep=True)

    async def list_by_status(
        self, status: ReviewStatus | None = None, limit: int = 100
    ) -> list[DuplicateCandidate]:
        matching = [
            c for c in self._candidates.values()
            if status is None or c.review_status == status
        ]
        matching.sort(key=lambda c: c.created_at, reverse=True)
        return [c.model_copy(deep=True) for c in matching[:limit]]

    async def find_by_members(
        self, member_keys: frozenset[str]
    ) -> DuplicateCandidate | None:
        matching = [
            c for c in self._candidates.values() if c.member_keys == member_keys
        ]
        if not matching:
            return None
        return max(matching, key=lambda c: c.created_at).model_copy(deep=True)


class InMemoryConsolidationStore(ConsolidationStore):
    def __init__(self):
        self._decisions: list[ConsolidationDecision] = []

    async def record(self, decision: ConsolidationDecision) -> None:
        self._decisions.append(decision)

    async def list_recent(self, limit: int = 50) -> list[ConsolidationDecision]:
        return list(reversed(self._decisions))[:limit]


def create_memory_stores(
    internal_records: Iterable[InternalLicenseRecord] = (),
) -> Stores:
    """Build a fresh set of in-memory stores."""
    return Stores(
        external=InMemoryExternalLicenseStore(),
        internal=InMemoryInternalLicenseStore(internal_records),
        operations=InMemorySyncOperationStore(),
        reviews=InMemoryDuplicateReviewStore(),
        consolidations=InMemoryConsolidationStore(),
    )
