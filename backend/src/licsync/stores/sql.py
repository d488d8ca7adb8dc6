"""SQLAlchemy async store implementations.

Each operation runs in its own session; database failures surface as
``StorageError`` so the coordinator treats them as fatal.
"""

from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncGenerator, Iterable
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db import get_session_factory
from ..errors import StorageError
from ..models import (
    ConsolidationDecision,
    DuplicateCandidate,
    EntityRef,
    ExternalLicenseRecord,
    InternalLicenseRecord,
    LicenseFilter,
    RecordFailure,
    ReviewStatus,
    SyncOperation,
    SyncOperationStatus,
    SyncTotals,
    utc_now,
)
from .base import (
    ConsolidationStore,
    DuplicateReviewStore,
    ExternalLicenseStore,
    InternalLicenseStore,
    Stores,
    SyncOperationStore,
    member_key_string,
)
from .tables import (
    ConsolidationDecisionRow,
    DuplicateCandidateRow,
    ExternalLicenseRow,
    InternalLicenseRow,
    SyncOperationRow,
)


def _plain(data: dict[str, Any]) -> dict[str, Any]:
    """Replace enum members with their values for column assignment."""
    return {k: v.value if isinstance(v, Enum) else v for k, v in data.items()}


class _SqlStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or get_session_factory()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            await session.rollback()
            raise StorageError(f"Database error: {exc}") from exc
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# =========================
# External licenses
# =========================


def _external_from_row(row: ExternalLicenseRow) -> ExternalLicenseRecord:
    return ExternalLicenseRecord.model_validate(row.payload)


class SqlExternalLicenseStore(_SqlStore, ExternalLicenseStore):
    async def bulk_upsert(self, records: Iterable[ExternalLicenseRecord]) -> int:
        by_key = {record.identity_key: record for record in records}
        if not by_key:
            return 0

        now = utc_now()
        async with self._session() as session:
            result = await session.execute(
                select(ExternalLicenseRow).where(
                    ExternalLicenseRow.identity_key.in_(list(by_key))
                )
            )
            existing = {row.identity_key: row for row in result.scalars()}

            for key, record in by_key.items():
                payload = record.model_dump(mode="json")
                row = existing.get(key)
                if row is None:
                    session.add(
                        ExternalLicenseRow(
                            identity_key=key,
                            app_id=record.app_id,
                            count_id=record.count_id,
                            email=record.normalized_email,
                            payload=payload,
                            synced_at=now,
                        )
                    )
                else:
                    row.app_id = record.app_id
                    row.count_id = record.count_id
                    row.email = record.normalized_email
                    row.payload = payload
                    row.synced_at = now
        return len(by_key)

    async def find_by_app_id(self, app_id: str) -> ExternalLicenseRecord | None:
        async with self._session() as session:
            row = await session.scalar(
                select(ExternalLicenseRow).where(ExternalLicenseRow.app_id == app_id)
            )
            return _external_from_row(row) if row else None

    async def find_by_email(self, email: str) -> list[ExternalLicenseRecord]:
        async with self._session() as session:
            result = await session.scalars(
                select(ExternalLicenseRow).where(
                    ExternalLicenseRow.email == email.lower()
                )
            )
            return [_external_from_row(row) for row in result]

    async def find_by_count_id(self, count_id: int) -> ExternalLicenseRecord | None:
        async with self._session() as session:
            row = await session.scalar(
                select(ExternalLicenseRow).where(ExternalLicenseRow.count_id == count_id)
            )
            return _external_from_row(row) if row else None

    async def list_all(self) -> list[ExternalLicenseRecord]:
        async with self._session() as session:
            result = await session.scalars(
                select(ExternalLicenseRow).order_by(ExternalLicenseRow.id)
            )
            return [_external_from_row(row) for row in result]

    async def count(self) -> int:
        async with self._session() as session:
            return await session.scalar(
                select(func.count()).select_from(ExternalLicenseRow)
            )


# =========================
# Internal licenses
# =========================


def _internal_from_row(row: InternalLicenseRow) -> InternalLicenseRecord:
    return InternalLicenseRecord.model_validate(row, from_attributes=True)


class SqlInternalLicenseStore(_SqlStore, InternalLicenseStore):
    async def _first(self, *criteria, include_consolidated: bool) -> InternalLicenseRecord | None:
        query = select(InternalLicenseRow).where(*criteria)
        if not include_consolidated:
            query = query.where(InternalLicenseRow.consolidated_into_id.is_(None))
        query = query.order_by(InternalLicenseRow.created_at).limit(1)
        async with self._session() as session:
            row = await session.scalar(query)
            return _internal_from_row(row) if row else None

    async def find_by_id(self, license_id: UUID) -> InternalLicenseRecord | None:
        async with self._session() as session:
            row = await session.get(InternalLicenseRow, license_id)
            return _internal_from_row(row) if row else None

    async def find_by_key(self, key: str) -> InternalLicenseRecord | None:
        return await self._first(InternalLicenseRow.key == key, include_consolidated=True)

    async def find_by_external_app_id(
        self, app_id: str, include_consolidated: bool = False
    ) -> InternalLicenseRecord | None:
        return await self._first(
            InternalLicenseRow.external_app_id == app_id,
            include_consolidated=include_consolidated,
        )

    async def find_by_email(
        self, email: str, include_consolidated: bool = False
    ) -> InternalLicenseRecord | None:
        email = email.lower()
        return await self._first(
            or_(
                func.lower(InternalLicenseRow.external_email) == email,
                func.lower(InternalLicenseRow.email) == email,
            ),
            include_consolidated=include_consolidated,
        )

    async def find_by_external_count_id(
        self, count_id: int, include_consolidated: bool = False
    ) -> InternalLicenseRecord | None:
        return await self._first(
            InternalLicenseRow.external_count_id == count_id,
            include_consolidated=include_consolidated,
        )

    async def create(self, record: InternalLicenseRecord) -> InternalLicenseRecord:
        async with self._session() as session:
            session.add(InternalLicenseRow(**_plain(record.model_dump())))
        return record

    async def update(
        self,
        license_id: UUID,
        changes: dict[str, Any],
        updated_by: str | None = None,
    ) -> InternalLicenseRecord:
        async with self._session() as session:
            row = await session.get(InternalLicenseRow, license_id, with_for_update=True)
            if row is None:
                raise KeyError(f"License not found: {license_id}")
            for field, value in _plain(changes).items():
                setattr(row, field, value)
            row.updated_by = updated_by
            row.updated_at = utc_now()
            await session.flush()
            return _internal_from_row(row)

    async def find_licenses(
        self, filter: LicenseFilter | None = None
    ) -> list[InternalLicenseRecord]:
        filter = filter or LicenseFilter()
        query = select(InternalLicenseRow)

        if not filter.include_consolidated:
            query = query.where(InternalLicenseRow.consolidated_into_id.is_(None))
        if filter.status is not None:
            query = query.where(InternalLicenseRow.status == filter.status.value)
        if filter.linked is True:
            query = query.where(InternalLicenseRow.external_app_id.is_not(None))
        elif filter.linked is False:
            query = query.where(InternalLicenseRow.external_app_id.is_(None))
        if filter.external_sync_status is not None:
            query = query.where(
                InternalLicenseRow.external_sync_status
                == filter.external_sync_status.value
            )
        if filter.dba_prefix:
            query = query.where(
                func.lower(InternalLicenseRow.dba).startswith(filter.dba_prefix.lower())
            )

        query = query.order_by(InternalLicenseRow.created_at)
        if filter.limit:
            query = query.limit(filter.limit)

        async with self._session() as session:
            result = await session.scalars(query)
            return [_internal_from_row(row) for row in result]

    async def count(self) -> int:
        async with self._session() as session:
            return await session.scalar(
                select(func.count()).select_from(InternalLicenseRow)
            )


# =========================
# Sync operations
# =========================


def _operation_to_values(operation: SyncOperation) -> dict[str, Any]:
    return {
        "id": operation.id,
        "type": operation.type.value,
        "status": operation.status.value,
        "started_at": operation.started_at,
        "ended_at": operation.ended_at,
        "totals": operation.totals.model_dump(),
        "failures": [f.model_dump() for f in operation.failures],
        "error": operation.error,
        "dry_run": operation.dry_run,
    }


def _operation_from_row(row: SyncOperationRow) -> SyncOperation:
    return SyncOperation(
        id=row.id,
        type=row.type,
        status=row.status,
        started_at=row.started_at,
        ended_at=row.ended_at,
        totals=SyncTotals.model_validate(row.totals or {}),
        failures=[RecordFailure.model_validate(f) for f in row.failures or []],
        error=row.error,
        dry_run=row.dry_run,
    )


class SqlSyncOperationStore(_SqlStore, SyncOperationStore):
    async def try_start(self, operation: SyncOperation) -> bool:
        session = self._session_factory()
        try:
            session.add(SyncOperationRow(**_operation_to_values(operation)))
            await session.commit()
            return True
        except IntegrityError:
            # Partial unique index on running operations
            await session.rollback()
            return False
        except (SQLAlchemyError, OSError) as exc:
            await session.rollback()
            raise StorageError(f"Database error: {exc}") from exc
        finally:
            await session.close()

    async def save(self, operation: SyncOperation) -> None:
        async with self._session() as session:
            await session.merge(SyncOperationRow(**_operation_to_values(operation)))

    async def get(self, operation_id: UUID) -> SyncOperation | None:
        async with self._session() as session:
            row = await session.get(SyncOperationRow, operation_id)
            return _operation_from_row(row) if row else None

    async def find_running(self) -> SyncOperation | None:
        async with self._session() as session:
            row = await session.scalar(
                select(SyncOperationRow).where(
                    SyncOperationRow.status == SyncOperationStatus.RUNNING.value
                )
            )
            return _operation_from_row(row) if row else None

    async def list_recent(self, limit: int = 20) -> list[SyncOperation]:
        async with self._session() as session:
            result = await session.scalars(
                select(SyncOperationRow)
                .order_by(SyncOperationRow.started_at.desc())
                .limit(limit)
            )
            return [_operation_from_row(row) for row in result]

    async def fail_orphaned(self, error: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                update(SyncOperationRow)
                .where(SyncOperationRow.status == SyncOperationStatus.RUNNING.value)
                .values(
                    status=SyncOperationStatus.FAILED.value,
                    ended_at=utc_now(),
                    error=error,
                )
            )
            return result.rowcount or 0


# =========================
# Duplicate review queue
# =========================


def _candidate_to_values(candidate: DuplicateCandidate) -> dict[str, Any]:
    return {
        "id": candidate.id,
        "scope": candidate.scope.value,
        "members": [m.model_dump(mode="json") for m in candidate.members],
        "member_keys": member_key_string(candidate.member_keys),
        "confidence_score": candidate.confidence_score,
        "match_reasons": list(candidate.match_reasons),
        "routing": candidate.routing.value,
        "review_status": candidate.review_status.value,
        "reviewed_by": candidate.reviewed_by,
        "review_notes": candidate.review_notes,
        "operation_id": candidate.operation_id,
        "created_at": candidate.created_at,
        "reviewed_at": candidate.reviewed_at,
    }


def _candidate_from_row(row: DuplicateCandidateRow) -> DuplicateCandidate:
    return DuplicateCandidate(
        id=row.id,
        members=[EntityRef.model_validate(m) for m in row.members],
        scope=row.scope,
        confidence_score=row.confidence_score,
        match_reasons=row.match_reasons or [],
        routing=row.routing,
        review_status=row.review_status,
        reviewed_by=row.reviewed_by,
        review_notes=row.review_notes,
        operation_id=row.operation_id,
        created_at=row.created_at,
        reviewed_at=row.reviewed_at,
    )


class SqlDuplicateReviewStore(_SqlStore, DuplicateReviewStore):
    async def add(self, candidate: DuplicateCandidate) -> None:
        async with self._session() as session:
            session.add(DuplicateCandidateRow(**_candidate_to_values(candidate)))

    async def get(self, candidate_id: UUID) -> DuplicateCandidate | None:
        async with self._session() as session:
            row = await session.get(DuplicateCandidateRow, candidate_id)
            return _candidate_from_row(row) if row else None

    async def save(self, candidate: DuplicateCandidate) -> None:
        async with self._session() as session:
            await session.merge(DuplicateCandidateRow(**_candidate_to_values(candidate)))

    async def list_by_status(
        self, status: ReviewStatus | None = None, limit: int = 100
    ) -> list[DuplicateCandidate]:
        query = select(DuplicateCandidateRow)
        if status is not None:
            query = query.where(DuplicateCandidateRow.review_status == status.value)
        query = query.order_by(DuplicateCandidateRow.created_at.desc()).limit(limit)
        async with self._session() as session:
            result = await session.scalars(query)
            return [_candidate_from_row(row) for row in result]

    async def find_by_members(
        self, member_keys: frozenset[str]
    ) -> DuplicateCandidate | None:
        async with self._session() as session:
            row = await session.scalar(
                select(DuplicateCandidateRow)
                .where(DuplicateCandidateRow.member_keys == member_key_string(member_keys))
                .order_by(DuplicateCandidateRow.created_at.desc())
                .limit(1)
            )
            return _candidate_from_row(row) if row else None


# =========================
# Consolidation audit log
# =========================


class SqlConsolidationStore(_SqlStore, ConsolidationStore):
    async def record(self, decision: ConsolidationDecision) -> None:
        async with self._session() as session:
            session.add(
                ConsolidationDecisionRow(
                    id=decision.id,
                    master_ref=decision.master_ref.model_dump(mode="json"),
                    duplicate_refs=[
                        ref.model_dump(mode="json") for ref in decision.duplicate_refs
                    ],
                    strategy=decision.strategy.value,
                    applied_by=decision.applied_by.value,
                    actor=decision.actor,
                    candidate_id=decision.candidate_id,
                    notes=decision.notes,
                    timestamp=decision.timestamp,
                )
            )

    async def list_recent(self, limit: int = 50) -> list[ConsolidationDecision]:
        async with self._session() as session:
            result = await session.scalars(
                select(ConsolidationDecisionRow)
                .order_by(ConsolidationDecisionRow.timestamp.desc())
                .limit(limit)
            )
            return [
                ConsolidationDecision(
                    id=row.id,
                    master_ref=EntityRef.model_validate(row.master_ref),
                    duplicate_refs=[
                        EntityRef.model_validate(ref) for ref in row.duplicate_refs
                    ],
                    strategy=row.strategy,
                    applied_by=row.applied_by,
                    actor=row.actor,
                    candidate_id=row.candidate_id,
                    notes=row.notes,
                    timestamp=row.timestamp,
                )
                for row in result
            ]


def create_sql_stores(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> Stores:
    """Build the SQLAlchemy-backed store set."""
    factory = session_factory or get_session_factory()
    return Stores(
        external=SqlExternalLicenseStore(factory),
        internal=SqlInternalLicenseStore(factory),
        operations=SqlSyncOperationStore(factory),
        reviews=SqlDuplicateReviewStore(factory),
        consolidations=SqlConsolidationStore(factory),
    )
