"""Applying consolidation decisions.

Consolidating never deletes: duplicates get ``consolidated_into_id`` set to
the master and keep their status, so the history stays auditable and the
matcher simply stops seeing them. Every applied consolidation is written
to the consolidation store as an immutable decision.
"""

from uuid import UUID

from ..errors import ConsolidationError
from ..logging import get_context_logger
from ..models import (
    AppliedBy,
    ConsolidationDecision,
    ConsolidationStrategy,
    DuplicateCandidate,
    DuplicateScope,
    EntityRef,
    EntitySystem,
    ExternalLicenseRecord,
    InternalLicenseRecord,
)
from ..stores import Stores
from .merge import SYNC_ACTOR, compute_linkage, fill_missing_fields

logger = get_context_logger(__name__)


def _internal_ref(record: InternalLicenseRecord) -> EntityRef:
    return EntityRef(
        system=EntitySystem.INTERNAL, identifier=str(record.id), label=record.dba
    )


def _external_ref(record: ExternalLicenseRecord) -> EntityRef:
    return EntityRef(
        system=EntitySystem.EXTERNAL, identifier=record.identity_key, label=record.dba
    )


class Consolidator:
    """Folds duplicate licenses into a master license."""

    def __init__(self, stores: Stores):
        self.stores = stores

    async def _load_internal(self, license_id: UUID) -> InternalLicenseRecord:
        record = await self.stores.internal.find_by_id(license_id)
        if record is None:
            raise ConsolidationError(f"License not found: {license_id}")
        if record.is_consolidated:
            raise ConsolidationError(
                f"License {license_id} is already consolidated into "
                f"{record.consolidated_into_id}"
            )
        return record

    async def resolve_external(self, ref: EntityRef) -> ExternalLicenseRecord:
        """Look up a snapshot record from its identity key."""
        kind, _, value = ref.identifier.partition(":")
        store = self.stores.external
        record: ExternalLicenseRecord | None = None
        if kind == "app_id":
            record = await store.find_by_app_id(value)
        elif kind == "count_id" and value.isdigit():
            record = await store.find_by_count_id(int(value))
        elif kind == "email":
            found = await store.find_by_email(value)
            record = found[0] if found else None
        if record is None:
            raise ConsolidationError(f"External license not found: {ref.identifier}")
        return record

    async def consolidate(
        self,
        master_id: UUID,
        duplicate_ids: list[UUID],
        strategy: ConsolidationStrategy = ConsolidationStrategy.KEEP_MASTER,
        applied_by: AppliedBy = AppliedBy.USER,
        actor: str | None = None,
        notes: str | None = None,
        candidate_id: UUID | None = None,
    ) -> ConsolidationDecision:
        """Consolidate internal duplicates into a master license.

        Args:
            master_id: License that survives
            duplicate_ids: Licenses folded into the master
            strategy: keep_master, merge_missing_fields or link_external
            applied_by: system (auto) or user (manual)
            actor: Who applied it
            notes: Free-text justification
            candidate_id: Review candidate this decision resolves

        Returns:
            The recorded decision

        Raises:
            ConsolidationError: On unknown, repeated or already consolidated ids
        """
        if not duplicate_ids:
            raise ConsolidationError("At least one duplicate license is required")
        if master_id in duplicate_ids:
            raise ConsolidationError("Master license cannot be its own duplicate")
        if len(set(duplicate_ids)) != len(duplicate_ids):
            raise ConsolidationError("Duplicate license ids must be unique")

        master = await self._load_internal(master_id)
        duplicates = [await self._load_internal(d) for d in duplicate_ids]
        actor = actor or SYNC_ACTOR

        master_changes = {}
        if strategy == ConsolidationStrategy.MERGE_MISSING_FIELDS:
            master_changes = fill_missing_fields(master, duplicates)
        elif strategy == ConsolidationStrategy.LINK_EXTERNAL:
            if master.is_linked:
                raise ConsolidationError(
                    f"Master license {master_id} is already linked to "
                    f"external license {master.external_app_id}"
                )
            source = next((d for d in duplicates if d.is_linked), None)
            if source is None:
                raise ConsolidationError("No duplicate is linked to an external license")
            master_changes = {
                "external_app_id": source.external_app_id,
                "external_email": source.external_email,
                "external_count_id": source.external_count_id,
                "external_sync_status": source.external_sync_status,
                "last_external_sync_at": source.last_external_sync_at,
            }

        if master_changes:
            master = await self.stores.internal.update(master.id, master_changes, actor)

        for duplicate in duplicates:
            await self.stores.internal.update(
                duplicate.id, {"consolidated_into_id": master.id}, actor
            )

        decision = ConsolidationDecision(
            master_ref=_internal_ref(master),
            duplicate_refs=[_internal_ref(d) for d in duplicates],
            strategy=strategy,
            applied_by=applied_by,
            actor=actor,
            candidate_id=candidate_id,
            notes=notes,
        )
        await self.stores.consolidations.record(decision)

        logger.info(
            f"Consolidated {len(duplicates)} license(s) into {master.id} ({strategy.value})",
            extra={
                "master_id": str(master.id),
                "duplicate_ids": [str(d) for d in duplicate_ids],
                "strategy": strategy.value,
                "applied_by": applied_by.value,
            },
        )
        return decision

    async def link_external(
        self,
        internal_id: UUID,
        external: ExternalLicenseRecord,
        applied_by: AppliedBy = AppliedBy.SYSTEM,
        actor: str | None = None,
        notes: str | None = None,
        candidate_id: UUID | None = None,
    ) -> ConsolidationDecision:
        """Link an unlinked internal license to an external record.

        The next reconciliation then matches the pair by appId.
        """
        internal = await self._load_internal(internal_id)
        if internal.is_linked and internal.external_app_id != external.app_id:
            raise ConsolidationError(
                f"License {internal_id} is already linked to "
                f"external license {internal.external_app_id}"
            )

        actor = actor or SYNC_ACTOR
        changes = compute_linkage(external, internal)
        if changes:
            await self.stores.internal.update(internal.id, changes, actor)

        decision = ConsolidationDecision(
            master_ref=_internal_ref(internal),
            duplicate_refs=[_external_ref(external)],
            strategy=ConsolidationStrategy.LINK_EXTERNAL,
            applied_by=applied_by,
            actor=actor,
            candidate_id=candidate_id,
            notes=notes,
        )
        await self.stores.consolidations.record(decision)

        logger.info(
            f"Linked license {internal.id} to external {external.identifier}",
            extra={"internal_id": str(internal.id), "external": external.identity_key},
        )
        return decision

    async def apply_candidate(
        self,
        candidate: DuplicateCandidate,
        applied_by: AppliedBy = AppliedBy.SYSTEM,
        actor: str | None = None,
        notes: str | None = None,
    ) -> ConsolidationDecision:
        """Apply the consolidation a duplicate candidate proposes."""
        if candidate.scope == DuplicateScope.INTERNAL:
            return await self.consolidate(
                UUID(candidate.master.identifier),
                [UUID(ref.identifier) for ref in candidate.duplicates],
                strategy=ConsolidationStrategy.MERGE_MISSING_FIELDS,
                applied_by=applied_by,
                actor=actor,
                notes=notes,
                candidate_id=candidate.id,
            )

        if candidate.scope == DuplicateScope.CROSS_SYSTEM:
            internal_ref = next(
                m for m in candidate.members if m.system == EntitySystem.INTERNAL
            )
            external_ref = next(
                m for m in candidate.members if m.system == EntitySystem.EXTERNAL
            )
            external = await self.resolve_external(external_ref)
            return await self.link_external(
                UUID(internal_ref.identifier),
                external,
                applied_by=applied_by,
                actor=actor,
                notes=notes,
                candidate_id=candidate.id,
            )

        # External duplicates: the snapshot is read-only; reconciliation
        # drops the non-master members, the decision is the audit trail
        decision = ConsolidationDecision(
            master_ref=candidate.master,
            duplicate_refs=candidate.duplicates,
            strategy=ConsolidationStrategy.KEEP_MASTER,
            applied_by=applied_by,
            actor=actor or SYNC_ACTOR,
            candidate_id=candidate.id,
            notes=notes,
        )
        await self.stores.consolidations.record(decision)
        return decision
