"""Manual review queue for duplicate candidates.

Candidates scored between the review and auto thresholds are never applied
automatically. They wait here until a reviewer approves (the consolidation
is applied) or rejects them (the member set is remembered and not queued
again).
"""

from uuid import UUID

from ..errors import ConsolidationError
from ..logging import get_context_logger
from ..models import (
    AppliedBy,
    ConsolidationDecision,
    DuplicateCandidate,
    DuplicateRouting,
    ReviewStatus,
    utc_now,
)
from ..stores import DuplicateReviewStore
from .consolidation import Consolidator

logger = get_context_logger(__name__)


class ReviewQueue:
    """Queue for reviewing duplicate candidates.

    Manages the lifecycle of a candidate:
    - Enqueue medium-confidence candidates found during sync
    - List pending candidates for review
    - Approve (apply consolidation) or reject
    """

    def __init__(self, store: DuplicateReviewStore, consolidator: Consolidator):
        self.store = store
        self.consolidator = consolidator

    async def enqueue(
        self, candidate: DuplicateCandidate, operation_id: UUID | None = None
    ) -> bool:
        """Queue a candidate unless its member set was already seen.

        Returns:
            True if a new review item was created
        """
        existing = await self.store.find_by_members(candidate.member_keys)
        if existing is not None:
            return False

        queued = candidate.model_copy(
            update={
                "routing": DuplicateRouting.MANUAL_REVIEW,
                "review_status": ReviewStatus.PENDING,
                "operation_id": operation_id,
            }
        )
        await self.store.add(queued)
        logger.info(
            f"Queued duplicate candidate {queued.id} for review "
            f"(score: {queued.confidence_score:.0f})",
            extra={
                "candidate_id": str(queued.id),
                "scope": queued.scope.value,
                "confidence_score": queued.confidence_score,
            },
        )
        return True

    async def status_of(self, candidate: DuplicateCandidate) -> ReviewStatus | None:
        """Review status of an earlier candidate over the same members."""
        existing = await self.store.find_by_members(candidate.member_keys)
        return existing.review_status if existing else None

    async def list(
        self, status: ReviewStatus | None = ReviewStatus.PENDING, limit: int = 100
    ) -> list[DuplicateCandidate]:
        return await self.store.list_by_status(status, limit)

    async def _load_pending(self, candidate_id: UUID) -> DuplicateCandidate:
        candidate = await self.store.get(candidate_id)
        if candidate is None:
            raise ConsolidationError(f"Review item not found: {candidate_id}")
        if candidate.review_status != ReviewStatus.PENDING:
            raise ConsolidationError(
                f"Review item {candidate_id} is already {candidate.review_status.value}"
            )
        return candidate

    async def approve(
        self,
        candidate_id: UUID,
        reviewer: str,
        notes: str | None = None,
    ) -> ConsolidationDecision:
        """Approve a candidate and apply its consolidation.

        Raises:
            ConsolidationError: If the item is unknown, not pending, or the
                consolidation cannot be applied
        """
        candidate = await self._load_pending(candidate_id)
        decision = await self.consolidator.apply_candidate(
            candidate, applied_by=AppliedBy.USER, actor=reviewer, notes=notes
        )
        await self.store.save(
            candidate.model_copy(
                update={
                    "review_status": ReviewStatus.APPROVED,
                    "reviewed_by": reviewer,
                    "review_notes": notes,
                    "reviewed_at": utc_now(),
                }
            )
        )
        logger.info(
            f"Approved duplicate candidate {candidate_id}",
            extra={"candidate_id": str(candidate_id), "reviewer": reviewer},
        )
        return decision

    async def reject(
        self,
        candidate_id: UUID,
        reviewer: str,
        notes: str | None = None,
    ) -> DuplicateCandidate:
        """Reject a candidate; its members are not queued together again."""
        candidate = await self._load_pending(candidate_id)
        rejected = candidate.model_copy(
            update={
                "review_status": ReviewStatus.REJECTED,
                "reviewed_by": reviewer,
                "review_notes": notes,
                "reviewed_at": utc_now(),
            }
        )
        await self.store.save(rejected)
        logger.info(
            f"Rejected duplicate candidate {candidate_id}",
            extra={"candidate_id": str(candidate_id), "reviewer": reviewer},
        )
        return rejected
