"""Duplicate license check, consolidation and review endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Query
from pydantic import Field

from ..models import (
    AppliedBy,
    ConsolidationDecision,
    ConsolidationStrategy,
    DuplicateCandidate,
    ReviewStatus,
)
from . import BadRequestError, CamelModel, NotFoundError
from .dependencies import Coordinator

router = APIRouter(prefix="/licenses/duplicates")


# =========================
# Request / Response Models
# =========================


class DuplicateMatchResponse(CamelModel):
    license_id: UUID
    key: str
    dba: str | None = None
    email: str | None = None
    confidence_score: float
    match_reasons: list[str]


class DuplicateCheckResponse(CamelModel):
    potential_duplicates: list[DuplicateMatchResponse]
    total: int
    threshold: float


class ConsolidateRequest(CamelModel):
    """Body of a manual consolidation."""

    master_license_id: UUID
    duplicate_license_ids: list[UUID] = Field(..., min_length=1)
    consolidation_strategy: ConsolidationStrategy = ConsolidationStrategy.KEEP_MASTER
    notes: str | None = Field(default=None, max_length=2000)
    actor: str = "api"


class EntityRefResponse(CamelModel):
    system: str
    identifier: str
    label: str | None = None


class ConsolidationResponse(CamelModel):
    id: UUID
    master: EntityRefResponse
    duplicates: list[EntityRefResponse]
    strategy: str
    applied_by: str
    actor: str | None = None
    notes: str | None = None
    timestamp: datetime

    @classmethod
    def from_decision(cls, decision: ConsolidationDecision) -> "ConsolidationResponse":
        return cls(
            id=decision.id,
            master=EntityRefResponse(**decision.master_ref.model_dump(mode="json")),
            duplicates=[
                EntityRefResponse(**ref.model_dump(mode="json"))
                for ref in decision.duplicate_refs
            ],
            strategy=decision.strategy.value,
            applied_by=decision.applied_by.value,
            actor=decision.actor,
            notes=decision.notes,
            timestamp=decision.timestamp,
        )


class ReviewCandidateResponse(CamelModel):
    id: UUID
    scope: str
    members: list[EntityRefResponse]
    confidence_score: float
    match_reasons: list[str]
    review_status: str
    reviewed_by: str | None = None
    review_notes: str | None = None
    created_at: datetime
    reviewed_at: datetime | None = None

    @classmethod
    def from_candidate(cls, candidate: DuplicateCandidate) -> "ReviewCandidateResponse":
        return cls(
            id=candidate.id,
            scope=candidate.scope.value,
            members=[EntityRefResponse(**m.model_dump(mode="json")) for m in candidate.members],
            confidence_score=candidate.confidence_score,
            match_reasons=candidate.match_reasons,
            review_status=candidate.review_status.value,
            reviewed_by=candidate.reviewed_by,
            review_notes=candidate.review_notes,
            created_at=candidate.created_at,
            reviewed_at=candidate.reviewed_at,
        )


class ReviewListResponse(CamelModel):
    results: list[ReviewCandidateResponse]
    total: int
    limit: int


class ReviewActionRequest(CamelModel):
    reviewer: str = Field(default="api", min_length=1)
    notes: str | None = Field(default=None, max_length=2000)


# =========================
# Check
# =========================


@router.get("/check", response_model=DuplicateCheckResponse)
async def check_duplicates(
    coordinator: Coordinator,
    dba: str | None = Query(None, max_length=255),
    email: str | None = Query(None, max_length=255),
    zip_code: str | None = Query(None, alias="zip", max_length=20),
    phone: str | None = Query(None, max_length=40),
    threshold: float | None = Query(None, ge=0, le=100),
    limit: int = Query(20, ge=1, le=100),
) -> DuplicateCheckResponse:
    """Rank internal licenses that look like the given business."""
    if not dba and not email:
        raise BadRequestError("Provide at least one of dba or email")

    matches = await coordinator.check_duplicates(
        dba=dba,
        email=email,
        zip_code=zip_code,
        phone=phone,
        threshold=threshold,
        limit=limit,
    )
    return DuplicateCheckResponse(
        potential_duplicates=[DuplicateMatchResponse(**m.model_dump()) for m in matches],
        total=len(matches),
        threshold=coordinator.detector.review_threshold if threshold is None else threshold,
    )


# =========================
# Consolidate
# =========================


@router.post("/consolidate", response_model=ConsolidationResponse)
async def consolidate_duplicates(
    request: ConsolidateRequest,
    coordinator: Coordinator,
) -> ConsolidationResponse:
    """Fold duplicate licenses into a master license."""
    decision = await coordinator.consolidator.consolidate(
        request.master_license_id,
        request.duplicate_license_ids,
        strategy=request.consolidation_strategy,
        applied_by=AppliedBy.USER,
        actor=request.actor,
        notes=request.notes,
    )
    return ConsolidationResponse.from_decision(decision)


# =========================
# Review Queue
# =========================


@router.get("/review", response_model=ReviewListResponse)
async def list_review_candidates(
    coordinator: Coordinator,
    status: str = Query("pending", pattern="^(pending|approved|rejected|all)$"),
    limit: int = Query(50, ge=1, le=200),
) -> ReviewListResponse:
    """List duplicate candidates awaiting (or past) manual review."""
    status_filter = None if status == "all" else ReviewStatus(status)
    candidates = await coordinator.review_queue.list(status_filter, limit)
    return ReviewListResponse(
        results=[ReviewCandidateResponse.from_candidate(c) for c in candidates],
        total=len(candidates),
        limit=limit,
    )


@router.post("/review/{candidate_id}/approve", response_model=ConsolidationResponse)
async def approve_candidate(
    candidate_id: UUID,
    coordinator: Coordinator,
    request: ReviewActionRequest | None = None,
) -> ConsolidationResponse:
    """Approve a candidate and apply its consolidation."""
    request = request or ReviewActionRequest()
    if await coordinator.review_queue.store.get(candidate_id) is None:
        raise NotFoundError("Review item", candidate_id)

    decision = await coordinator.review_queue.approve(
        candidate_id, reviewer=request.reviewer, notes=request.notes
    )
    return ConsolidationResponse.from_decision(decision)


@router.post("/review/{candidate_id}/reject", response_model=ReviewCandidateResponse)
async def reject_candidate(
    candidate_id: UUID,
    coordinator: Coordinator,
    request: ReviewActionRequest | None = None,
) -> ReviewCandidateResponse:
    """Reject a candidate; its members are not proposed together again."""
    request = request or ReviewActionRequest()
    if await coordinator.review_queue.store.get(candidate_id) is None:
        raise NotFoundError("Review item", candidate_id)

    rejected = await coordinator.review_queue.reject(
        candidate_id, reviewer=request.reviewer, notes=request.notes
    )
    return ReviewCandidateResponse.from_candidate(rejected)
