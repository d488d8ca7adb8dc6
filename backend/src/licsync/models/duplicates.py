"""Duplicate detection and consolidation models."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import ensure_utc, utc_now


class EntitySystem(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"


class EntityRef(BaseModel):
    """Reference to a license on either side of the reconciliation."""

    system: EntitySystem
    identifier: str = Field(
        ..., description="Identity key for external (app_id:A1), UUID for internal"
    )
    label: str | None = Field(default=None, description="DBA shown to reviewers")

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> str:
        return f"{self.system.value}:{self.identifier}"


class DuplicateScope(str, Enum):
    """Which detection pass produced a candidate."""

    EXTERNAL = "external"
    INTERNAL = "internal"
    CROSS_SYSTEM = "cross_system"


class DuplicateRouting(str, Enum):
    """Where a candidate goes based on its confidence score."""

    AUTO_CONSOLIDATE = "auto_consolidate"
    MANUAL_REVIEW = "manual_review"
    DISCARD = "discard"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DuplicateCandidate(BaseModel):
    """A proposed grouping of records believed to be the same business.

    The first member is the master: the record the others would be folded
    into.
    """

    id: UUID = Field(default_factory=uuid4)
    members: list[EntityRef] = Field(..., min_length=2)
    scope: DuplicateScope
    confidence_score: float = Field(..., ge=0, le=100)
    match_reasons: list[str] = Field(default_factory=list)
    routing: DuplicateRouting = DuplicateRouting.DISCARD
    review_status: ReviewStatus = ReviewStatus.PENDING
    reviewed_by: str | None = None
    review_notes: str | None = None
    operation_id: UUID | None = None
    created_at: datetime = Field(default_factory=utc_now)
    reviewed_at: datetime | None = None

    @field_validator("created_at", "reviewed_at")
    @classmethod
    def _utc_dates(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def master(self) -> EntityRef:
        return self.members[0]

    @property
    def duplicates(self) -> list[EntityRef]:
        return self.members[1:]

    @property
    def member_keys(self) -> frozenset[str]:
        return frozenset(m.key for m in self.members)


class ConsolidationStrategy(str, Enum):
    """How duplicates are folded into the master.

    - keep_master: mark duplicates consolidated, master untouched
    - merge_missing_fields: also copy fields the master lacks from duplicates
    - link_external: link the master to an external record's identifiers
    """

    KEEP_MASTER = "keep_master"
    MERGE_MISSING_FIELDS = "merge_missing_fields"
    LINK_EXTERNAL = "link_external"


class AppliedBy(str, Enum):
    SYSTEM = "system"
    USER = "user"


class ConsolidationDecision(BaseModel):
    """Immutable audit record of an applied consolidation."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    master_ref: EntityRef
    duplicate_refs: list[EntityRef]
    strategy: ConsolidationStrategy
    applied_by: AppliedBy
    actor: str | None = None
    candidate_id: UUID | None = None
    notes: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("timestamp")
    @classmethod
    def _utc_dates(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class DuplicateMatch(BaseModel):
    """One ranked hit of an ad-hoc duplicate check."""

    license_id: UUID
    key: str
    dba: str | None = None
    email: str | None = None
    confidence_score: float
    match_reasons: list[str] = Field(default_factory=list)
