"""SQLAlchemy table mappings for license-sync."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


class InternalLicenseRow(Base):
    __tablename__ = "internal_licenses"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    key: Mapped[str] = mapped_column(String(100), unique=True)
    product: Mapped[str | None] = mapped_column(String(255))
    plan: Mapped[str | None] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20), index=True)
    term: Mapped[str | None] = mapped_column(String(20))
    seats_total: Mapped[int] = mapped_column(Integer, default=1)
    seats_used: Mapped[int] = mapped_column(Integer, default=0)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_payment: Mapped[float | None] = mapped_column(Float)
    sms_purchased: Mapped[int] = mapped_column(Integer, default=0)
    sms_sent: Mapped[int] = mapped_column(Integer, default=0)
    sms_balance: Mapped[int | None] = mapped_column(Integer)
    agents: Mapped[int] = mapped_column(Integer, default=0)
    dba: Mapped[str | None] = mapped_column(String(255), index=True)
    zip: Mapped[str | None] = mapped_column(String(10))
    notes: Mapped[str | None] = mapped_column(Text)
    package_data: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    workspace: Mapped[str | None] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    phone: Mapped[str | None] = mapped_column(String(50))
    consolidated_into_id: Mapped[UUID | None] = mapped_column(Uuid)
    external_app_id: Mapped[str | None] = mapped_column(String(255), index=True)
    external_email: Mapped[str | None] = mapped_column(String(255), index=True)
    external_count_id: Mapped[int | None] = mapped_column(Integer, index=True)
    external_sync_status: Mapped[str | None] = mapped_column(String(20))
    last_external_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str | None] = mapped_column(String(100))
    updated_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ExternalLicenseRow(Base):
    __tablename__ = "external_licenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_key: Mapped[str] = mapped_column(String(300), unique=True)
    app_id: Mapped[str | None] = mapped_column(String(255), index=True)
    count_id: Mapped[int | None] = mapped_column(Integer, index=True)
    email: Mapped[str | None] = mapped_column(String(255), index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SyncOperationRow(Base):
    __tablename__ = "sync_operations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    type: Mapped[str] = mapped_column(String(30))
    status: Mapped[str] = mapped_column(String(20))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    totals: Mapped[dict[str, Any]] = mapped_column(JSON)
    failures: Mapped[list[dict[str, Any]]] = mapped_column(JSON)
    error: Mapped[str | None] = mapped_column(Text)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False)

    # At most one running operation, enforced by the database
    __table_args__ = (
        Index(
            "uq_sync_operations_running",
            "status",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
    )


class DuplicateCandidateRow(Base):
    __tablename__ = "duplicate_candidates"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    scope: Mapped[str] = mapped_column(String(20))
    members: Mapped[list[dict[str, Any]]] = mapped_column(JSON)
    member_keys: Mapped[str] = mapped_column(Text, index=True)
    confidence_score: Mapped[float] = mapped_column(Float)
    match_reasons: Mapped[list[str]] = mapped_column(JSON)
    routing: Mapped[str] = mapped_column(String(20))
    review_status: Mapped[str] = mapped_column(String(20), index=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(100))
    review_notes: Mapped[str | None] = mapped_column(Text)
    operation_id: Mapped[UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ConsolidationDecisionRow(Base):
    __tablename__ = "consolidation_decisions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    master_ref: Mapped[dict[str, Any]] = mapped_column(JSON)
    duplicate_refs: Mapped[list[dict[str, Any]]] = mapped_column(JSON)
    strategy: Mapped[str] = mapped_column(String(30))
    applied_by: Mapped[str] = mapped_column(String(10))
    actor: Mapped[str | None] = mapped_column(String(100))
    candidate_id: Mapped[UUID | None] = mapped_column(Uuid)
    notes: Mapped[str | None] = mapped_column(Text)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
