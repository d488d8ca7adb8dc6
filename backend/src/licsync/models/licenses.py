"""License models for both sides of the reconciliation.

``ExternalLicenseRecord`` is the raw shape returned by the third-party API,
snapshotted once per sync. ``InternalLicenseRecord`` is the system of record.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

from .base import ensure_utc, parse_datetime, utc_now


class LicenseStatus(str, Enum):
    """Lifecycle status of an internal license."""

    ACTIVE = "active"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    PENDING = "pending"
    CANCEL = "cancel"
    DRAFT = "draft"
    REVOKED = "revoked"


# Internal statuses that already agree with an external status flag
ACTIVE_FAMILY = frozenset({LicenseStatus.ACTIVE, LicenseStatus.EXPIRING})
INACTIVE_FAMILY = frozenset(
    {LicenseStatus.CANCEL, LicenseStatus.EXPIRED, LicenseStatus.REVOKED}
)


class ExternalSyncStatus(str, Enum):
    """Linkage state of an internal license with the external system."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class ExternalLicenseRecord(BaseModel):
    """One license as reported by the external license API.

    Field names accept the spellings the API has used over time
    (``appId``/``appid``, ``Email_license``/``emailLicense``, ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    app_id: str | None = Field(
        default=None, validation_alias=AliasChoices("app_id", "appId", "appid")
    )
    count_id: int | None = Field(
        default=None, validation_alias=AliasChoices("count_id", "countId", "countid")
    )
    email: str | None = Field(
        default=None,
        validation_alias=AliasChoices("email", "emailLicense", "Email_license"),
    )
    dba: str | None = None
    zip: str | None = None
    status: int | None = Field(default=None, description="1 = active, 0 = cancelled")
    activate_date: datetime | None = Field(
        default=None, validation_alias=AliasChoices("activate_date", "activateDate")
    )
    monthly_fee: float | None = Field(
        default=None, validation_alias=AliasChoices("monthly_fee", "monthlyFee")
    )
    sms_balance: int | None = Field(
        default=None, validation_alias=AliasChoices("sms_balance", "smsBalance")
    )
    note: str | None = None
    package: dict[str, Any] | None = None
    workspace: str | None = None
    coming_expired_date: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "coming_expired_date", "comingExpiredDate", "comingExpired", "Coming_expired"
        ),
    )
    mid: str | None = Field(default=None, description="Merchant ID")
    license_type: str | None = Field(
        default=None, validation_alias=AliasChoices("license_type", "licenseType")
    )
    last_active: datetime | None = Field(
        default=None, validation_alias=AliasChoices("last_active", "lastActive")
    )

    @field_validator("app_id", "email", "dba", "zip", "note", "workspace", "mid", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("count_id", "status", "sms_balance", "monthly_fee", mode="before")
    @classmethod
    def _empty_number(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("activate_date", "coming_expired_date", "last_active", mode="before")
    @classmethod
    def _parse_dates(cls, value: Any) -> Any:
        return parse_datetime(value)

    @field_validator("activate_date", "coming_expired_date", "last_active")
    @classmethod
    def _utc_dates(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def normalized_email(self) -> str | None:
        return self.email.lower() if self.email else None

    @property
    def identifier(self) -> str:
        """First present of appId / countId / email, for reporting."""
        if self.app_id:
            return self.app_id
        if self.count_id is not None:
            return f"C{self.count_id}"
        return self.email or "<unidentified>"

    @property
    def identity_key(self) -> str:
        """Namespaced identity, e.g. ``app_id:A1``, used in duplicate references."""
        if self.app_id:
            return f"app_id:{self.app_id}"
        if self.count_id is not None:
            return f"count_id:{self.count_id}"
        if self.email:
            return f"email:{self.email.lower()}"
        return f"anonymous:{id(self)}"


class InternalLicenseRecord(BaseModel):
    """A license in the internal ledger (the system of record)."""

    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4, description="Internal stable identifier")
    key: str = Field(..., description="Unique license key")
    product: str | None = None
    plan: str | None = None
    status: LicenseStatus = LicenseStatus.PENDING
    term: str | None = None
    seats_total: int = 1
    seats_used: int = 0
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    last_payment: float | None = None
    sms_purchased: int = 0
    sms_sent: int = 0
    sms_balance: int | None = None
    agents: int = 0
    dba: str | None = None
    zip: str | None = None
    notes: str | None = None
    package_data: dict[str, Any] | None = None
    workspace: str | None = None

    # Contact signals used by duplicate detection
    email: str | None = None
    phone: str | None = None

    # Set when this record was folded into another by consolidation
    consolidated_into_id: UUID | None = None

    # Sync linkage
    external_app_id: str | None = None
    external_email: str | None = None
    external_count_id: int | None = None
    external_sync_status: ExternalSyncStatus | None = None
    last_external_sync_at: datetime | None = None

    # Audit
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator(
        "starts_at",
        "expires_at",
        "last_external_sync_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _utc_dates(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @property
    def is_linked(self) -> bool:
        return self.external_app_id is not None

    @property
    def is_consolidated(self) -> bool:
        return self.consolidated_into_id is not None

    @property
    def contact_email(self) -> str | None:
        """Best known email for this license, lowercased."""
        email = self.external_email or self.email
        return email.lower() if email else None


class LicenseDiff(BaseModel):
    """Partial update for an internal license.

    Only fields explicitly set are part of the diff; ``changes()`` returns
    exactly those keys.
    """

    model_config = ConfigDict(extra="forbid")

    dba: str | None = None
    zip: str | None = None
    starts_at: datetime | None = None
    expires_at: datetime | None = None
    last_payment: float | None = None
    sms_balance: int | None = None
    notes: str | None = None
    package_data: dict[str, Any] | None = None
    workspace: str | None = None
    status: LicenseStatus | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(include=self.model_fields_set)

    @property
    def is_empty(self) -> bool:
        return not self.model_fields_set


class LicenseFilter(BaseModel):
    """Filter for internal license listings."""

    status: LicenseStatus | None = None
    linked: bool | None = Field(
        default=None, description="True = has external_app_id, False = unlinked"
    )
    external_sync_status: ExternalSyncStatus | None = None
    include_consolidated: bool = False
    dba_prefix: str | None = None
    limit: int | None = None
