"""Selective-overwrite merge of external data into internal licenses.

Every function here is pure: no I/O, no clock reads unless a timestamp is
passed in.

Ownership rules:
- externally owned fields overwrite the internal value whenever the
  external value is present
- internally owned fields (product, plan, term, seat counts, SMS usage,
  agents, contact phone) are never written from external data
- a missing external value never clears an internal one
"""

import re
import secrets
from datetime import datetime
from typing import Any

from ..models import (
    ACTIVE_FAMILY,
    INACTIVE_FAMILY,
    ExternalLicenseRecord,
    ExternalSyncStatus,
    InternalLicenseRecord,
    LicenseDiff,
    LicenseStatus,
    utc_now,
)

# (external field, internal field) pairs owned by the external system
EXTERNAL_FIELD_MAP: tuple[tuple[str, str], ...] = (
    ("dba", "dba"),
    ("zip", "zip"),
    ("activate_date", "starts_at"),
    ("monthly_fee", "last_payment"),
    ("sms_balance", "sms_balance"),
    ("note", "notes"),
    ("package", "package_data"),
    ("workspace", "workspace"),
    ("coming_expired_date", "expires_at"),
)

INTERNALLY_OWNED_FIELDS = frozenset(
    {
        "product",
        "plan",
        "term",
        "seats_total",
        "seats_used",
        "sms_purchased",
        "sms_sent",
        "agents",
        "phone",
    }
)

# Defaults for licenses created from external data
DEFAULT_PRODUCT = "ABC Business Suite"
DEFAULT_PLAN = "Basic"
DEFAULT_TERM = "monthly"
SYNC_ACTOR = "system:license-sync"

# Fields copied from duplicates into a master that lacks them
FILLABLE_FIELDS = (
    "dba",
    "zip",
    "email",
    "phone",
    "notes",
    "workspace",
    "package_data",
    "starts_at",
    "expires_at",
    "last_payment",
    "sms_balance",
)


def desired_status(
    external_status: int | None, current: LicenseStatus
) -> LicenseStatus | None:
    """Status to write for an external flag, or None to keep ``current``.

    External 1 means active, 0 means cancelled. Internal statuses that
    already agree (expiring is still active, expired/revoked are already
    inactive) are left alone.
    """
    if external_status == 1 and current not in ACTIVE_FAMILY:
        return LicenseStatus.ACTIVE
    if external_status == 0 and current not in INACTIVE_FAMILY:
        return LicenseStatus.CANCEL
    return None


def compute_update(
    external: ExternalLicenseRecord, internal: InternalLicenseRecord
) -> LicenseDiff:
    """Minimal diff that brings ``internal`` in line with ``external``.

    Args:
        external: Snapshot record from the external API
        internal: Matched internal license

    Returns:
        Diff with only the changed keys; empty when nothing differs
    """
    changes: dict[str, Any] = {}

    for external_field, internal_field in EXTERNAL_FIELD_MAP:
        value = getattr(external, external_field)
        if value is None:
            continue
        if getattr(internal, internal_field) != value:
            changes[internal_field] = value

    status = desired_status(external.status, internal.status)
    if status is not None:
        changes["status"] = status

    return LicenseDiff(**changes)


def compute_linkage(
    external: ExternalLicenseRecord, internal: InternalLicenseRecord
) -> dict[str, Any]:
    """Sync-linkage fields that differ between the pair."""
    changes: dict[str, Any] = {}

    if external.app_id and internal.external_app_id != external.app_id:
        changes["external_app_id"] = external.app_id
    if external.email and (internal.external_email or "").lower() != external.normalized_email:
        changes["external_email"] = external.email
    if external.count_id is not None and internal.external_count_id != external.count_id:
        changes["external_count_id"] = external.count_id
    if internal.external_sync_status != ExternalSyncStatus.SYNCED:
        changes["external_sync_status"] = ExternalSyncStatus.SYNCED

    return changes


def generate_license_key(
    external: ExternalLicenseRecord, suffix: str | None = None
) -> str:
    """License key for a record created from external data.

    Format: ``EXT-{appId | C{countId} | email local part}-{suffix}``.
    """
    if external.app_id:
        identifier = external.app_id
    elif external.count_id is not None:
        identifier = f"C{external.count_id}"
    elif external.email:
        identifier = external.email.split("@", 1)[0]
    else:
        identifier = "ANON"
    identifier = re.sub(r"[^A-Za-z0-9]", "", identifier).upper()[:40] or "ANON"
    suffix = suffix or secrets.token_hex(3).upper()
    return f"EXT-{identifier}-{suffix}"


def build_new_license(
    external: ExternalLicenseRecord,
    now: datetime | None = None,
    key_suffix: str | None = None,
    created_by: str = SYNC_ACTOR,
) -> InternalLicenseRecord:
    """Internal license for an external record with no internal match."""
    now = now or utc_now()

    if external.status == 1:
        status = LicenseStatus.ACTIVE
    elif external.status == 0:
        status = LicenseStatus.CANCEL
    else:
        status = LicenseStatus.PENDING

    return InternalLicenseRecord(
        key=generate_license_key(external, key_suffix),
        product=DEFAULT_PRODUCT,
        plan=DEFAULT_PLAN,
        term=DEFAULT_TERM,
        status=status,
        seats_total=1,
        seats_used=0,
        starts_at=external.activate_date,
        expires_at=external.coming_expired_date,
        last_payment=external.monthly_fee,
        sms_balance=external.sms_balance,
        dba=external.dba or external.email,
        zip=external.zip,
        notes=external.note,
        package_data=external.package,
        workspace=external.workspace,
        email=external.email,
        external_app_id=external.app_id,
        external_email=external.email,
        external_count_id=external.count_id,
        external_sync_status=ExternalSyncStatus.SYNCED,
        last_external_sync_at=now,
        created_by=created_by,
        updated_by=created_by,
        created_at=now,
        updated_at=now,
    )


def fill_missing_fields(
    master: InternalLicenseRecord, duplicates: list[InternalLicenseRecord]
) -> dict[str, Any]:
    """Values the master lacks that a duplicate has, first duplicate wins."""
    changes: dict[str, Any] = {}
    for name in FILLABLE_FIELDS:
        if getattr(master, name) is not None:
            continue
        for duplicate in duplicates:
            value = getattr(duplicate, name)
            if value is not None:
                changes[name] = value
                break
    return changes


def build_external_payload(internal: InternalLicenseRecord) -> dict[str, Any]:
    """Payload pushing an internal license's business fields to the external API."""
    payload: dict[str, Any] = {
        "status": 1 if internal.status in ACTIVE_FAMILY else 0,
    }
    if internal.dba is not None:
        payload["dba"] = internal.dba
    if internal.zip is not None:
        payload["zip"] = internal.zip
    if internal.starts_at is not None:
        payload["activateDate"] = internal.starts_at.date().isoformat()
    if internal.expires_at is not None:
        payload["comingExpired"] = internal.expires_at.date().isoformat()
    if internal.last_payment is not None:
        payload["monthlyFee"] = internal.last_payment
    if internal.sms_balance is not None:
        payload["smsBalance"] = internal.sms_balance
    if internal.notes is not None:
        payload["note"] = internal.notes
    return payload
