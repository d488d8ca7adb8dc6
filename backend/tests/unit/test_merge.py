"""Unit tests for the selective-overwrite merge.

Run with: pytest backend/tests/unit/test_merge.py -v
"""

from datetime import datetime, timezone

import pytest

from licsync.models import ExternalLicenseRecord, ExternalSyncStatus, LicenseStatus
from licsync.reconciliation import (
    build_external_payload,
    build_new_license,
    compute_linkage,
    compute_update,
    fill_missing_fields,
    generate_license_key,
)
from licsync.reconciliation.merge import desired_status


class TestComputeUpdate:
    """Tests for the minimal diff."""

    def test_monthly_fee_only_touches_last_payment(self, make_external, make_internal):
        """Test that a fee change yields a diff with last_payment only."""
        internal = make_internal("LIC-1", product="Pro", plan="Gold")
        external = make_external(
            None,
            emailLicense=None,
            countId=1,
            dba=None,
            zip=None,
            status=None,
            activateDate=None,
            monthlyFee=49.99,
        )

        diff = compute_update(external, internal)

        assert diff.changes() == {"last_payment": 49.99}

    def test_identical_records_produce_empty_diff(self, make_external, make_internal):
        """Test that nothing is written when the sides agree."""
        external = make_external("A1", note="hello")
        internal = make_internal(
            "LIC-1",
            dba=external.dba,
            zip=external.zip,
            starts_at=external.activate_date,
            last_payment=external.monthly_fee,
            notes="hello",
            status=LicenseStatus.ACTIVE,
        )

        diff = compute_update(external, internal)

        assert diff.is_empty
        assert diff.changes() == {}

    def test_missing_external_value_never_clears(self, make_external, make_internal):
        """Test that a null external field leaves the internal value alone."""
        internal = make_internal("LIC-1", dba="Kept Name", zip="90210", notes="keep me")
        external = make_external("A1", dba=None, zip=None, note=None)

        changes = compute_update(external, internal).changes()

        assert "dba" not in changes
        assert "zip" not in changes
        assert "notes" not in changes

    def test_internally_owned_fields_never_written(self, make_external, make_internal):
        """Test that product, plan and seat data are outside the diff."""
        internal = make_internal(
            "LIC-1", product="Pro", plan="Gold", seats_total=10, agents=3, phone="555-0100"
        )

        changes = compute_update(make_external("A1"), internal).changes()

        for name in ("product", "plan", "seats_total", "agents", "phone"):
            assert name not in changes

    def test_external_fields_overwrite(self, make_external, make_internal):
        """Test that present external values replace differing internal ones."""
        internal = make_internal("LIC-1", dba="Old Name", zip="10001")
        external = make_external("A1", dba="New Name", zip="10002", workspace="ws-1")

        changes = compute_update(external, internal).changes()

        assert changes["dba"] == "New Name"
        assert changes["zip"] == "10002"
        assert changes["workspace"] == "ws-1"

    def test_dates_map_to_internal_names(self, make_external, make_internal):
        """Test activateDate -> starts_at and comingExpired -> expires_at."""
        external = make_external("A1", activateDate="2024-01-01", comingExpired="2025-01-01")

        changes = compute_update(external, make_internal("LIC-1")).changes()

        assert changes["starts_at"] == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert changes["expires_at"] == datetime(2025, 1, 1, tzinfo=timezone.utc)


class TestDesiredStatus:
    """Tests for mapping the external status flag."""

    @pytest.mark.parametrize(
        "flag, current, expected",
        [
            (1, LicenseStatus.PENDING, LicenseStatus.ACTIVE),
            (1, LicenseStatus.CANCEL, LicenseStatus.ACTIVE),
            (1, LicenseStatus.ACTIVE, None),
            (1, LicenseStatus.EXPIRING, None),
            (0, LicenseStatus.ACTIVE, LicenseStatus.CANCEL),
            (0, LicenseStatus.PENDING, LicenseStatus.CANCEL),
            (0, LicenseStatus.EXPIRED, None),
            (0, LicenseStatus.REVOKED, None),
            (None, LicenseStatus.ACTIVE, None),
        ],
    )
    def test_status_families(self, flag, current, expected):
        """Test that statuses already agreeing with the flag are kept."""
        assert desired_status(flag, current) == expected


class TestNewLicense:
    """Tests for licenses created from external data."""

    def test_creates_linked_license(self, make_external):
        """Test the create scenario: appId A1 with DBA Biz LLC."""
        external = make_external("A1", emailLicense="x@biz.com", dba="Biz LLC", status=None)

        created = build_new_license(external, key_suffix="ABC123")

        assert created.external_app_id == "A1"
        assert created.dba == "Biz LLC"
        assert created.status == LicenseStatus.PENDING
        assert created.key == "EXT-A1-ABC123"
        assert created.external_sync_status == ExternalSyncStatus.SYNCED
        assert created.email == "x@biz.com"

    def test_status_follows_flag(self, make_external):
        """Test that active and cancelled flags set the initial status."""
        assert build_new_license(make_external("A1", status=1)).status == LicenseStatus.ACTIVE
        assert build_new_license(make_external("A2", status=0)).status == LicenseStatus.CANCEL

    def test_dba_falls_back_to_email(self, make_external):
        """Test that a nameless record is labelled by its email."""
        created = build_new_license(make_external("A1", dba=None))

        assert created.dba == "owner@a1.example.com"

    @pytest.mark.parametrize(
        "overrides, identifier",
        [
            ({"appId": "a-1"}, "A1"),
            ({"appId": None, "countId": 12}, "C12"),
            ({"appId": None, "emailLicense": "jane.doe@biz.com"}, "JANEDOE"),
        ],
    )
    def test_license_key_identifier(self, make_payload, overrides, identifier):
        """Test the identifier part of generated keys."""
        record = ExternalLicenseRecord.model_validate(make_payload(**overrides))

        assert generate_license_key(record, "X") == f"EXT-{identifier}-X"


class TestLinkage:
    """Tests for the sync-linkage fields."""

    def test_links_unlinked_license(self, make_external, make_internal):
        """Test that all identifiers are copied onto an unlinked license."""
        changes = compute_linkage(
            make_external("A1", countId=5), make_internal("LIC-1")
        )

        assert changes == {
            "external_app_id": "A1",
            "external_email": "owner@a1.example.com",
            "external_count_id": 5,
            "external_sync_status": ExternalSyncStatus.SYNCED,
        }

    def test_linked_license_needs_nothing(self, make_external, make_internal):
        """Test that an already linked license produces no linkage changes."""
        internal = make_internal(
            "LIC-1",
            external_app_id="A1",
            external_email="OWNER@a1.example.com",
            external_sync_status=ExternalSyncStatus.SYNCED,
        )

        assert compute_linkage(make_external("A1"), internal) == {}


class TestConsolidationHelpers:
    """Tests for field filling and outbound payloads."""

    def test_fill_missing_fields_first_duplicate_wins(self, make_internal):
        """Test that only fields the master lacks are filled."""
        master = make_internal("M", dba="Master Co")
        first = make_internal("D1", dba="Dup One", zip="10001", phone="555-0100")
        second = make_internal("D2", zip="20002", notes="from second")

        changes = fill_missing_fields(master, [first, second])

        assert changes == {"zip": "10001", "phone": "555-0100", "notes": "from second"}

    def test_external_payload(self, make_internal):
        """Test the payload pushed to the external API."""
        internal = make_internal(
            "LIC-1",
            status=LicenseStatus.EXPIRING,
            dba="Biz LLC",
            starts_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            last_payment=10.0,
        )

        payload = build_external_payload(internal)

        assert payload == {
            "status": 1,
            "dba": "Biz LLC",
            "activateDate": "2024-01-01",
            "monthlyFee": 10.0,
        }
