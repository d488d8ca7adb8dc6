"""Unit tests for duplicate detection, scoring and routing.

Scores below follow the default weights: shared appId 100, exact email 40,
email domain 25, exact DBA 40, fuzzy DBA 30, zip 15, phone 15.

Run with: pytest backend/tests/unit/test_duplicates.py -v
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from licsync.models import DuplicateRouting, DuplicateScope, EntitySystem
from licsync.reconciliation import DuplicateDetector, IdentityIndex, Signals


@pytest.fixture
def detector() -> DuplicateDetector:
    return DuplicateDetector()


class TestRouting:
    """Tests for threshold routing."""

    @pytest.mark.parametrize(
        "score, routing",
        [
            (100.0, DuplicateRouting.AUTO_CONSOLIDATE),
            (90.0, DuplicateRouting.AUTO_CONSOLIDATE),
            (89.0, DuplicateRouting.MANUAL_REVIEW),
            (70.0, DuplicateRouting.MANUAL_REVIEW),
            (69.0, DuplicateRouting.DISCARD),
            (0.0, DuplicateRouting.DISCARD),
        ],
    )
    def test_threshold_boundaries(self, detector, score, routing):
        """Test that 90 is auto, 89 is review and 69 is discarded."""
        assert detector.route(score) == routing

    def test_thresholds_are_configurable(self, sync_settings):
        """Test that the detector picks thresholds up from settings."""
        settings = sync_settings.model_copy(
            update={"duplicate_auto_threshold": 95.0, "duplicate_review_threshold": 50.0}
        )
        detector = DuplicateDetector.from_settings(settings)

        assert detector.route(94.0) == DuplicateRouting.MANUAL_REVIEW
        assert detector.route(50.0) == DuplicateRouting.MANUAL_REVIEW


class TestScoring:
    """Tests for pair scoring."""

    def test_no_single_weak_signal_reaches_auto(self, detector):
        """Test that only a shared appId scores above 90 on its own."""
        weights = detector.scorer.weights

        for weight in (
            weights.exact_email,
            weights.email_domain,
            weights.exact_dba,
            weights.fuzzy_dba,
            weights.zip,
            weights.phone,
        ):
            assert weight < 90
        assert weights.shared_app_id >= 90

    def test_score_is_capped_at_100(self, detector, make_external):
        """Test that summed weights never exceed 100."""
        a = Signals.from_external(make_external("A1", emailLicense="x@biz.com", dba="Biz LLC"))
        b = Signals.from_external(make_external("A1", emailLicense="x@biz.com", dba="Biz LLC"))

        score, reasons = detector.scorer.score(a, b)

        assert score == 100.0
        assert "shared app_id" in reasons

    def test_email_domain_and_dba(self, detector, make_external):
        """Test that a shared business domain, DBA and zip score 80."""
        a = Signals.from_external(make_external("A1", emailLicense="a@biz.com", dba="Biz LLC"))
        b = Signals.from_external(make_external("A2", emailLicense="b@biz.com", dba="BIZ, Inc."))

        score, reasons = detector.scorer.score(a, b)

        assert score == 80.0
        assert reasons == ["same email domain (biz.com)", "exact DBA", "same zip"]


class TestExternalPass:
    """Tests for duplicates inside the external snapshot."""

    def test_same_email_and_dba_is_auto(self, detector, make_external):
        """Test that two appIds sharing email and DBA are auto-consolidated."""
        older = make_external("A1", emailLicense="x@biz.com", dba="Biz LLC", activateDate="2023-01-01")
        newer = make_external("A2", emailLicense="x@biz.com", dba="Biz LLC", activateDate="2024-01-01")

        candidates = detector.detect_external([older, newer])

        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.routing == DuplicateRouting.AUTO_CONSOLIDATE
        assert candidate.confidence_score == 95.0
        assert candidate.master.identifier == "app_id:A2"
        assert [d.identifier for d in candidate.duplicates] == ["app_id:A1"]

    def test_active_record_is_preferred_master(self, detector, make_external):
        """Test that an active record beats a more recent cancelled one."""
        active = make_external("A1", emailLicense="x@biz.com", dba="Biz LLC", activateDate="2023-01-01")
        cancelled = make_external(
            "A2", emailLicense="x@biz.com", dba="Biz LLC", activateDate="2024-01-01", status=0
        )

        candidate = detector.detect_external([cancelled, active])[0]

        assert candidate.master.identifier == "app_id:A1"

    def test_non_overlapping_windows_are_split(self, detector, make_external):
        """Test that successive licenses of one business are not duplicates."""
        first = make_external(
            "A1", emailLicense="x@biz.com", dba="Biz LLC",
            activateDate="2022-01-01", comingExpired="2022-12-31",
        )
        second = make_external(
            "A2", emailLicense="x@biz.com", dba="Biz LLC",
            activateDate="2023-06-01", comingExpired="2024-06-01",
        )

        assert detector.detect_external([first, second]) == []

    def test_overlapping_windows_group(self, detector, make_external):
        """Test that overlapping activation windows stay grouped."""
        first = make_external(
            "A1", emailLicense="x@biz.com", dba="Biz LLC",
            activateDate="2022-01-01", comingExpired="2023-12-31",
        )
        second = make_external(
            "A2", emailLicense="x@biz.com", dba="Biz LLC",
            activateDate="2023-06-01", comingExpired="2024-06-01",
        )

        assert len(detector.detect_external([first, second])) == 1

    def test_weakest_member_sets_group_score(self, detector, make_external):
        """Test that one weak member drags the whole group into review."""
        master = make_external("A1", emailLicense="x@biz.com", dba="Biz LLC", activateDate="2024-03-01")
        strong = make_external("A2", emailLicense="x@biz.com", dba="Biz LLC", activateDate="2024-01-01")
        weak = make_external("A3", emailLicense="y@biz.com", dba="Biz LLC", activateDate="2024-02-01")

        candidates = detector.detect_external([master, strong, weak])

        assert len(candidates) == 1
        assert len(candidates[0].members) == 3
        assert candidates[0].confidence_score == 80.0
        assert candidates[0].routing == DuplicateRouting.MANUAL_REVIEW

    def test_free_mail_group_is_discarded(self, detector, make_external):
        """Test that a shared free-mail domain adds no points."""
        a = make_external("A1", emailLicense="a@gmail.com", dba="Biz LLC")
        b = make_external("A2", emailLicense="b@gmail.com", dba="Biz LLC")

        candidate = detector.detect_external([a, b])[0]

        assert candidate.confidence_score == 55.0
        assert candidate.routing == DuplicateRouting.DISCARD

    def test_repeated_app_id_always_groups(self, detector, make_external):
        """Test that two snapshot entries with one appId form a group."""
        a = make_external("A1", dba="First Name", activateDate="2020-01-01", comingExpired="2020-06-01")
        b = make_external("A1", dba="Other Name", activateDate="2024-01-01")

        candidates = detector.detect_external([a, b])

        assert len(candidates) == 1
        assert candidates[0].routing == DuplicateRouting.AUTO_CONSOLIDATE


class TestInternalPass:
    """Tests for duplicates inside the internal ledger."""

    def test_fuzzy_dba_with_same_contact(self, detector, make_internal):
        """Test that differently written names of one business group."""
        now = datetime.now(timezone.utc)
        first = make_internal(
            "LIC-1", dba="Acme Coffee LLC", email="owner@acme.com", zip="10001",
            created_at=now - timedelta(days=10),
        )
        second = make_internal(
            "LIC-2", dba="ACME Coffee, Inc.", email="Owner@Acme.com", zip="10001",
            created_at=now,
        )

        candidates = detector.detect_internal([second, first])

        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.scope == DuplicateScope.INTERNAL
        assert candidate.confidence_score == 95.0
        assert candidate.master.identifier == str(first.id)

    def test_linked_record_is_master(self, detector, make_internal):
        """Test that a license linked to the external system wins as master."""
        now = datetime.now(timezone.utc)
        unlinked = make_internal(
            "LIC-1", dba="Acme Coffee", email="owner@acme.com", created_at=now - timedelta(days=10)
        )
        linked = make_internal(
            "LIC-2", dba="Acme Coffee", email="owner@acme.com", external_app_id="A1", created_at=now
        )

        candidate = detector.detect_internal([unlinked, linked])[0]

        assert candidate.master.identifier == str(linked.id)

    def test_records_linked_to_different_app_ids_never_group(self, detector, make_internal):
        """Test that two licenses of distinct external licenses are kept apart."""
        a = make_internal("LIC-1", dba="Acme Coffee", email="owner@acme.com", external_app_id="A1")
        b = make_internal("LIC-2", dba="Acme Coffee", email="owner@acme.com", external_app_id="A2")

        assert detector.detect_internal([a, b]) == []

    def test_different_businesses_do_not_group(self, detector, make_internal):
        """Test that unrelated names are never compared into a group."""
        a = make_internal("LIC-1", dba="Acme Coffee")
        b = make_internal("LIC-2", dba="Zenith Plumbing")

        assert detector.detect_internal([a, b]) == []


class TestCrossSystemPass:
    """Tests for unmatched external records vs unlinked internal licenses."""

    def test_pairs_unmatched_external_with_unlinked_internal(
        self, detector, make_external, make_internal
    ):
        """Test a likely pair found across systems."""
        internal = make_internal("LIC-1", dba="Biz LLC", email="owner@biz.com", zip="10001")
        external = make_external("A1", emailLicense="billing@biz.com", dba="Biz, Inc.")

        candidates = detector.detect_cross_system([external], [internal])

        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.scope == DuplicateScope.CROSS_SYSTEM
        assert candidate.confidence_score == 80.0
        assert candidate.members[0].system == EntitySystem.INTERNAL
        assert candidate.members[1].identifier == "app_id:A1"

    def test_identity_matched_records_are_ignored(self, detector, make_external, make_internal):
        """Test that a record the matcher would resolve is not a candidate."""
        internal = make_internal("LIC-1", dba="Biz LLC", email="billing@biz.com")
        external = make_external("A1", emailLicense="billing@biz.com", dba="Biz LLC")

        assert detector.detect_cross_system([external], [internal]) == []

    def test_each_internal_license_pairs_once(self, detector, make_external, make_internal):
        """Test greedy one-to-one assignment by descending score."""
        internal = make_internal("LIC-1", dba="Biz LLC", email="owner@biz.com", zip="10001")
        best = make_external("A1", emailLicense="billing@biz.com", dba="Biz LLC", zip="10001")
        worse = make_external("A2", emailLicense="sales@biz.com", dba="Bizz LLC", zip="10001")

        candidates = detector.detect_cross_system([worse, best], [internal])

        assert len(candidates) == 1
        assert candidates[0].members[1].identifier == "app_id:A1"


class TestDetectAll:
    """Tests for the combined run."""

    def test_report_groups_by_routing(self, detector, make_external, make_internal):
        """Test that the report splits candidates by routing."""
        externals = [
            make_external("A1", emailLicense="x@biz.com", dba="Biz LLC"),
            make_external("A2", emailLicense="x@biz.com", dba="Biz LLC"),
        ]
        internals = [
            make_internal("LIC-1", dba="Acme Coffee", email="a@acme.com"),
            make_internal("LIC-2", dba="Acme Coffee", email="b@acme.com", zip="10001"),
        ]

        report = detector.detect_all(externals, internals)

        assert len(report.auto) == 1
        assert len(report.review) == 0
        assert len(report.discarded) == 1


class TestAdHocCheck:
    """Tests for ranking internal licenses against a probe."""

    def test_ranks_by_confidence(self, detector, make_internal):
        """Test that exact and fuzzy DBA hits are ranked."""
        exact = make_internal("LIC-1", dba="BIZ, LLC")
        fuzzy = make_internal("LIC-2", dba="Bizz LLC")
        other = make_internal("LIC-3", dba="Other Co")

        matches = detector.check([other, fuzzy, exact], dba="Biz LLC")

        assert [m.key for m in matches] == ["LIC-1", "LIC-2"]
        assert matches[0].confidence_score == 100.0
        assert matches[1].confidence_score == 75.0
        assert matches[0].match_reasons == ["exact DBA"]

    def test_threshold_filters(self, detector, make_internal):
        """Test that results under the threshold are dropped."""
        fuzzy = make_internal("LIC-2", dba="Bizz LLC")

        assert detector.check([fuzzy], dba="Biz LLC", threshold=80) == []

    def test_email_and_dba_probe(self, detector, make_internal):
        """Test that confidence is relative to what the probe could match."""
        record = make_internal("LIC-1", dba="Biz LLC", email="owner@biz.com")

        matches = detector.check([record], dba="Biz", email="OWNER@biz.com")

        assert matches[0].confidence_score == 100.0
        assert matches[0].email == "owner@biz.com"

    def test_consolidated_licenses_are_excluded(self, detector, make_internal):
        """Test that folded duplicates are not offered again."""
        folded = make_internal("LIC-1", dba="Biz LLC", consolidated_into_id=uuid4())

        assert detector.check([folded], dba="Biz LLC") == []

    def test_empty_probe(self, detector, make_internal):
        """Test that a probe without DBA or email finds nothing."""
        assert detector.check([make_internal("LIC-1", dba="Biz LLC")]) == []


class TestIdentityIndex:
    """Tests for the in-memory identity view used by the cross-system pass."""

    def test_mirrors_matcher_rules(self, make_external, make_internal):
        """Test appId, email and conflict handling."""
        index = IdentityIndex(
            [
                make_internal("LIC-1", external_app_id="A1"),
                make_internal("LIC-2", email="shared@biz.com", external_app_id="A9"),
            ]
        )

        assert index.has_match(make_external("A1"))
        assert not index.has_match(make_external("A2", emailLicense="shared@biz.com"))
        assert index.has_match(make_external(None, emailLicense="shared@biz.com"))
