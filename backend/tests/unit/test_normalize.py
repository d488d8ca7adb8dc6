"""Unit tests for matching-signal normalization.

Run with: pytest backend/tests/unit/test_normalize.py -v
"""

import pytest

from licsync.reconciliation.normalize import (
    business_domain,
    dba_block_key,
    dba_similarity,
    normalize_dba,
    normalize_phone,
    normalize_zip,
)


class TestNormalizeDba:
    """Tests for business name normalization."""

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Biz LLC", "BIZ"),
            ("Biz, L.L.C.", "BIZ"),
            ("Acme Co. Inc.", "ACME"),
            ("  acme   coffee  roasters ", "ACME COFFEE ROASTERS"),
            ("Joe's Diner, Ltd", "JOES DINER"),
        ],
    )
    def test_strips_suffixes_and_punctuation(self, name, expected):
        """Test that legal forms, punctuation and spacing are removed."""
        assert normalize_dba(name) == expected

    def test_never_strips_to_nothing(self):
        """Test that a name made only of a suffix is kept."""
        assert normalize_dba("Company") == "COMPANY"

    def test_empty(self):
        """Test that missing names normalize to an empty string."""
        assert normalize_dba(None) == ""
        assert dba_block_key(None) == ""

    def test_block_key_is_first_token(self):
        """Test the blocking key."""
        assert dba_block_key("Acme Coffee LLC") == "ACME"


class TestDbaSimilarity:
    """Tests for fuzzy DBA comparison."""

    def test_word_order_does_not_matter(self):
        """Test that token sorting ignores word order."""
        assert dba_similarity("Coffee Acme", "Acme Coffee LLC") == 100.0

    def test_small_typo_is_similar(self):
        """Test that a one-letter typo stays above the fuzzy threshold."""
        assert dba_similarity("Bizz LLC", "Biz LLC") >= 85.0

    def test_missing_name_is_not_similar(self):
        """Test that an empty side scores zero."""
        assert dba_similarity("Biz", None) == 0.0


class TestContactSignals:
    """Tests for email, zip and phone normalization."""

    def test_free_mail_domain_is_no_signal(self):
        """Test that shared free-mail providers are ignored."""
        assert business_domain("someone@Gmail.com") is None
        assert business_domain("owner@Biz.com") == "biz.com"

    def test_zip_plus_four(self):
        """Test that the +4 extension is dropped."""
        assert normalize_zip("10001-1234") == "10001"
        assert normalize_zip("123") is None

    def test_phone_keeps_last_ten_digits(self):
        """Test that country codes and formatting are removed."""
        assert normalize_phone("+1 (555) 010-0199") == "5550100199"
        assert normalize_phone("12") is None
