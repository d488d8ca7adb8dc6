"""Normalization of the signals used for duplicate detection.

DBA comparison: uppercase, strip trailing legal suffixes (repeatedly, so
"Acme Co. Inc." becomes "ACME"), drop punctuation, collapse whitespace,
then compare with ``rapidfuzz.fuzz.token_sort_ratio``.
"""

import re

from rapidfuzz import fuzz

# Legal-form suffixes stripped from the end of business names
LEGAL_SUFFIXES = [
    r"INC",
    r"INCORPORATED",
    r"LTD",
    r"LIMITED",
    r"LLC",
    r"L\.?L\.?C",
    r"LLP",
    r"L\.?L\.?P",
    r"CORP",
    r"CORPORATION",
    r"CO",
    r"COMPANY",
    r"PC",
    r"PLC",
    r"PLLC",
    r"P\.?A",
]

_SUFFIX_RE = re.compile(r"[\s,]*\b(?:" + "|".join(LEGAL_SUFFIXES) + r")\.?$")

# Domains shared by unrelated businesses; a shared free-mail domain is no signal
FREE_MAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "yahoo.com",
        "hotmail.com",
        "outlook.com",
        "live.com",
        "msn.com",
        "aol.com",
        "icloud.com",
        "me.com",
        "protonmail.com",
        "proton.me",
        "gmx.com",
        "mail.com",
        "yandex.com",
        "zoho.com",
    }
)


def normalize_dba(name: str | None) -> str:
    """Normalize a business name for matching."""
    if not name:
        return ""

    normalized = name.upper().strip()

    # Strip suffixes until none is left, but never down to nothing
    while True:
        stripped = _SUFFIX_RE.sub("", normalized).strip()
        if stripped == normalized or not stripped:
            break
        normalized = stripped

    normalized = re.sub(r"[^A-Z0-9\s]", "", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def dba_block_key(name: str | None) -> str:
    """First token of the normalized DBA, used to block pairwise comparison."""
    normalized = normalize_dba(name)
    return normalized.split(" ", 1)[0] if normalized else ""


def dba_similarity(a: str | None, b: str | None) -> float:
    """Token-sort similarity (0-100) of two normalized DBAs."""
    left, right = normalize_dba(a), normalize_dba(b)
    if not left or not right:
        return 0.0
    return fuzz.token_sort_ratio(left, right)


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    email = email.strip().lower()
    return email or None


def email_domain(email: str | None) -> str | None:
    """Domain part of an email, lowercased."""
    email = normalize_email(email)
    if not email or "@" not in email:
        return None
    return email.rsplit("@", 1)[1] or None


def business_domain(email: str | None) -> str | None:
    """Email domain, unless it is a free-mail provider."""
    domain = email_domain(email)
    if domain is None or domain in FREE_MAIL_DOMAINS:
        return None
    return domain


def normalize_zip(zip_code: str | None) -> str | None:
    """Five-digit ZIP (drops the +4 extension)."""
    if not zip_code:
        return None
    digits = re.sub(r"[^0-9]", "", zip_code)
    return digits[:5] if len(digits) >= 5 else None


def normalize_phone(phone: str | None) -> str | None:
    """Last ten digits of a phone number (drops country code and formatting)."""
    if not phone:
        return None
    digits = re.sub(r"[^0-9]", "", phone)
    return digits[-10:] if len(digits) >= 7 else None
