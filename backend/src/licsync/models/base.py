"""Shared helpers for license-sync models."""

from datetime import date, datetime, timezone
from typing import Any


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Any:
    """Lenient datetime parsing for external payloads.

    Accepts datetimes, dates, ISO-8601 strings (with or without a time part
    or a trailing ``Z``) and treats empty strings as missing. Anything else
    is passed through for pydantic to reject.
    """
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return value
    return value
