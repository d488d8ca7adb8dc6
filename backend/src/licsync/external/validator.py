"""Validation of license payloads received from the external API.

Structural problems (not an object, no identifier, unparsable numbers or
dates, expiry before activation) always reject the record. Format problems
(zip pattern, email format, negative amounts, over-long strings, unknown
license type) reject it only in strict mode and are otherwise reported as
warnings.
"""

import re
from dataclasses import dataclass, field
from typing import Any

import pydantic

from ..errors import ValidationError
from ..logging import get_context_logger
from ..models import ExternalLicenseRecord

logger = get_context_logger(__name__)

ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Fields checked against max_field_length (notes get twice as much room)
_LENGTH_CHECKED = ("app_id", "dba", "email", "mid", "workspace")


@dataclass
class ValidationOutcome:
    """Result of validating one payload."""

    record: ExternalLicenseRecord | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.record is not None and not self.errors


def _raw_identifier(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("appId", "appid", "app_id", "countId", "countid", "count_id",
                "email", "emailLicense", "Email_license"):
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


class ExternalLicenseValidator:
    """Validates and parses raw external license payloads."""

    def __init__(
        self,
        strict_mode: bool = False,
        max_field_length: int = 1000,
        allowed_license_types: list[str] | None = None,
    ):
        self.strict_mode = strict_mode
        self.max_field_length = max_field_length
        self.allowed_license_types = allowed_license_types or ["demo", "product"]

    def check(self, payload: Any) -> ValidationOutcome:
        """Validate one payload without raising."""
        if not isinstance(payload, dict):
            return ValidationOutcome(None, errors=["License data must be an object"])

        try:
            record = ExternalLicenseRecord.model_validate(payload)
        except pydantic.ValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            return ValidationOutcome(None, errors=errors)

        errors: list[str] = []
        soft: list[str] = []

        if not (record.app_id or record.count_id is not None or record.email):
            errors.append("record has no appId, countId or email")

        if record.status is not None and record.status not in (0, 1):
            errors.append("status: must be 0 or 1")

        if (
            record.activate_date
            and record.coming_expired_date
            and record.coming_expired_date <= record.activate_date
        ):
            errors.append("Expiration date must be after activation date")

        if record.zip and not ZIP_PATTERN.match(record.zip):
            soft.append("zip: does not match 12345 or 12345-6789")
        if record.email and not EMAIL_PATTERN.match(record.email):
            soft.append("email: must be a valid email address")
        if record.monthly_fee is not None and record.monthly_fee < 0:
            soft.append("monthly_fee: must be at least 0")
        if record.sms_balance is not None and record.sms_balance < 0:
            soft.append("sms_balance: must be at least 0")
        if record.license_type and record.license_type not in self.allowed_license_types:
            soft.append(f"license_type: must be one of {self.allowed_license_types}")

        for name in _LENGTH_CHECKED:
            value = getattr(record, name)
            if value and len(value) > self.max_field_length:
                soft.append(f"{name}: exceeds maximum length of {self.max_field_length}")
        if record.note and len(record.note) > self.max_field_length * 2:
            soft.append(f"note: exceeds maximum length of {self.max_field_length * 2}")

        warnings: list[str] = []
        if self.strict_mode:
            errors.extend(soft)
        else:
            warnings.extend(soft)

        if record.status == 1 and not record.activate_date:
            warnings.append("Active license should have an activation date")

        return ValidationOutcome(record, errors=errors, warnings=warnings)

    def validate(self, payload: Any) -> ExternalLicenseRecord:
        """Validate one payload.

        Raises:
            ValidationError: If the record must be skipped
        """
        outcome = self.check(payload)
        identifier = _raw_identifier(payload)

        if outcome.warnings:
            logger.debug(
                f"License {identifier} validated with warnings",
                extra={"identifier": identifier, "warnings": outcome.warnings},
            )

        if not outcome.is_valid:
            field_errors = {}
            for error in outcome.errors:
                name, _, message = error.partition(": ")
                field_errors[name if message else "record"] = message or error
            logger.warning(
                "License data validation failed",
                extra={
                    "identifier": identifier,
                    "errors": outcome.errors[:5],
                    "error_count": len(outcome.errors),
                },
            )
            raise ValidationError(
                f"Invalid license payload: {'; '.join(outcome.errors)}",
                identifier=identifier,
                field_errors=field_errors,
            )

        return outcome.record
