"""Identity matching between one external record and the internal ledger.

Strict priority, first hit wins:
1. ``external_app_id`` equals the record's appId (ground truth)
2. email, case-insensitive, against ``external_email`` or the contact email
3. ``external_count_id`` equals the record's countId (last resort)
4. no hit: the record creates a new internal license

There is no scoring across criteria here; scoring belongs to duplicate
detection.
"""

from dataclasses import dataclass
from enum import Enum

from ..logging import get_context_logger
from ..models import ExternalLicenseRecord, InternalLicenseRecord
from ..stores import InternalLicenseStore

logger = get_context_logger(__name__)


class MatchCriterion(str, Enum):
    """Which rule produced the match."""

    APP_ID = "app_id"
    EMAIL = "email"
    COUNT_ID = "count_id"
    NONE = "none"


@dataclass(frozen=True)
class IdentityMatch:
    """Result of resolving one external record."""

    criterion: MatchCriterion
    internal: InternalLicenseRecord | None = None

    @property
    def is_create(self) -> bool:
        return self.internal is None


class LicenseMatcher:
    """Resolves external records to internal licenses."""

    def __init__(self, store: InternalLicenseStore):
        self.store = store

    def _conflicts(
        self, external: ExternalLicenseRecord, candidate: InternalLicenseRecord
    ) -> bool:
        # A license already linked to another appId is a different license
        return bool(
            external.app_id
            and candidate.external_app_id
            and candidate.external_app_id != external.app_id
        )

    async def match(self, external: ExternalLicenseRecord) -> IdentityMatch:
        """Find the internal counterpart of ``external``."""
        if external.app_id:
            found = await self.store.find_by_external_app_id(external.app_id)
            if found is not None:
                return IdentityMatch(MatchCriterion.APP_ID, found)

        if external.email:
            found = await self.store.find_by_email(external.email)
            if found is not None and not self._conflicts(external, found):
                return IdentityMatch(MatchCriterion.EMAIL, found)

        if external.count_id is not None:
            found = await self.store.find_by_external_count_id(external.count_id)
            if found is not None and not self._conflicts(external, found):
                return IdentityMatch(MatchCriterion.COUNT_ID, found)

        return IdentityMatch(MatchCriterion.NONE)
