"""Duplicate detection across the external snapshot and the internal ledger.

Three independent passes:

- external: snapshot records sharing an email domain and normalized DBA
  (records sharing an appId always group), split where their activation
  windows do not overlap
- internal: internal licenses blocked by first DBA token, grouped by fuzzy
  DBA equality, confirmed by the score
- cross-system: external records with no identity match against unlinked
  internal licenses

Scoring is a weighted sum of signal hits capped at 100. A group's score is
the lowest member-vs-master score, so one weak member drags the whole group
into review.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime

from ..config import SyncSettings
from ..logging import get_context_logger, log_duplicate_event
from ..models import (
    DuplicateCandidate,
    DuplicateMatch,
    DuplicateRouting,
    DuplicateScope,
    EntityRef,
    EntitySystem,
    ExternalLicenseRecord,
    InternalLicenseRecord,
)
from .normalize import (
    business_domain,
    dba_block_key,
    dba_similarity,
    email_domain,
    normalize_dba,
    normalize_email,
    normalize_phone,
    normalize_zip,
)

logger = get_context_logger(__name__)


# =========================
# Scoring
# =========================


@dataclass(frozen=True)
class ScoringWeights:
    """Points contributed by each signal (0-100 scale)."""

    shared_app_id: float = 100.0
    exact_email: float = 40.0
    email_domain: float = 25.0
    exact_dba: float = 40.0
    fuzzy_dba: float = 30.0
    zip: float = 15.0
    phone: float = 15.0


@dataclass(frozen=True)
class Signals:
    """Normalized matching signals of one record."""

    ref: EntityRef
    app_id: str | None = None
    email: str | None = None
    domain: str | None = None
    dba: str = ""
    zip: str | None = None
    phone: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None

    @classmethod
    def from_external(cls, record: ExternalLicenseRecord) -> "Signals":
        return cls(
            ref=EntityRef(
                system=EntitySystem.EXTERNAL,
                identifier=record.identity_key,
                label=record.dba,
            ),
            app_id=record.app_id,
            email=normalize_email(record.email),
            domain=business_domain(record.email),
            dba=normalize_dba(record.dba),
            zip=normalize_zip(record.zip),
            starts_at=record.activate_date,
            ends_at=record.coming_expired_date,
        )

    @classmethod
    def from_internal(cls, record: InternalLicenseRecord) -> "Signals":
        return cls(
            ref=EntityRef(
                system=EntitySystem.INTERNAL,
                identifier=str(record.id),
                label=record.dba,
            ),
            app_id=record.external_app_id,
            email=normalize_email(record.contact_email),
            domain=business_domain(record.contact_email),
            dba=normalize_dba(record.dba),
            zip=normalize_zip(record.zip),
            phone=normalize_phone(record.phone),
            starts_at=record.starts_at,
            ends_at=record.expires_at,
        )


class DuplicateScorer:
    """Weighted signal scoring of record pairs."""

    def __init__(
        self,
        weights: ScoringWeights | None = None,
        fuzzy_threshold: float = 85.0,
    ):
        self.weights = weights or ScoringWeights()
        self.fuzzy_threshold = fuzzy_threshold

    def dba_matches(self, a: Signals, b: Signals) -> bool:
        if not a.dba or not b.dba:
            return False
        return a.dba == b.dba or dba_similarity(a.dba, b.dba) >= self.fuzzy_threshold

    def score(self, a: Signals, b: Signals) -> tuple[float, list[str]]:
        """Score a pair.

        Returns:
            Tuple of (score 0-100, match reasons)
        """
        w = self.weights
        total = 0.0
        reasons: list[str] = []

        if a.app_id and a.app_id == b.app_id:
            total += w.shared_app_id
            reasons.append("shared app_id")

        if a.email and a.email == b.email:
            total += w.exact_email
            reasons.append("exact email")
        elif a.domain and a.domain == b.domain:
            total += w.email_domain
            reasons.append(f"same email domain ({a.domain})")

        if a.dba and a.dba == b.dba:
            total += w.exact_dba
            reasons.append("exact DBA")
        elif a.dba and b.dba:
            similarity = dba_similarity(a.dba, b.dba)
            if similarity >= self.fuzzy_threshold:
                total += w.fuzzy_dba
                reasons.append(f"similar DBA ({similarity:.0f})")

        if a.zip and a.zip == b.zip:
            total += w.zip
            reasons.append("same zip")

        if a.phone and a.phone == b.phone:
            total += w.phone
            reasons.append("same phone")

        return min(total, 100.0), reasons


# =========================
# Grouping helpers
# =========================


def external_master_rank(record: ExternalLicenseRecord) -> tuple[bool, float]:
    """Sort key picking the master of external duplicates (highest wins).

    Active records win, then the most recently activated.
    """
    activated = record.activate_date.timestamp() if record.activate_date else 0.0
    return (record.status == 1, activated)


class _UnionFind:
    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, i: int, j: int) -> None:
        ri, rj = self.find(i), self.find(j)
        if ri != rj:
            self.parent[max(ri, rj)] = min(ri, rj)

    def groups(self) -> list[list[int]]:
        members: dict[int, list[int]] = defaultdict(list)
        for i in range(len(self.parent)):
            members[self.find(i)].append(i)
        return [sorted(m) for m in members.values() if len(m) > 1]


def _union_overlapping(uf: _UnionFind, indices: list[int], signals: list[Signals]) -> None:
    """Union records whose [start, end] windows overlap (missing bound = open)."""

    def bounds(i: int) -> tuple[float, float]:
        s = signals[i]
        start = s.starts_at.timestamp() if s.starts_at else float("-inf")
        end = s.ends_at.timestamp() if s.ends_at else float("inf")
        return start, end

    ordered = sorted(indices, key=lambda i: bounds(i)[0])
    anchor = ordered[0]
    reach = bounds(anchor)[1]

    for i in ordered[1:]:
        start, end = bounds(i)
        if start <= reach:
            uf.union(anchor, i)
            reach = max(reach, end)
        else:
            anchor, reach = i, end


# =========================
# Detector
# =========================


@dataclass
class DetectionReport:
    """Candidates from one detection run, grouped by routing."""

    candidates: list[DuplicateCandidate] = field(default_factory=list)

    def by_routing(self, routing: DuplicateRouting) -> list[DuplicateCandidate]:
        return [c for c in self.candidates if c.routing == routing]

    @property
    def auto(self) -> list[DuplicateCandidate]:
        return self.by_routing(DuplicateRouting.AUTO_CONSOLIDATE)

    @property
    def review(self) -> list[DuplicateCandidate]:
        return self.by_routing(DuplicateRouting.MANUAL_REVIEW)

    @property
    def discarded(self) -> list[DuplicateCandidate]:
        return self.by_routing(DuplicateRouting.DISCARD)


class DuplicateDetector:
    """Finds and scores duplicate candidates."""

    def __init__(
        self,
        auto_threshold: float = 90.0,
        review_threshold: float = 70.0,
        fuzzy_threshold: float = 85.0,
        weights: ScoringWeights | None = None,
    ):
        """Initialize the detector.

        Args:
            auto_threshold: Scores at or above this are auto-consolidated
            review_threshold: Scores at or above this (and below auto) are
                queued for manual review; lower scores are discarded
            fuzzy_threshold: Minimum token-sort ratio for a fuzzy DBA hit
            weights: Signal weights
        """
        self.auto_threshold = auto_threshold
        self.review_threshold = review_threshold
        self.scorer = DuplicateScorer(weights, fuzzy_threshold)

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "DuplicateDetector":
        return cls(
            auto_threshold=settings.duplicate_auto_threshold,
            review_threshold=settings.duplicate_review_threshold,
            fuzzy_threshold=settings.fuzzy_dba_threshold,
        )

    # -------------------------
    # Routing
    # -------------------------

    def route(self, score: float) -> DuplicateRouting:
        """Threshold routing: auto >= 90, review 70-89, discard < 70."""
        if score >= self.auto_threshold:
            return DuplicateRouting.AUTO_CONSOLIDATE
        if score >= self.review_threshold:
            return DuplicateRouting.MANUAL_REVIEW
        return DuplicateRouting.DISCARD

    def _build_candidate(
        self,
        scope: DuplicateScope,
        master: Signals,
        others: list[Signals],
    ) -> DuplicateCandidate:
        scores = []
        reasons: list[str] = []
        for other in others:
            score, pair_reasons = self.scorer.score(master, other)
            scores.append(score)
            for reason in pair_reasons:
                if reason not in reasons:
                    reasons.append(reason)

        group_score = min(scores)
        candidate = DuplicateCandidate(
            members=[master.ref] + [o.ref for o in others],
            scope=scope,
            confidence_score=group_score,
            match_reasons=reasons,
            routing=self.route(group_score),
        )
        log_duplicate_event(
            scope.value,
            [m.identifier for m in candidate.members],
            group_score,
            candidate.routing.value,
        )
        return candidate

    # -------------------------
    # Passes
    # -------------------------

    def detect_external(
        self, records: list[ExternalLicenseRecord]
    ) -> list[DuplicateCandidate]:
        """Duplicate groups within the external snapshot."""
        signals = [Signals.from_external(r) for r in records]
        uf = _UnionFind(len(signals))

        by_app_id: dict[str, list[int]] = defaultdict(list)
        by_domain_dba: dict[tuple[str, str], list[int]] = defaultdict(list)
        for i, s in enumerate(signals):
            if s.app_id:
                by_app_id[s.app_id].append(i)
            domain = email_domain(s.email)
            if domain and s.dba:
                by_domain_dba[(domain, s.dba)].append(i)

        for indices in by_app_id.values():
            for i in indices[1:]:
                uf.union(indices[0], i)

        for indices in by_domain_dba.values():
            if len(indices) > 1:
                _union_overlapping(uf, indices, signals)

        candidates = []
        for group in uf.groups():
            members = [signals[i] for i in group]
            master = self._external_master([records[i] for i in group], members)
            others = [m for m in members if m is not master]
            candidates.append(
                self._build_candidate(DuplicateScope.EXTERNAL, master, others)
            )
        return candidates

    def _external_master(
        self, records: list[ExternalLicenseRecord], signals: list[Signals]
    ) -> Signals:
        return max(zip(records, signals), key=lambda pair: external_master_rank(pair[0]))[1]

    def detect_internal(
        self, records: list[InternalLicenseRecord]
    ) -> list[DuplicateCandidate]:
        """Duplicate groups within the internal ledger."""
        live = [r for r in records if not r.is_consolidated]
        signals = [Signals.from_internal(r) for r in live]
        uf = _UnionFind(len(signals))

        blocks: dict[str, list[int]] = defaultdict(list)
        for i, s in enumerate(signals):
            key = dba_block_key(s.dba)
            if key:
                blocks[key].append(i)

        for indices in blocks.values():
            for pos, i in enumerate(indices):
                for j in indices[pos + 1:]:
                    if self.scorer.dba_matches(signals[i], signals[j]):
                        uf.union(i, j)

        candidates = []
        for group in uf.groups():
            group_records = [live[i] for i in group]
            app_ids = {r.external_app_id for r in group_records if r.external_app_id}
            if len(app_ids) > 1:
                # Linked to distinct external licenses: not the same license
                logger.debug(
                    "Skipping internal group linked to several external licenses",
                    extra={"app_ids": sorted(app_ids)},
                )
                continue

            master_record = min(
                group_records,
                key=lambda r: (r.external_app_id is None, r.created_at),
            )
            master = signals[live.index(master_record)]
            others = [signals[i] for i in group if live[i] is not master_record]
            candidates.append(
                self._build_candidate(DuplicateScope.INTERNAL, master, others)
            )
        return candidates

    def detect_cross_system(
        self,
        external_records: list[ExternalLicenseRecord],
        internal_records: list[InternalLicenseRecord],
    ) -> list[DuplicateCandidate]:
        """Unmatched external records vs. unlinked internal licenses.

        Each internal license is paired with at most one external record,
        assigned greedily by descending score.
        """
        index = IdentityIndex(internal_records)
        unmatched = [r for r in external_records if not index.has_match(r)]
        unlinked = [
            r for r in internal_records
            if r.external_app_id is None and not r.is_consolidated
        ]
        if not unmatched or not unlinked:
            return []

        internal_signals = [Signals.from_internal(r) for r in unlinked]
        by_block: dict[str, list[int]] = defaultdict(list)
        by_domain: dict[str, list[int]] = defaultdict(list)
        for i, s in enumerate(internal_signals):
            key = dba_block_key(s.dba)
            if key:
                by_block[key].append(i)
            if s.domain:
                by_domain[s.domain].append(i)

        scored: list[tuple[float, int, Signals, list[str]]] = []
        for record in unmatched:
            ext = Signals.from_external(record)
            pool = set(by_block.get(dba_block_key(ext.dba), []))
            if ext.domain:
                pool.update(by_domain.get(ext.domain, []))
            for i in pool:
                score, reasons = self.scorer.score(internal_signals[i], ext)
                if self.route(score) != DuplicateRouting.DISCARD:
                    scored.append((score, i, ext, reasons))

        scored.sort(key=lambda item: item[0], reverse=True)
        claimed_internal: set[int] = set()
        claimed_external: set[str] = set()
        candidates = []
        for score, i, ext, reasons in scored:
            if i in claimed_internal or ext.ref.identifier in claimed_external:
                continue
            claimed_internal.add(i)
            claimed_external.add(ext.ref.identifier)
            candidate = DuplicateCandidate(
                members=[internal_signals[i].ref, ext.ref],
                scope=DuplicateScope.CROSS_SYSTEM,
                confidence_score=score,
                match_reasons=reasons,
                routing=self.route(score),
            )
            log_duplicate_event(
                DuplicateScope.CROSS_SYSTEM.value,
                [m.identifier for m in candidate.members],
                score,
                candidate.routing.value,
            )
            candidates.append(candidate)
        return candidates

    def detect_all(
        self,
        external_records: list[ExternalLicenseRecord],
        internal_records: list[InternalLicenseRecord],
    ) -> DetectionReport:
        """Run all three passes."""
        report = DetectionReport()
        report.candidates.extend(self.detect_external(external_records))
        report.candidates.extend(self.detect_internal(internal_records))
        report.candidates.extend(
            self.detect_cross_system(external_records, internal_records)
        )
        logger.info(
            f"Duplicate detection: {len(report.auto)} auto, "
            f"{len(report.review)} review, {len(report.discarded)} discarded",
            extra={
                "auto": len(report.auto),
                "review": len(report.review),
                "discarded": len(report.discarded),
            },
        )
        return report

    # -------------------------
    # Ad-hoc check
    # -------------------------

    def check(
        self,
        internal_records: list[InternalLicenseRecord],
        dba: str | None = None,
        email: str | None = None,
        zip_code: str | None = None,
        phone: str | None = None,
        threshold: float | None = None,
        limit: int = 20,
    ) -> list[DuplicateMatch]:
        """Rank internal licenses against a probe.

        The confidence of an ad-hoc hit is the share of the probe's
        achievable points that matched, so a probe with only a DBA can
        still reach 100.
        """
        threshold = self.review_threshold if threshold is None else threshold
        w = self.scorer.weights

        probe = Signals(
            ref=EntityRef(system=EntitySystem.INTERNAL, identifier="probe", label=dba),
            email=normalize_email(email),
            domain=business_domain(email),
            dba=normalize_dba(dba),
            zip=normalize_zip(zip_code),
            phone=normalize_phone(phone),
        )
        achievable = (
            (w.exact_email if probe.email else 0.0)
            + (w.exact_dba if probe.dba else 0.0)
            + (w.zip if probe.zip else 0.0)
            + (w.phone if probe.phone else 0.0)
        )
        if achievable == 0:
            return []

        matches = []
        for record in internal_records:
            if record.is_consolidated:
                continue
            raw, reasons = self.scorer.score(probe, Signals.from_internal(record))
            confidence = round(min(raw / achievable * 100.0, 100.0), 1)
            if confidence >= threshold and reasons:
                matches.append(
                    DuplicateMatch(
                        license_id=record.id,
                        key=record.key,
                        dba=record.dba,
                        email=record.contact_email,
                        confidence_score=confidence,
                        match_reasons=reasons,
                    )
                )

        matches.sort(key=lambda m: m.confidence_score, reverse=True)
        return matches[:limit]


class IdentityIndex:
    """In-memory view of the identity matcher over a loaded ledger.

    Used by the cross-system pass to decide which external records already
    have an internal counterpart, without one store query per record.
    """

    def __init__(self, internal_records: list[InternalLicenseRecord]):
        self.by_app_id: dict[str, InternalLicenseRecord] = {}
        self.by_email: dict[str, InternalLicenseRecord] = {}
        self.by_count_id: dict[int, InternalLicenseRecord] = {}
        for record in internal_records:
            if record.is_consolidated:
                continue
            if record.external_app_id:
                self.by_app_id.setdefault(record.external_app_id, record)
            for email in (record.external_email, record.email):
                if email:
                    self.by_email.setdefault(email.lower(), record)
            if record.external_count_id is not None:
                self.by_count_id.setdefault(record.external_count_id, record)

    def has_match(self, record: ExternalLicenseRecord) -> bool:
        if record.app_id and record.app_id in self.by_app_id:
            return True
        for found in (
            self.by_email.get(record.normalized_email or ""),
            self.by_count_id.get(record.count_id) if record.count_id is not None else None,
        ):
            if found is None:
                continue
            if record.app_id and found.external_app_id and found.external_app_id != record.app_id:
                continue
            return True
        return False
