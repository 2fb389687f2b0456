"""wso_attribution.identity_verifier

Tiered identity verification of a result against the external source.

Each tier is a strategy: a function (case, evidence, source) that returns a
VerificationDecision when it settles the case, or None to escalate to the
next tier. Strategies run in order until one decides; when none does the
case is UNRESOLVED. Tiers in DEFAULT_STRATEGIES:

  tier1_rankings   — unambiguous name: division rankings around the meet
                     date, accept on name + consistent total/lifts.
  tier1_5_scoped   — ambiguous name: same lookup, accepted only when the
                     matching ranking row's profile id belongs to exactly
                     one candidate.
  tier2_history    — each candidate's full profile history, accepted on an
                     exact (date, total) signature (or a same-named meet in
                     the date window). Metadata (membership number, gender,
                     inferred category) is harvested, then rankings are
                     re-queried for enrichment; a failed re-query yields
                     ACCEPTED_WITHOUT_METADATA, never a downgrade.
  tier1_discovery  — candidates exist but none verified: rankings once more
                     across the whole candidate set, disambiguating by
                     profile id, or by elimination (one candidate, row
                     without a profile id). A row whose profile id differs
                     from the candidate's own is never a match in tier 1.

SourceUnavailable in any tier counts as "no evidence" and escalates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Callable, Sequence

from wso_attribution.external_source import (
    HistoryEntry,
    MemberProfile,
    ProfileSource,
    RankingEntry,
    SourceUnavailable,
)
from wso_attribution.normalize import (
    is_unknown_category,
    names_match,
    normalize_name,
    open_category_for_gender,
    parse_date,
    result_signature,
    totals_close,
)

log = logging.getLogger(__name__)

# Decision outcomes
ACCEPTED = "accepted"
ACCEPTED_WITHOUT_METADATA = "accepted_without_metadata"
UNRESOLVED = "unresolved"

HISTORY_DATE_WINDOW = timedelta(days=14)
ONLINE_QUALIFIER_DATE_WINDOW = timedelta(days=30)


# ---------------------------------------------------------------------------
# Case / evidence / decision
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Candidate:
    lifter_id: int
    athlete_name: str
    membership_number: str | None = None
    internal_id: str | None = None


@dataclass(frozen=True)
class VerificationCase:
    result_id: int
    lifter_id: int | None
    lifter_name: str
    meet_id: int
    meet_name: str | None
    meet_date: date | None
    age_category: str | None
    weight_class: str | None
    total: Decimal | None = None
    best_snatch: Decimal | None = None
    best_cj: Decimal | None = None
    body_weight: Decimal | None = None
    gender: str | None = None
    candidates: tuple[Candidate, ...] = ()

    @property
    def has_name_conflict(self) -> bool:
        """More than one local identity carries this display name."""
        return len({c.lifter_id for c in self.candidates}) > 1

    def candidate(self, lifter_id: int | None) -> Candidate | None:
        for c in self.candidates:
            if c.lifter_id == lifter_id:
                return c
        return None

    def candidate_by_internal_id(self, internal_id: str | None) -> Candidate | None:
        if internal_id is None:
            return None
        hits = [c for c in self.candidates if c.internal_id == str(internal_id)]
        return hits[0] if len(hits) == 1 else None


@dataclass
class Evidence:
    tiers_attempted: list[str] = field(default_factory=list)
    transport_failures: int = 0
    notes: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class VerificationDecision:
    outcome: str
    tier: str
    candidate: Candidate | None = None
    ranking_entry: RankingEntry | None = None
    history_entry: HistoryEntry | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.outcome in (ACCEPTED, ACCEPTED_WITHOUT_METADATA)


Strategy = Callable[[VerificationCase, Evidence, ProfileSource], "VerificationDecision | None"]


# ---------------------------------------------------------------------------
# Matching helpers
# ---------------------------------------------------------------------------

def ranking_entry_matches(entry: RankingEntry, case: VerificationCase) -> bool:
    """Name equality plus consistent total / lifts where both sides have them."""
    if not names_match(entry.athlete_name, case.lifter_name):
        return False
    if case.total is not None and not totals_close(entry.total, case.total):
        return False
    for mine, theirs in ((case.best_snatch, entry.best_snatch), (case.best_cj, entry.best_cj)):
        if mine is not None and theirs is not None and not totals_close(mine, theirs):
            return False
    return True


def _lookup(
    source: ProfileSource,
    case: VerificationCase,
    evidence: Evidence,
    tier: str,
    age_category: str | None = None,
    meet_date: date | None = None,
) -> list[RankingEntry]:
    category = age_category or case.age_category
    when = meet_date or case.meet_date
    if not category or is_unknown_category(category) or not case.weight_class or when is None:
        evidence.notes.append(f"{tier}: missing category/weight class/date")
        return []
    try:
        entries = source.lookup_rankings(category, case.weight_class, when)
    except SourceUnavailable as exc:
        evidence.transport_failures += 1
        evidence.notes.append(f"{tier}: source unavailable ({exc})")
        return []
    if entries is None:
        evidence.notes.append(f"{tier}: division not found for {category} {case.weight_class}")
        return []
    return [e for e in entries if ranking_entry_matches(e, case)]


def history_entry_matches(entry: HistoryEntry, case: VerificationCase) -> bool:
    """Exact (date, total) signature, or same meet name within the date window.

    Dates are compared after parsing, so '2024-05-04' and 'May 4, 2024' agree;
    totals must be equal.
    """
    target = result_signature(case.meet_date, case.total)
    if target is not None and entry.signature == target:
        return True
    if not case.meet_name or entry.meet_date is None or case.meet_date is None:
        return False
    if normalize_name(entry.meet_name) != normalize_name(case.meet_name):
        return False
    if case.total is not None and entry.total is not None and entry.total != case.total:
        return False
    window = (
        ONLINE_QUALIFIER_DATE_WINDOW
        if "online qualifier" in case.meet_name.lower()
        else HISTORY_DATE_WINDOW
    )
    return abs(entry.meet_date - case.meet_date) <= window


def harvest_metadata(profile: MemberProfile, case: VerificationCase) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    if profile.membership_number:
        meta["membership_number"] = profile.membership_number
    if profile.gender:
        meta["gender"] = profile.gender
    if is_unknown_category(case.age_category):
        inferred = open_category_for_gender(profile.gender)
        if inferred:
            meta["inferred_category"] = inferred
    return meta


def profile_consistent(entry: RankingEntry, candidate: Candidate) -> bool:
    """False when the row and the candidate both carry a profile id and they differ."""
    if entry.internal_id is None or candidate.internal_id is None:
        return True
    return str(entry.internal_id) == str(candidate.internal_id)


def _ordered_candidates(case: VerificationCase) -> list[Candidate]:
    current = [c for c in case.candidates if c.lifter_id == case.lifter_id]
    return current + [c for c in case.candidates if c.lifter_id != case.lifter_id]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def tier1_rankings(case: VerificationCase, evidence: Evidence, source: ProfileSource) -> VerificationDecision | None:
    if case.has_name_conflict:
        evidence.notes.append("tier1: duplicate name, skipped")
        return None
    evidence.tiers_attempted.append("tier1")
    for entry in _lookup(source, case, evidence, "tier1"):
        candidate = (
            case.candidate_by_internal_id(entry.internal_id)
            or case.candidate(case.lifter_id)
            or (case.candidates[0] if len(case.candidates) == 1 else None)
        )
        if candidate is not None and not profile_consistent(entry, candidate):
            evidence.notes.append(
                f"tier1: ranking row profile {entry.internal_id} is not "
                f"lifter {candidate.lifter_id}'s profile {candidate.internal_id}"
            )
            continue
        return VerificationDecision(
            ACCEPTED, "tier1", candidate=candidate, ranking_entry=entry,
            reason="found in division rankings",
        )
    return None


def tier1_5_scoped(case: VerificationCase, evidence: Evidence, source: ProfileSource) -> VerificationDecision | None:
    if not case.has_name_conflict or not any(c.internal_id for c in case.candidates):
        return None
    evidence.tiers_attempted.append("tier1.5")
    for entry in _lookup(source, case, evidence, "tier1.5"):
        candidate = case.candidate_by_internal_id(entry.internal_id)
        if candidate is not None:
            return VerificationDecision(
                ACCEPTED, "tier1.5", candidate=candidate, ranking_entry=entry,
                reason=f"ranking row profile {entry.internal_id} matches one candidate",
            )
    return None


def tier2_history(case: VerificationCase, evidence: Evidence, source: ProfileSource) -> VerificationDecision | None:
    with_profile = [c for c in _ordered_candidates(case) if c.internal_id]
    if not with_profile:
        evidence.notes.append("tier2: no candidate has an external profile id")
        return None
    evidence.tiers_attempted.append("tier2")

    for candidate in with_profile:
        try:
            profile = source.fetch_member_profile(candidate.internal_id)  # type: ignore[arg-type]
        except SourceUnavailable as exc:
            evidence.transport_failures += 1
            evidence.notes.append(f"tier2: profile {candidate.internal_id} unavailable ({exc})")
            continue
        if profile is None:
            evidence.notes.append(f"tier2: profile {candidate.internal_id} not found")
            continue

        hit = next((e for e in profile.history if history_entry_matches(e, case)), None)
        if hit is None:
            continue

        meta = harvest_metadata(profile, case)
        category = meta.get("inferred_category") or case.age_category
        entries = _lookup(
            source, case, evidence, "tier2-enrich",
            age_category=category,
            meet_date=hit.meet_date or case.meet_date,
        )
        enriched = next(
            (e for e in entries if e.internal_id in (None, candidate.internal_id)), None
        )
        log.info(
            "tier2 verified result %s for lifter %s (profile %s)",
            case.result_id, candidate.lifter_id, candidate.internal_id,
        )
        return VerificationDecision(
            ACCEPTED if enriched is not None else ACCEPTED_WITHOUT_METADATA,
            "tier2",
            candidate=candidate,
            ranking_entry=enriched,
            history_entry=hit,
            metadata=meta,
            reason="found in member history",
        )
    return None


def tier1_discovery(case: VerificationCase, evidence: Evidence, source: ProfileSource) -> VerificationDecision | None:
    if not case.candidates:
        return None
    evidence.tiers_attempted.append("tier1-discovery")
    category = case.age_category
    if is_unknown_category(category):
        category = open_category_for_gender(case.gender)
    for entry in _lookup(source, case, evidence, "tier1-discovery", age_category=category):
        candidate = case.candidate_by_internal_id(entry.internal_id)
        # elimination only for rows that carry no profile id of their own
        if candidate is None and len(case.candidates) == 1 and entry.internal_id is None:
            candidate = case.candidates[0]
        if candidate is not None:
            return VerificationDecision(
                ACCEPTED, "tier1-discovery", candidate=candidate, ranking_entry=entry,
                reason="disambiguated via rankings search",
            )
    return None


DEFAULT_STRATEGIES: tuple[Strategy, ...] = (
    tier1_rankings,
    tier1_5_scoped,
    tier2_history,
    tier1_discovery,
)


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

class IdentityVerifier:
    def __init__(
        self,
        source: ProfileSource,
        strategies: Sequence[Strategy] = DEFAULT_STRATEGIES,
    ) -> None:
        self.source = source
        self.strategies = tuple(strategies)

    def verify(self, case: VerificationCase) -> VerificationDecision:
        evidence = Evidence()
        for strategy in self.strategies:
            decision = strategy(case, evidence, self.source)
            if decision is not None:
                return decision
        reason = "all tiers exhausted"
        if evidence.transport_failures:
            reason += f" ({evidence.transport_failures} transport failures)"
        if evidence.notes:
            reason += ": " + "; ".join(evidence.notes[:5])
        return VerificationDecision(UNRESOLVED, "none", reason=reason)


def case_from_row(row: dict[str, Any], candidates: Sequence[Candidate]) -> VerificationCase:
    """Build a VerificationCase from a meet_results row mapping."""
    return VerificationCase(
        result_id=row["result_id"],
        lifter_id=row.get("lifter_id"),
        lifter_name=row["lifter_name"],
        meet_id=row["meet_id"],
        meet_name=row.get("meet_name"),
        meet_date=parse_date(row.get("date")),
        age_category=row.get("age_category"),
        weight_class=row.get("weight_class"),
        total=row.get("total"),
        best_snatch=row.get("best_snatch"),
        best_cj=row.get("best_cj"),
        body_weight=row.get("body_weight_kg"),
        gender=row.get("gender"),
        candidates=tuple(candidates),
    )
