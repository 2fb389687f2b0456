"""Unit tests for wso_attribution.identity_verifier.

The external source is a small in-memory fake; no network access.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from wso_attribution.external_source import (
    HistoryEntry,
    MemberProfile,
    RankingEntry,
    SourceUnavailable,
)
from wso_attribution.identity_verifier import (
    ACCEPTED,
    ACCEPTED_WITHOUT_METADATA,
    UNRESOLVED,
    Candidate,
    Evidence,
    IdentityVerifier,
    VerificationCase,
    case_from_row,
    history_entry_matches,
    ranking_entry_matches,
    profile_consistent,
    tier1_discovery,
    tier1_rankings,
)


class FakeSource:
    """Records calls; answers from dictionaries or raises SourceUnavailable."""

    def __init__(self, rankings=None, profiles=None, rankings_down=False, profiles_down=False):
        self.rankings = rankings if rankings is not None else {}
        self.profiles = profiles or {}
        self.rankings_down = rankings_down
        self.profiles_down = profiles_down
        self.ranking_calls: list[tuple] = []
        self.profile_calls: list[str] = []

    def lookup_rankings(self, age_category, weight_class, meet_date):
        self.ranking_calls.append((age_category, weight_class, meet_date))
        if self.rankings_down:
            raise SourceUnavailable("rankings down")
        return self.rankings.get((age_category, weight_class))

    def fetch_member_profile(self, internal_id):
        self.profile_calls.append(internal_id)
        if self.profiles_down:
            raise SourceUnavailable("profiles down")
        return self.profiles.get(internal_id)


PAUL = Candidate(lifter_id=1, athlete_name="Paul Smith", membership_number="160878", internal_id="55501")
PAUL_TWO = Candidate(lifter_id=2, athlete_name="Paul Smith", membership_number=None, internal_id="77701")


def _case(candidates=(PAUL,), **kw):
    fields = dict(
        result_id=900,
        lifter_id=1,
        lifter_name="Paul Smith",
        meet_id=10,
        meet_name="Spring Open",
        meet_date=date(2024, 5, 4),
        age_category="Open Men's",
        weight_class="89kg",
        total=Decimal("250.0"),
        best_snatch=Decimal("110"),
        best_cj=Decimal("140"),
        gender="M",
        candidates=tuple(candidates),
    )
    fields.update(kw)
    return VerificationCase(**fields)


def _entry(name="Paul Smith", total="250", internal_id="55501", **kw):
    return RankingEntry(athlete_name=name, total=Decimal(total), internal_id=internal_id, **kw)


def _profile(internal_id="55501", entries=(), **kw):
    return MemberProfile(internal_id=internal_id, name=kw.pop("name", "Paul Smith"), history=list(entries), **kw)


# ---------------------------------------------------------------------------
# Matching helpers
# ---------------------------------------------------------------------------

class TestRankingEntryMatches:
    def test_name_and_total(self):
        assert ranking_entry_matches(_entry(), _case())

    def test_total_within_tolerance(self):
        assert ranking_entry_matches(_entry(total="250.1"), _case())

    def test_total_mismatch(self):
        assert not ranking_entry_matches(_entry(total="251"), _case())

    def test_lift_mismatch(self):
        assert not ranking_entry_matches(_entry(best_snatch=Decimal("105")), _case())

    def test_name_mismatch(self):
        assert not ranking_entry_matches(_entry(name="P. Smith"), _case())

    def test_unknown_total_matches_on_name(self):
        assert ranking_entry_matches(_entry(), _case(total=None, best_snatch=None, best_cj=None))

    def test_profile_consistency(self):
        assert profile_consistent(_entry(internal_id="55501"), PAUL)
        assert not profile_consistent(_entry(internal_id="77701"), PAUL)
        assert profile_consistent(_entry(internal_id=None), PAUL)
        assert profile_consistent(_entry(), Candidate(lifter_id=9, athlete_name="Paul Smith"))


class TestHistoryEntryMatches:
    def test_exact_signature_tolerates_date_format(self):
        entry = HistoryEntry("Somewhere Else", date(2024, 5, 4), Decimal("250"))
        assert history_entry_matches(entry, _case())

    def test_value_mismatch_rejected(self):
        entry = HistoryEntry("Spring Open", date(2024, 5, 4), Decimal("249"))
        assert not history_entry_matches(entry, _case())

    def test_same_meet_within_window(self):
        entry = HistoryEntry("Spring  Open", date(2024, 5, 12), Decimal("250"))
        assert history_entry_matches(entry, _case())

    def test_same_meet_outside_window(self):
        entry = HistoryEntry("Spring Open", date(2024, 5, 25), Decimal("250"))
        assert not history_entry_matches(entry, _case())

    def test_online_qualifier_wider_window(self):
        case = _case(meet_name="Virtual Online Qualifier")
        entry = HistoryEntry("Virtual Online Qualifier", date(2024, 5, 30), Decimal("250"))
        assert history_entry_matches(entry, case)


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------

class TestTier1:
    def test_accepts_ranking_match(self):
        source = FakeSource(rankings={("Open Men's", "89kg"): [_entry()]})
        decision = IdentityVerifier(source).verify(_case())
        assert decision.outcome == ACCEPTED
        assert decision.tier == "tier1"
        assert decision.candidate == PAUL
        assert source.profile_calls == []

    def test_skipped_for_duplicate_name(self):
        source = FakeSource(rankings={("Open Men's", "89kg"): [_entry()]})
        evidence = Evidence()
        assert tier1_rankings(_case(candidates=(PAUL, PAUL_TWO)), evidence, source) is None
        assert source.ranking_calls == []

    def test_transport_failure_is_no_evidence(self):
        source = FakeSource(rankings_down=True)
        evidence = Evidence()
        assert tier1_rankings(_case(), evidence, source) is None
        assert evidence.transport_failures == 1

    def test_missing_division_escalates(self):
        source = FakeSource(rankings={})
        evidence = Evidence()
        assert tier1_rankings(_case(), evidence, source) is None
        assert any("division not found" in n for n in evidence.notes)

    def test_other_profile_row_is_not_this_lifter(self):
        # same name and total, but the row belongs to a different profile
        lone = Candidate(lifter_id=1, athlete_name="Paul Smith", internal_id="111")
        source = FakeSource(
            rankings={("Open Men's", "89kg"): [_entry(internal_id="999")]},
            profiles={"111": _profile("111")},
        )
        decision = IdentityVerifier(source).verify(_case(candidates=(lone,)))
        assert decision.outcome == UNRESOLVED
        assert not decision.accepted
        assert source.profile_calls == ["111"]

    def test_skips_foreign_row_for_own_row(self):
        lone = Candidate(lifter_id=1, athlete_name="Paul Smith", internal_id="111")
        rows = [_entry(internal_id="999"), _entry(internal_id="111", wso="Carolina")]
        source = FakeSource(rankings={("Open Men's", "89kg"): rows})
        evidence = Evidence()
        decision = tier1_rankings(_case(candidates=(lone,)), evidence, source)
        assert decision is not None
        assert decision.ranking_entry.internal_id == "111"
        assert any("profile 999" in n for n in evidence.notes)


class TestTier1_5:
    def test_profile_id_narrows_duplicate_name(self):
        source = FakeSource(rankings={("Open Men's", "89kg"): [_entry(internal_id="77701")]})
        decision = IdentityVerifier(source).verify(_case(candidates=(PAUL, PAUL_TWO)))
        assert decision.outcome == ACCEPTED
        assert decision.tier == "tier1.5"
        assert decision.candidate == PAUL_TWO


class TestTier2:
    def test_history_match_with_enrichment(self):
        source = FakeSource(
            rankings={("Open Men's", "89kg"): []},
            profiles={"55501": _profile(entries=[HistoryEntry("Spring Open", date(2024, 5, 4), Decimal("250"))],
                                        membership_number="160878", gender="M")},
        )
        # tier1 finds nothing, tier2 verifies; the enrichment lookup also finds nothing
        decision = IdentityVerifier(source).verify(_case())
        assert decision.tier == "tier2"
        assert decision.outcome == ACCEPTED_WITHOUT_METADATA
        assert decision.metadata["membership_number"] == "160878"

    def test_enrichment_failure_does_not_downgrade(self):
        calls = {"n": 0}

        class FlakySource(FakeSource):
            def lookup_rankings(self, age_category, weight_class, meet_date):
                calls["n"] += 1
                if calls["n"] > 1:
                    raise SourceUnavailable("gone")
                return []

        source = FlakySource(profiles={
            "55501": _profile(entries=[HistoryEntry("Spring Open", date(2024, 5, 4), Decimal("250"))]),
        })
        decision = IdentityVerifier(source).verify(_case())
        assert decision.accepted
        assert decision.outcome == ACCEPTED_WITHOUT_METADATA

    def test_enriched_when_rankings_answer(self):
        entries = iter([[], [_entry()]])

        class SecondTimeLucky(FakeSource):
            def lookup_rankings(self, age_category, weight_class, meet_date):
                return next(entries)

        source = SecondTimeLucky(profiles={
            "55501": _profile(entries=[HistoryEntry("Spring Open", date(2024, 5, 4), Decimal("250"))]),
        })
        decision = IdentityVerifier(source).verify(_case())
        assert decision.outcome == ACCEPTED
        assert decision.tier == "tier2"
        assert decision.ranking_entry is not None

    def test_infers_category_for_unknown(self):
        source = FakeSource(profiles={
            "55501": _profile(entries=[HistoryEntry("Spring Open", date(2024, 5, 4), Decimal("250"))], gender="M"),
        })
        decision = IdentityVerifier(source).verify(_case(age_category="Unknown"))
        assert decision.metadata["inferred_category"] == "Open Men's"
        assert ("Open Men's", "89kg", date(2024, 5, 4)) in source.ranking_calls

    def test_picks_candidate_whose_history_matches(self):
        source = FakeSource(
            rankings={("Open Men's", "89kg"): []},
            profiles={
                "55501": _profile(entries=[HistoryEntry("Other", date(2023, 1, 1), Decimal("200"))]),
                "77701": _profile("77701", entries=[HistoryEntry("Spring Open", date(2024, 5, 4), Decimal("250"))]),
            },
        )
        decision = IdentityVerifier(source).verify(_case(candidates=(PAUL, PAUL_TWO)))
        assert decision.accepted
        assert decision.candidate == PAUL_TWO


class TestDiscoveryAndUnresolved:
    def test_discovery_by_elimination(self):
        lone = Candidate(lifter_id=1, athlete_name="Paul Smith")
        source = FakeSource()
        answers = iter([[], [_entry(internal_id=None)]])
        source.lookup_rankings = lambda c, w, d: next(answers)  # type: ignore[assignment]
        decision = IdentityVerifier(source).verify(_case(candidates=(lone,)))
        assert decision.tier == "tier1-discovery"
        assert decision.candidate == lone

    def test_discovery_rejects_row_with_other_profile(self):
        lone = Candidate(lifter_id=1, athlete_name="Paul Smith", internal_id="111")
        source = FakeSource(rankings={("Open Men's", "89kg"): [_entry(internal_id="999")]})
        assert tier1_discovery(_case(candidates=(lone,)), Evidence(), source) is None

    def test_discovery_elimination_needs_row_without_profile(self):
        # the lone local lifter has no profile id yet; a row naming one is not proof
        lone = Candidate(lifter_id=1, athlete_name="Paul Smith")
        source = FakeSource(rankings={("Open Men's", "89kg"): [_entry(internal_id="999")]})
        assert tier1_discovery(_case(candidates=(lone,)), Evidence(), source) is None

    def test_unresolved_after_all_tiers(self):
        source = FakeSource(rankings={("Open Men's", "89kg"): []}, profiles={})
        decision = IdentityVerifier(source).verify(_case())
        assert decision.outcome == UNRESOLVED
        assert not decision.accepted
        assert "all tiers exhausted" in decision.reason

    def test_transport_failures_reported_not_rejected(self):
        source = FakeSource(rankings_down=True, profiles_down=True)
        decision = IdentityVerifier(source).verify(_case())
        assert decision.outcome == UNRESOLVED
        assert "transport failures" in decision.reason

    def test_custom_strategy_order(self):
        source = FakeSource()
        verifier = IdentityVerifier(source, strategies=[])
        assert verifier.verify(_case()).outcome == UNRESOLVED


class TestCaseFromRow:
    def test_builds_case(self):
        row = {
            "result_id": 5, "lifter_id": 1, "lifter_name": "Paul Smith", "meet_id": 10,
            "meet_name": "Spring Open", "date": "2024-05-04", "age_category": "Open Men's",
            "weight_class": "89kg", "total": Decimal("250"), "body_weight_kg": Decimal("88.2"),
        }
        case = case_from_row(row, [PAUL])
        assert case.meet_date == date(2024, 5, 4)
        assert case.body_weight == Decimal("88.2")
        assert case.candidates == (PAUL,)
        assert not case.has_name_conflict
