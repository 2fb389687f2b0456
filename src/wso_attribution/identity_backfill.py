"""wso_attribution.identity_backfill

Identity backfill (--mode identity_backfill).

Worklist: meet_results missing any of wso / gender / competition_age /
national_rank (every result with --force), optionally narrowed by meet or
athlete name and capped by --limit. Read with keyset pagination.

With --suspect-lifters the worklist is instead every result of the lifters
that look like several athletes under one id (many results, many clubs or
WSOs, several name spellings); verification then moves each result to the
right identity.

Per result:
  1.  Candidates = lifters whose lowercased name equals the result's name
  2.  IdentityVerifier.verify(case) (network, outside any savepoint)
  3.  Unresolved → skip-list entry, next item
  4.  Accepted, inside SAVEPOINT backfill_<result_id>:
        a. decontamination: verified lifter differs from the current one →
           reassign (uniqueness conflict deletes the redundant result), then
           delete the old lifter if it owns nothing
        b. fill-null-only write-back of ranking metadata onto the result
        c. lifter metadata harvest (internal_id, membership_number) in its
           own nested savepoint; a failure is logged, the decision stands

Dry-run performs every read and verification and logs the would-be writes.

An external source safe stop (too many transport failures in a row) ends the
loop before the current result; what was written so far stays for the
caller to commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator

import psycopg

from wso_attribution.external_source import SourceSafeStop
from wso_attribution.identity_verifier import (
    ACCEPTED_WITHOUT_METADATA,
    UNRESOLVED,
    Candidate,
    IdentityVerifier,
    VerificationDecision,
    case_from_row,
)
from wso_attribution.merge_engine import (
    ACTION_DUPLICATE,
    AthleteIdentity,
    delete_if_orphaned,
    reassign_result,
)
from wso_attribution.normalize import clean_membership_number, gender_from_category, trim
from wso_attribution.session_reporter import SessionReporter

log = logging.getLogger(__name__)

PAGE_SIZE = 1000

RESULT_COLUMNS = [
    "result_id", "meet_id", "lifter_id", "lifter_name", "meet_name", "date",
    "age_category", "weight_class", "body_weight_kg", "best_snatch", "best_cj",
    "total", "gender", "competition_age", "national_rank", "club_name", "wso",
]

# Result columns the write-back may fill; never overwritten once set.
FILLABLE_RESULT_COLUMNS = ("wso", "club_name", "gender", "national_rank", "competition_age")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def iter_incomplete_results(
    conn: psycopg.Connection,
    meet_id: int | None = None,
    athlete: str | None = None,
    force: bool = False,
    page_size: int = PAGE_SIZE,
    lifter_ids: list[int] | None = None,
) -> Iterator[dict[str, Any]]:
    """Yield worklist rows as column → value mappings, page by page.

    lifter_ids, when given, narrows the worklist to those lifters' results.
    """
    columns = ", ".join(RESULT_COLUMNS)
    last_id = -1
    while True:
        rows = conn.execute(
            f"""
            SELECT {columns}
            FROM meet_results
            WHERE result_id > %s
              AND (%s OR wso IS NULL OR wso = '' OR gender IS NULL
                   OR competition_age IS NULL OR national_rank IS NULL)
              AND (%s::bigint IS NULL OR meet_id = %s::bigint)
              AND (%s::text IS NULL OR lower(lifter_name) = lower(%s::text))
              AND (%s::bigint[] IS NULL OR lifter_id = ANY(%s::bigint[]))
            ORDER BY result_id
            LIMIT %s
            """,
            (last_id, force, meet_id, meet_id, athlete, athlete, lifter_ids, lifter_ids, page_size),
        ).fetchall()
        for r in rows:
            yield dict(zip(RESULT_COLUMNS, r))
        if len(rows) < page_size:
            return
        last_id = rows[-1][0]


# Thresholds for a lifter row that probably merges several athletes.
SUSPECT_MIN_RESULTS = 30
SUSPECT_MAX_CLUBS = 3
SUSPECT_MAX_WSOS = 2


@dataclass(frozen=True)
class SuspectLifter:
    lifter_id: int
    athlete_name: str
    result_count: int
    club_count: int
    wso_count: int
    name_count: int
    reasons: tuple[str, ...]


def find_suspect_lifters(
    conn: psycopg.Connection,
    athlete: str | None = None,
    min_results: int = SUSPECT_MIN_RESULTS,
    max_clubs: int = SUSPECT_MAX_CLUBS,
    max_wsos: int = SUSPECT_MAX_WSOS,
) -> list[SuspectLifter]:
    """Lifters whose results look like more than one athlete.

    Flags: at least min_results results, more than max_clubs distinct clubs,
    more than max_wsos distinct WSOs, or results filed under more than one
    spelling of the name.
    """
    rows = conn.execute(
        """
        SELECT r.lifter_id,
               l.athlete_name,
               COUNT(*),
               COUNT(DISTINCT NULLIF(trim(r.club_name), '')),
               COUNT(DISTINCT NULLIF(trim(r.wso), '')),
               COUNT(DISTINCT lower(trim(r.lifter_name)))
        FROM meet_results r
        JOIN lifters l ON l.lifter_id = r.lifter_id
        WHERE (%s::text IS NULL OR lower(l.athlete_name) = lower(%s::text))
        GROUP BY r.lifter_id, l.athlete_name
        HAVING COUNT(*) >= %s
            OR COUNT(DISTINCT NULLIF(trim(r.club_name), '')) > %s
            OR COUNT(DISTINCT NULLIF(trim(r.wso), '')) > %s
            OR COUNT(DISTINCT lower(trim(r.lifter_name))) > 1
        ORDER BY r.lifter_id
        """,
        (athlete, athlete, min_results, max_clubs, max_wsos),
    ).fetchall()

    suspects = []
    for lifter_id, name, results, clubs, wsos, names in rows:
        reasons = []
        if results >= min_results:
            reasons.append(f"{results} results")
        if clubs > max_clubs:
            reasons.append(f"{clubs} clubs")
        if wsos > max_wsos:
            reasons.append(f"{wsos} WSOs")
        if names > 1:
            reasons.append(f"{names} name spellings")
        suspects.append(SuspectLifter(lifter_id, name, results, clubs, wsos, names, tuple(reasons)))
    return suspects


def fetch_candidates(conn: psycopg.Connection, name: str) -> list[Candidate]:
    rows = conn.execute(
        """
        SELECT lifter_id, athlete_name, membership_number, internal_id
        FROM lifters
        WHERE lower(athlete_name) = lower(%s)
        ORDER BY lifter_id
        """,
        (trim(name) or name,),
    ).fetchall()
    return [
        Candidate(r[0], r[1], r[2], str(r[3]) if r[3] is not None else None)
        for r in rows
    ]


# ---------------------------------------------------------------------------
# Write-back
# ---------------------------------------------------------------------------

def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def metadata_updates(row: dict[str, Any], decision: VerificationDecision) -> dict[str, Any]:
    """Columns of the result row to fill from the decision; only blank ones."""
    entry = decision.ranking_entry
    offered: dict[str, Any] = {}
    if entry is not None:
        offered = {
            "wso": trim(entry.wso),
            "club_name": trim(entry.club),
            "gender": entry.gender,
            "national_rank": entry.national_rank,
            "competition_age": entry.lifter_age,
        }
    if _blank(offered.get("gender")):
        offered["gender"] = decision.metadata.get("gender") or gender_from_category(row.get("age_category"))
    return {
        col: offered[col]
        for col in FILLABLE_RESULT_COLUMNS
        if not _blank(offered.get(col)) and _blank(row.get(col))
    }


def apply_result_metadata(
    conn: psycopg.Connection,
    result_id: int,
    updates: dict[str, Any],
) -> bool:
    if not updates:
        return False
    assignments = ", ".join(f"{col} = %s" for col in updates)
    conn.execute(
        f"UPDATE meet_results SET {assignments} WHERE result_id = %s",
        (*updates.values(), result_id),
    )
    return True


def identity_updates(
    current: AthleteIdentity | Candidate,
    decision: VerificationDecision,
) -> dict[str, Any]:
    """Lifter columns to fill when missing: internal_id and membership_number."""
    updates: dict[str, Any] = {}
    entry = decision.ranking_entry
    internal_id = (entry.internal_id if entry else None) or (
        decision.candidate.internal_id if decision.candidate else None
    )
    if not current.internal_id and internal_id:
        updates["internal_id"] = int(internal_id)
    membership = clean_membership_number(
        decision.metadata.get("membership_number") or (entry.membership_number if entry else None)
    )
    if not current.membership_number and membership:
        updates["membership_number"] = membership
    return updates


def harvest_identity_metadata(
    conn: psycopg.Connection,
    lifter_id: int,
    updates: dict[str, Any],
    savepoint: str,
) -> bool:
    """Write lifter metadata in its own savepoint. False (logged) on failure."""
    if not updates:
        return False
    assignments = ", ".join(f"{col} = %s" for col in updates)
    conn.execute(f"SAVEPOINT {savepoint}")
    try:
        conn.execute(
            f"UPDATE lifters SET {assignments} WHERE lifter_id = %s",
            (*updates.values(), lifter_id),
        )
    except psycopg.Error as exc:
        conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
        log.warning("Metadata harvest for lifter %s failed: %s", lifter_id, exc)
        return False
    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
    return True


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

@dataclass
class BackfillStats:
    results_reassigned: int = 0
    duplicates_deleted: int = 0
    lifters_deleted: int = 0
    results_updated: int = 0
    lifters_updated: int = 0
    metadata_failures: int = 0
    suspect_lifters: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _apply_decision(
    conn: psycopg.Connection,
    row: dict[str, Any],
    decision: VerificationDecision,
    stats: BackfillStats,
    dry_run: bool,
) -> int:
    """Decontaminate and write back one accepted result. Returns rows written."""
    result_id = row["result_id"]
    written = 0
    target = decision.candidate
    result_exists = True

    if target is not None and target.lifter_id != row["lifter_id"]:
        if dry_run:
            log.info(
                "result %s: WOULD REASSIGN lifter %s -> %s",
                result_id, row["lifter_id"], target.lifter_id,
            )
        else:
            action = reassign_result(
                conn, result_id,
                AthleteIdentity(target.lifter_id, target.athlete_name, target.membership_number, target.internal_id),
                f"backfill_move_{result_id}",
            )
            if action == ACTION_DUPLICATE:
                stats.duplicates_deleted += 1
                result_exists = False
                log.info("result %s: duplicate of lifter %s result, deleted", result_id, target.lifter_id)
            else:
                stats.results_reassigned += 1
                log.info("result %s: reassigned lifter %s -> %s", result_id, row["lifter_id"], target.lifter_id)
            written += 1
            if delete_if_orphaned(conn, row["lifter_id"]):
                stats.lifters_deleted += 1
                log.info("lifter %s deleted (0 results)", row["lifter_id"])

    if result_exists:
        updates = metadata_updates(row, decision)
        if updates:
            if dry_run:
                log.info("result %s: WOULD UPDATE %s", result_id, sorted(updates))
            elif apply_result_metadata(conn, result_id, updates):
                stats.results_updated += 1
                written += 1

    if target is not None:
        lifter_updates = identity_updates(target, decision)
        if lifter_updates:
            if dry_run:
                log.info("lifter %s: WOULD UPDATE %s", target.lifter_id, sorted(lifter_updates))
            elif harvest_identity_metadata(
                conn, target.lifter_id, lifter_updates, f"backfill_meta_{result_id}"
            ):
                stats.lifters_updated += 1
                written += 1
            else:
                stats.metadata_failures += 1
    return written


def run_identity_backfill(
    conn: psycopg.Connection,
    verifier: IdentityVerifier,
    reporter: SessionReporter,
    dry_run: bool = False,
    meet_id: int | None = None,
    athlete: str | None = None,
    limit: int | None = None,
    force: bool = False,
    suspects_only: bool = False,
) -> BackfillStats:
    """Verify and back-fill every worklist result, one SAVEPOINT per item.

    With suspects_only the worklist is every result (complete or not) of the
    lifters find_suspect_lifters flags. Caller commits or rolls back.
    """
    stats = BackfillStats()
    c = reporter.counters

    lifter_ids = None
    if suspects_only:
        suspects = find_suspect_lifters(conn, athlete=athlete)
        stats.suspect_lifters = len(suspects)
        for s in suspects:
            log.info("suspect lifter %s (%s): %s", s.lifter_id, s.athlete_name, ", ".join(s.reasons))
        if not suspects:
            log.info("no suspect lifters found")
            return stats
        lifter_ids = [s.lifter_id for s in suspects]

    worklist = iter_incomplete_results(
        conn, meet_id=meet_id, athlete=athlete, force=force or suspects_only, lifter_ids=lifter_ids,
    )
    for row in worklist:
        if limit is not None and c.processed >= limit:
            break
        key = f"result:{row['result_id']}"
        if reporter.should_skip(key):
            continue
        case = case_from_row(row, fetch_candidates(conn, row["lifter_name"]))
        try:
            decision = verifier.verify(case)
        except SourceSafeStop as exc:
            log.error("result %s: external source safe stop, ending run: %s", row["result_id"], exc)
            reporter.safe_stop(key, str(exc))
            break
        c.processed += 1
        if not decision.accepted:
            reporter.mark_unresolved(key, UNRESOLVED, decision.reason)
            continue

        sp = f"backfill_{row['result_id']}"
        conn.execute(f"SAVEPOINT {sp}")
        try:
            written = _apply_decision(conn, row, decision, stats, dry_run)
            conn.execute(f"RELEASE SAVEPOINT {sp}")
        except psycopg.Error as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            log.warning("result %s: write failed: %s", row["result_id"], exc)
            reporter.record_error(key, str(exc))
            continue

        c.updated += written
        if decision.outcome == ACCEPTED_WITHOUT_METADATA:
            c.completed_without_metadata += 1
        else:
            c.completed += 1
        log.info(
            "result %s (%s): %s via %s",
            row["result_id"], row["lifter_name"], decision.outcome, decision.tier,
        )

    return stats
