"""wso_attribution.merge_engine

Identity merge and result reassignment (--mode name_merge, and the
reassignment step of identity_backfill).

Conflict groups:
  Lifters sharing a membership_number whose trimmed, lowercased names differ,
  where at least one lifter has an external profile id (internal_id).
  Computed per run, never persisted.

Per group:
  1.  Probe the first member with an internal_id      → NO_INTERNAL_ID
  2.  Fetch the external profile (active name + history)
                                                      → SCRAPE_ERROR / SCRAPE_FAILED
  3.  Keeper = member whose normalized name equals the active name,
      preferring one with an internal_id              → NO_MATCHING_DESTINATION
  4.  Safety check: every nonzero-total (date, total) signature of every
      member's results must appear in the external history
                                                      → HISTORY_MISMATCH (no mutation)
  5.  Transfer internal_id to the keeper if it has none
  6.  For each losing member, repoint each result to the keeper
        UniqueViolation → delete the loser's duplicate result
        other store error → MOVE_ERROR, continue
  7.  Recount: 0 results → delete the loser; otherwise INCOMPLETE_MERGE

Dry-run performs steps 1–4 and every read of 5–7, logs the would-be action
per result, and writes nothing.
An external source safe stop rolls back the current group and ends the run.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable

import psycopg
from psycopg import errors

from wso_attribution.external_source import (
    MemberProfile,
    ProfileSource,
    SourceSafeStop,
    SourceUnavailable,
)
from wso_attribution.normalize import normalize_name, result_signature, trim

log = logging.getLogger(__name__)

# Group outcomes
MERGED = "MERGED"
INCOMPLETE_MERGE = "INCOMPLETE_MERGE"
HISTORY_MISMATCH = "HISTORY_MISMATCH"
NO_MATCHING_DESTINATION = "NO_MATCHING_DESTINATION"
NO_INTERNAL_ID = "NO_INTERNAL_ID"
SCRAPE_ERROR = "SCRAPE_ERROR"
SCRAPE_FAILED = "SCRAPE_FAILED"
NOTHING_TO_MERGE = "NOTHING_TO_MERGE"

# Per-result actions
ACTION_MOVE = "MOVE"
ACTION_DUPLICATE = "DUPLICATE"
ACTION_MOVE_ERROR = "MOVE_ERROR"
ACTION_DELETE_IDENTITY = "DELETE_LIFTER"
ACTION_TRANSFER_INTERNAL_ID = "TRANSFER_INTERNAL_ID"

UNRESOLVED_OUTCOMES = frozenset({
    HISTORY_MISMATCH, NO_MATCHING_DESTINATION, NO_INTERNAL_ID, SCRAPE_ERROR, SCRAPE_FAILED,
    INCOMPLETE_MERGE,
})


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AthleteIdentity:
    lifter_id: int
    athlete_name: str
    membership_number: str | None = None
    internal_id: str | None = None


@dataclass(frozen=True)
class ConflictGroup:
    membership_number: str
    members: tuple[AthleteIdentity, ...]

    @property
    def key(self) -> str:
        return f"group:{self.membership_number}"


@dataclass(frozen=True)
class LocalResult:
    result_id: int
    lifter_id: int
    meet_id: int
    meet_name: str | None
    result_date: date | None
    total: Decimal | None
    weight_class: str | None

    @property
    def signature(self) -> tuple[date, Decimal] | None:
        return result_signature(self.result_date, self.total)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class MergeCounters:
    groups_found: int = 0
    groups_processed: int = 0
    groups_merged: int = 0
    groups_skipped: int = 0
    groups_unresolved: int = 0
    results_moved: int = 0
    duplicates_deleted: int = 0
    identities_deleted: int = 0
    internal_ids_transferred: int = 0
    incomplete_merges: int = 0
    move_errors: int = 0
    db_errors: int = 0
    safe_stop_reason: str | None = None
    outcomes: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def record_outcome(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Merge log (append-only CSV)
# ---------------------------------------------------------------------------

class MergeLog:
    """Lazy-open, append-only CSV logs of merge actions and errors."""

    HEADER_ACTIONS = ["timestamp", "group_member_num", "action", "details"]
    HEADER_ERRORS = ["timestamp", "group_member_num", "error_type", "details"]

    def __init__(self, log_dir: Path | None) -> None:
        self._dir = log_dir
        self.actions: list[tuple[str, str, str]] = []
        self.errors: list[tuple[str, str, str]] = []

    def _append(self, filename: str, header: list[str], row: list[str]) -> None:
        if self._dir is None:
            return
        path = self._dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not path.exists()
        with path.open("a", newline="", encoding="utf-8") as fh:
            w = csv.writer(fh)
            if new_file:
                w.writerow(header)
            w.writerow(row)

    def action(self, group: str, action: str, details: str) -> None:
        self.actions.append((group, action, details))
        log.info("[%s] %s: %s", group, action, details)
        self._append(
            "merger_log.csv", self.HEADER_ACTIONS,
            [datetime.utcnow().isoformat(), group, action, details],
        )

    def error(self, group: str, error_type: str, details: str) -> None:
        self.errors.append((group, error_type, details))
        log.warning("[%s] %s: %s", group, error_type, details)
        self._append(
            "merger_errors.csv", self.HEADER_ERRORS,
            [datetime.utcnow().isoformat(), group, error_type, details],
        )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def _identity(row: tuple) -> AthleteIdentity:
    return AthleteIdentity(
        lifter_id=row[0],
        athlete_name=row[1],
        membership_number=row[2],
        internal_id=str(row[3]) if row[3] is not None else None,
    )


def fetch_identity(conn: psycopg.Connection, lifter_id: int) -> AthleteIdentity | None:
    row = conn.execute(
        "SELECT lifter_id, athlete_name, membership_number, internal_id FROM lifters WHERE lifter_id = %s",
        (lifter_id,),
    ).fetchone()
    return _identity(row) if row else None


def find_conflict_groups(
    conn: psycopg.Connection,
    membership_number: str | None = None,
    athlete: str | None = None,
    limit: int | None = None,
) -> list[ConflictGroup]:
    rows = conn.execute(
        """
        WITH groups AS (
            SELECT membership_number
            FROM lifters
            WHERE membership_number IS NOT NULL AND membership_number <> ''
            GROUP BY membership_number
            HAVING COUNT(DISTINCT lower(trim(athlete_name))) > 1
               AND bool_or(internal_id IS NOT NULL)
        )
        SELECT l.lifter_id, l.athlete_name, l.membership_number, l.internal_id
        FROM lifters l
        JOIN groups g ON g.membership_number = l.membership_number
        WHERE (%s::text IS NULL OR l.membership_number = %s::text)
        ORDER BY l.membership_number, l.lifter_id
        """,
        (membership_number, membership_number),
    ).fetchall()

    grouped: dict[str, list[AthleteIdentity]] = {}
    for r in rows:
        grouped.setdefault(r[2], []).append(_identity(r))

    groups = [ConflictGroup(num, tuple(members)) for num, members in grouped.items()]
    if athlete:
        wanted = normalize_name(athlete)
        groups = [
            g for g in groups
            if any(normalize_name(m.athlete_name) == wanted for m in g.members)
        ]
    if limit is not None:
        groups = groups[:limit]
    return groups


def fetch_local_results(conn: psycopg.Connection, lifter_ids: Iterable[int]) -> list[LocalResult]:
    rows = conn.execute(
        """
        SELECT result_id, lifter_id, meet_id, meet_name, date, total, weight_class
        FROM meet_results
        WHERE lifter_id = ANY(%s)
        ORDER BY date, result_id
        """,
        (list(lifter_ids),),
    ).fetchall()
    return [LocalResult(*r) for r in rows]


def count_results(conn: psycopg.Connection, lifter_id: int) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM meet_results WHERE lifter_id = %s", (lifter_id,)
    ).fetchone()
    return int(row[0])


# ---------------------------------------------------------------------------
# Pure decisions
# ---------------------------------------------------------------------------

def choose_keeper(
    members: Iterable[AthleteIdentity],
    active_name: str | None,
) -> AthleteIdentity | None:
    """Member whose normalized name equals the external active name.

    Among several matches the one carrying an internal_id wins.
    """
    wanted = normalize_name(active_name)
    if wanted is None:
        return None
    matches = [m for m in members if normalize_name(m.athlete_name) == wanted]
    if not matches:
        return None
    with_id = [m for m in matches if m.internal_id]
    return (with_id or matches)[0]


def missing_signatures(
    local: Iterable[LocalResult],
    history_signatures: set[tuple[date, Decimal]],
) -> list[LocalResult]:
    """Local results whose (date, total) is absent from the external history.

    Zero-total results are exempt; results without a date or total cannot
    be proven and count as missing.
    """
    missing: list[LocalResult] = []
    for r in local:
        if r.total is not None and r.total == 0:
            continue
        sig = r.signature
        if sig is None or sig not in history_signatures:
            missing.append(r)
    return missing


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def transfer_internal_id(
    conn: psycopg.Connection,
    keeper: AthleteIdentity,
    donors: Iterable[AthleteIdentity],
    group_key: str,
    merge_log: MergeLog,
    counters: MergeCounters,
    dry_run: bool = False,
) -> AthleteIdentity:
    if keeper.internal_id:
        return keeper
    donor = next((d for d in donors if d.internal_id), None)
    if donor is None:
        return keeper
    merge_log.action(
        group_key, ACTION_TRANSFER_INTERNAL_ID + (" (WOULD UPDATE)" if dry_run else ""),
        f"internal_id {donor.internal_id} from lifter {donor.lifter_id} to lifter {keeper.lifter_id}",
    )
    if not dry_run:
        # internal_id is unique: clear the donor first.
        conn.execute("UPDATE lifters SET internal_id = NULL WHERE lifter_id = %s", (donor.lifter_id,))
        conn.execute(
            "UPDATE lifters SET internal_id = %s WHERE lifter_id = %s",
            (int(donor.internal_id), keeper.lifter_id),
        )
    counters.internal_ids_transferred += 1
    return AthleteIdentity(
        keeper.lifter_id, keeper.athlete_name, keeper.membership_number, donor.internal_id
    )


def reassign_result(
    conn: psycopg.Connection,
    result_id: int,
    target: AthleteIdentity,
    savepoint: str,
) -> str:
    """Repoint one result to target; on a uniqueness conflict delete it instead.

    Returns ACTION_MOVE or ACTION_DUPLICATE. Other store errors propagate
    after rolling back to the savepoint.
    """
    conn.execute(f"SAVEPOINT {savepoint}")
    try:
        conn.execute(
            "UPDATE meet_results SET lifter_id = %s, lifter_name = %s WHERE result_id = %s",
            (target.lifter_id, target.athlete_name, result_id),
        )
    except errors.UniqueViolation:
        conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
        conn.execute("DELETE FROM meet_results WHERE result_id = %s", (result_id,))
        conn.execute(f"RELEASE SAVEPOINT {savepoint}")
        return ACTION_DUPLICATE
    except psycopg.Error:
        conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
        raise
    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
    return ACTION_MOVE


def _would_conflict(conn: psycopg.Connection, result: LocalResult, target: AthleteIdentity) -> bool:
    row = conn.execute(
        """
        SELECT 1 FROM meet_results
        WHERE meet_id = %s AND lifter_id = %s AND weight_class IS NOT DISTINCT FROM %s
        LIMIT 1
        """,
        (result.meet_id, target.lifter_id, result.weight_class),
    ).fetchone()
    return row is not None


def delete_if_orphaned(conn: psycopg.Connection, lifter_id: int) -> bool:
    """Delete the lifter only when no result references it."""
    row = conn.execute(
        """
        DELETE FROM lifters l
        WHERE l.lifter_id = %s
          AND NOT EXISTS (SELECT 1 FROM meet_results r WHERE r.lifter_id = l.lifter_id)
        RETURNING l.lifter_id
        """,
        (lifter_id,),
    ).fetchone()
    return row is not None


def cleanup_phantom(
    conn: psycopg.Connection,
    lifter_id: int,
    group_key: str,
    merge_log: MergeLog,
    counters: MergeCounters,
    dry_run: bool = False,
    expected_remaining: int = 0,
) -> bool:
    """Delete the lifter if it owns no results. Returns True when deleted (or would be).

    In dry-run the recount cannot observe unwritten moves, so the caller
    passes the number of results it would have left behind.
    """
    remaining = expected_remaining if dry_run else count_results(conn, lifter_id)
    if remaining:
        counters.incomplete_merges += 1
        merge_log.error(
            group_key, INCOMPLETE_MERGE,
            f"lifter {lifter_id} still has {remaining} results; not deleted",
        )
        return False
    if dry_run:
        merge_log.action(group_key, ACTION_DELETE_IDENTITY, f"WOULD DELETE lifter {lifter_id} (0 results)")
    else:
        delete_if_orphaned(conn, lifter_id)
        merge_log.action(group_key, ACTION_DELETE_IDENTITY, f"lifter {lifter_id} deleted (0 results)")
    counters.identities_deleted += 1
    return True


def merge_identity(
    conn: psycopg.Connection,
    keeper: AthleteIdentity,
    loser: AthleteIdentity,
    group_key: str,
    merge_log: MergeLog,
    counters: MergeCounters,
    dry_run: bool = False,
) -> str:
    """Move every result of loser onto keeper, then clean up loser.

    Returns MERGED, INCOMPLETE_MERGE, or NOTHING_TO_MERGE when the loser no
    longer exists (a repeated run).
    """
    if fetch_identity(conn, loser.lifter_id) is None:
        return NOTHING_TO_MERGE

    left_behind = 0
    for r in fetch_local_results(conn, [loser.lifter_id]):
        label = f"result {r.result_id} {r.result_date} {r.meet_name} (total {r.total})"
        if dry_run:
            if _would_conflict(conn, r, keeper):
                merge_log.action(group_key, f"{ACTION_DUPLICATE} (WOULD DELETE)", f"{label} conflicts with existing result")
                counters.duplicates_deleted += 1
            else:
                merge_log.action(group_key, f"{ACTION_MOVE} (WOULD UPDATE)", f"{label} -> lifter_id={keeper.lifter_id}")
                counters.results_moved += 1
            continue
        try:
            action = reassign_result(conn, r.result_id, keeper, f"merge_result_{r.result_id}")
        except psycopg.Error as exc:
            counters.move_errors += 1
            left_behind += 1
            merge_log.error(group_key, ACTION_MOVE_ERROR, f"{label}: {exc}")
            continue
        if action == ACTION_DUPLICATE:
            counters.duplicates_deleted += 1
            merge_log.action(group_key, ACTION_DUPLICATE, f"{label} deleted (conflict with existing)")
        else:
            counters.results_moved += 1
            merge_log.action(group_key, ACTION_MOVE, f"{label} -> lifter_id={keeper.lifter_id}")

    deleted = cleanup_phantom(
        conn, loser.lifter_id, group_key, merge_log, counters,
        dry_run=dry_run, expected_remaining=left_behind,
    )
    return MERGED if deleted else INCOMPLETE_MERGE


def resolve_conflict_group(
    conn: psycopg.Connection,
    group: ConflictGroup,
    source: ProfileSource,
    merge_log: MergeLog,
    counters: MergeCounters,
    dry_run: bool = False,
) -> tuple[str, str]:
    """Verify and merge one conflict group. Returns (outcome, details)."""
    key = group.key
    probe = next((m for m in group.members if m.internal_id), None)
    if probe is None:
        return NO_INTERNAL_ID, "no member has an external profile id"

    try:
        profile: MemberProfile | None = source.fetch_member_profile(probe.internal_id)  # type: ignore[arg-type]
    except SourceUnavailable as exc:
        return SCRAPE_ERROR, str(exc)
    if profile is None or not trim(profile.name):
        return SCRAPE_FAILED, f"profile {probe.internal_id} returned no active name"

    keeper = choose_keeper(group.members, profile.name)
    if keeper is None:
        return NO_MATCHING_DESTINATION, f"no member named {profile.name!r}"

    local = fetch_local_results(conn, [m.lifter_id for m in group.members])
    missing = missing_signatures(local, profile.signatures())
    if missing:
        for r in missing[:10]:
            log.warning("[%s] missing in history: %s %s (total %s)", key, r.result_date, r.meet_name, r.total)
        return HISTORY_MISMATCH, (
            f"{len(missing)} local result signatures absent from external history; merge aborted"
        )

    losers = [m for m in group.members if m.lifter_id != keeper.lifter_id]
    keeper = transfer_internal_id(conn, keeper, losers, key, merge_log, counters, dry_run=dry_run)

    outcome = MERGED
    for loser in losers:
        if merge_identity(conn, keeper, loser, key, merge_log, counters, dry_run=dry_run) == INCOMPLETE_MERGE:
            outcome = INCOMPLETE_MERGE
    return outcome, f"kept lifter {keeper.lifter_id} ({keeper.athlete_name})"


def run_conflict_merge(
    conn: psycopg.Connection,
    source: ProfileSource,
    reporter: Any,
    merge_log: MergeLog,
    dry_run: bool = True,
    athlete: str | None = None,
    membership_number: str | None = None,
    limit: int | None = None,
) -> MergeCounters:
    """Resolve every conflict group, one SAVEPOINT per group.

    reporter is a SessionReporter; groups on its skip-list are skipped and
    unresolved outcomes are added to it. Caller commits or rolls back.
    """
    counters = MergeCounters()
    groups = find_conflict_groups(conn, membership_number=membership_number, athlete=athlete)
    counters.groups_found = len(groups)
    processed = 0

    for idx, group in enumerate(groups):
        if limit is not None and processed >= limit:
            break
        if reporter.should_skip(group.key):
            counters.groups_skipped += 1
            continue
        processed += 1
        reporter.counters.processed += 1
        counters.groups_processed += 1

        sp = f"merge_group_{idx}"
        conn.execute(f"SAVEPOINT {sp}")
        try:
            outcome, details = resolve_conflict_group(
                conn, group, source, merge_log, counters, dry_run=dry_run
            )
            conn.execute(f"RELEASE SAVEPOINT {sp}")
        except SourceSafeStop as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            log.error("[%s] external source safe stop, ending run: %s", group.key, exc)
            counters.safe_stop_reason = str(exc)
            counters.warnings.append(f"{group.key}: external source safe stop: {exc}")
            reporter.safe_stop(group.key, str(exc))
            break
        except psycopg.Error as exc:
            conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
            counters.db_errors += 1
            counters.warnings.append(f"{group.key}: {exc}")
            merge_log.error(group.key, "DB_ERROR", str(exc))
            reporter.record_error(group.key, str(exc))
            continue

        counters.record_outcome(outcome)
        if outcome == MERGED:
            counters.groups_merged += 1
            reporter.counters.completed += 1
            merge_log.action(group.key, MERGED, details)
        else:
            counters.groups_unresolved += 1
            counters.warnings.append(f"{group.key}: {outcome}: {details}")
            if outcome != INCOMPLETE_MERGE:
                merge_log.error(group.key, outcome, details)
            reporter.mark_unresolved(group.key, outcome, details)

    return counters


def build_merge_report(counters: MergeCounters, dry_run: bool) -> str:
    lines = [
        "=" * 60,
        "Identity Merge Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  conflict groups found:     {counters.groups_found}",
        f"  groups processed:          {counters.groups_processed}",
        f"  groups merged:             {counters.groups_merged}",
        f"  groups unresolved:         {counters.groups_unresolved}",
        f"  groups skipped:            {counters.groups_skipped}",
        f"  results moved:             {counters.results_moved}",
        f"  duplicates deleted:        {counters.duplicates_deleted}",
        f"  lifters deleted:           {counters.identities_deleted}",
        f"  internal_ids transferred:  {counters.internal_ids_transferred}",
        f"  incomplete merges:         {counters.incomplete_merges}",
        f"  move errors:               {counters.move_errors}",
        f"DB errors:                   {counters.db_errors}",
    ]
    if counters.safe_stop_reason:
        lines.append(f"Stopped early (safe stop):   {counters.safe_stop_reason}")
    if counters.outcomes:
        lines.append("\nOutcomes:")
        for outcome, n in sorted(counters.outcomes.items()):
            lines.append(f"  {outcome}: {n}")
    if counters.warnings:
        lines.append(f"\nWarnings ({len(counters.warnings)}):")
        for w in counters.warnings[:20]:
            lines.append(f"  {w}")
        if len(counters.warnings) > 20:
            lines.append(f"  ... and {len(counters.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
