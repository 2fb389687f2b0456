"""wso_attribution.contamination_audit

WSO geography contamination audit (--mode wso_audit).

Operations:
  analyze   — scan meets with coordinates + an existing wso_geography,
              classify each as valid / contaminated / unresolvable, and
              build per-territory contamination statistics.
  dry-run   — analyze, then perform every read and affected-row count the
              fix would perform, without writing.
  fix       — analyze, then update meets.wso_geography for each contaminated
              meet and cascade the same value onto meet_results.wso.
  validate  — analyze again and count meet_results whose wso differs from
              their meet's wso_geography.

Pagination: meets are read with keyset pagination (PAGE_SIZE rows per page);
affected-row counts are grouped per meet in chunks of PAGE_SIZE ids.

Processing order per contaminated meet (fix mode):
  SAVEPOINT audit_fix_{idx}
    UPDATE meets SET wso_geography
    UPDATE meet_results SET wso WHERE meet_id
  RELEASE | ROLLBACK TO SAVEPOINT (error recorded, run continues)
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

import psycopg

from wso_attribution.region_assigner import RegionAssigner

log = logging.getLogger(__name__)

PAGE_SIZE = 1000
EXAMPLES_PER_TERRITORY = 3


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompetitionRecord:
    meet_id: int
    meet_name: str
    territory: str | None
    latitude: float | None
    longitude: float | None
    city: str | None = None
    state: str | None = None
    country: str | None = None

    @property
    def location_text(self) -> str:
        return ", ".join(p for p in (self.city, self.state, self.country) if p)


@dataclass(frozen=True)
class ContaminatedMeet:
    meet_id: int
    meet_name: str
    current_territory: str
    correct_territory: str
    boundary: str | None
    latitude: float | None
    longitude: float | None
    location_text: str
    reason: str


@dataclass(frozen=True)
class UnresolvableMeet:
    meet_id: int
    meet_name: str
    current_territory: str | None
    reason: str


@dataclass
class TerritoryStats:
    total_meets: int = 0
    contaminated_meets: int = 0
    contaminated_examples: list[dict[str, Any]] = field(default_factory=list)

    @property
    def contamination_rate(self) -> float:
        if not self.total_meets:
            return 0.0
        return round(self.contaminated_meets / self.total_meets * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_meets": self.total_meets,
            "contaminated_meets": self.contaminated_meets,
            "contamination_rate": self.contamination_rate,
            "contaminated_examples": self.contaminated_examples,
        }


@dataclass
class AuditResult:
    valid: list[CompetitionRecord] = field(default_factory=list)
    contaminated: list[ContaminatedMeet] = field(default_factory=list)
    unresolvable: list[UnresolvableMeet] = field(default_factory=list)
    by_territory: dict[str, TerritoryStats] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.valid) + len(self.contaminated) + len(self.unresolvable)

    @property
    def contamination_rate(self) -> float:
        if not self.total:
            return 0.0
        return round(len(self.contaminated) / self.total * 100, 2)

    def summary(self) -> dict[str, Any]:
        return {
            "total_meets": self.total,
            "contaminated_count": len(self.contaminated),
            "valid_count": len(self.valid),
            "unresolvable_count": len(self.unresolvable),
            "contamination_rate": self.contamination_rate,
        }


@dataclass
class FixOutcome:
    meet_id: int
    meet_name: str
    old_territory: str
    new_territory: str
    affected_results: int = 0
    success: bool = False
    error: str | None = None


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class AuditCounters:
    meets_scanned: int = 0
    meets_valid: int = 0
    meets_contaminated: int = 0
    meets_unresolvable: int = 0
    meets_fixed: int = 0
    meets_fix_failed: int = 0
    results_affected: int = 0
    results_drifted: int = 0
    db_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def iter_competitions(
    conn: psycopg.Connection,
    page_size: int = PAGE_SIZE,
    meet_id: int | None = None,
) -> Iterator[CompetitionRecord]:
    """Yield meets with coordinates and an existing territory, page by page.

    Never relies on a single unpaginated read returning every row.
    """
    last_id = -1
    while True:
        rows = conn.execute(
            """
            SELECT meet_id, meet_name, wso_geography, latitude, longitude,
                   city, state, country
            FROM meets
            WHERE wso_geography IS NOT NULL
              AND latitude IS NOT NULL
              AND longitude IS NOT NULL
              AND meet_id > %s
              AND (%s::bigint IS NULL OR meet_id = %s::bigint)
            ORDER BY meet_id
            LIMIT %s
            """,
            (last_id, meet_id, meet_id, page_size),
        ).fetchall()
        for r in rows:
            yield CompetitionRecord(
                meet_id=r[0],
                meet_name=r[1],
                territory=r[2],
                latitude=float(r[3]) if r[3] is not None else None,
                longitude=float(r[4]) if r[4] is not None else None,
                city=r[5],
                state=r[6],
                country=r[7],
            )
        if len(rows) < page_size:
            return
        last_id = rows[-1][0]


def count_results_by_meet(
    conn: psycopg.Connection,
    meet_ids: list[int],
    chunk_size: int = PAGE_SIZE,
) -> dict[int, int]:
    """Exact meet_results count per meet, chunked to bound query size."""
    counts = {mid: 0 for mid in meet_ids}
    for start in range(0, len(meet_ids), chunk_size):
        chunk = meet_ids[start:start + chunk_size]
        rows = conn.execute(
            """
            SELECT meet_id, COUNT(*)
            FROM meet_results
            WHERE meet_id = ANY(%s)
            GROUP BY meet_id
            """,
            (chunk,),
        ).fetchall()
        for mid, n in rows:
            counts[mid] = int(n)
    return counts


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_competitions(
    records: Iterable[CompetitionRecord],
    assigner: RegionAssigner,
    examples_per_territory: int = EXAMPLES_PER_TERRITORY,
) -> AuditResult:
    """Partition competitions into valid / contaminated / unresolvable.

    Pure: no store access, so analyze, dry-run and fix share identical
    statistics for identical input.
    """
    result = AuditResult()
    for rec in records:
        stats = result.by_territory.setdefault(rec.territory or "", TerritoryStats())
        stats.total_meets += 1

        validation = assigner.validate_assignment(
            rec.territory, rec.latitude, rec.longitude, region_text=rec.state
        )
        if validation.is_valid:
            result.valid.append(rec)
            continue
        if validation.correct_territory is None:
            result.unresolvable.append(
                UnresolvableMeet(rec.meet_id, rec.meet_name, rec.territory, validation.reason)
            )
            continue

        contaminated = ContaminatedMeet(
            meet_id=rec.meet_id,
            meet_name=rec.meet_name,
            current_territory=rec.territory or "",
            correct_territory=validation.correct_territory,
            boundary=validation.boundary,
            latitude=rec.latitude,
            longitude=rec.longitude,
            location_text=rec.location_text,
            reason=validation.reason,
        )
        result.contaminated.append(contaminated)
        stats.contaminated_meets += 1
        if len(stats.contaminated_examples) < examples_per_territory:
            stats.contaminated_examples.append({
                "meet_id": rec.meet_id,
                "meet_name": rec.meet_name,
                "actual_state": validation.boundary,
                "correct_wso": validation.correct_territory,
            })

    # Territories with no contamination are not reported.
    result.by_territory = {
        t: s for t, s in sorted(result.by_territory.items()) if s.contaminated_meets
    }
    return result


def analyze_contamination(
    conn: psycopg.Connection,
    assigner: RegionAssigner,
    counters: AuditCounters,
    meet_id: int | None = None,
    page_size: int = PAGE_SIZE,
) -> AuditResult:
    result = classify_competitions(iter_competitions(conn, page_size, meet_id), assigner)
    counters.meets_scanned = result.total
    counters.meets_valid = len(result.valid)
    counters.meets_contaminated = len(result.contaminated)
    counters.meets_unresolvable = len(result.unresolvable)
    for u in result.unresolvable:
        counters.warnings.append(f"meet {u.meet_id} ({u.meet_name}): unresolvable: {u.reason}")
    log.info(
        "analyzed %d meets: %d contaminated, %d valid, %d unresolvable",
        result.total, len(result.contaminated), len(result.valid), len(result.unresolvable),
    )
    return result


# ---------------------------------------------------------------------------
# Fix / dry-run
# ---------------------------------------------------------------------------

def apply_territory_fixes(
    conn: psycopg.Connection,
    contaminated: list[ContaminatedMeet],
    counters: AuditCounters,
    dry_run: bool = False,
    limit: int | None = None,
) -> list[FixOutcome]:
    """Rewrite territory on contaminated meets and their results.

    Dry-run performs the same reads and counts and reports success for every
    meet it would fix, without writing.
    """
    targets = contaminated[:limit] if limit is not None else contaminated
    counts = count_results_by_meet(conn, [m.meet_id for m in targets])
    outcomes: list[FixOutcome] = []

    for idx, meet in enumerate(targets):
        outcome = FixOutcome(
            meet_id=meet.meet_id,
            meet_name=meet.meet_name,
            old_territory=meet.current_territory,
            new_territory=meet.correct_territory,
            affected_results=counts.get(meet.meet_id, 0),
        )
        if dry_run:
            outcome.success = True
            log.info(
                "would fix meet %s: %s -> %s (%d results)",
                meet.meet_id, meet.current_territory, meet.correct_territory,
                outcome.affected_results,
            )
        else:
            sp = f"audit_fix_{idx}"
            conn.execute(f"SAVEPOINT {sp}")
            try:
                conn.execute(
                    "UPDATE meets SET wso_geography = %s WHERE meet_id = %s",
                    (meet.correct_territory, meet.meet_id),
                )
                conn.execute(
                    "UPDATE meet_results SET wso = %s WHERE meet_id = %s",
                    (meet.correct_territory, meet.meet_id),
                )
                conn.execute(f"RELEASE SAVEPOINT {sp}")
                outcome.success = True
                log.info(
                    "fixed meet %s: %s -> %s (%d results)",
                    meet.meet_id, meet.current_territory, meet.correct_territory,
                    outcome.affected_results,
                )
            except psycopg.Error as exc:
                conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
                outcome.error = str(exc)
                counters.db_errors += 1
                counters.warnings.append(f"fix meet {meet.meet_id} failed: {exc}")
                log.error("failed to fix meet %s: %s", meet.meet_id, exc)

        if outcome.success:
            counters.meets_fixed += 1
            counters.results_affected += outcome.affected_results
        else:
            counters.meets_fix_failed += 1
        outcomes.append(outcome)

    return outcomes


# ---------------------------------------------------------------------------
# Validate
# ---------------------------------------------------------------------------

def count_result_drift(conn: psycopg.Connection, meet_id: int | None = None) -> int:
    """Results whose denormalized wso differs from their meet's wso_geography."""
    row = conn.execute(
        """
        SELECT COUNT(*)
        FROM meet_results r
        JOIN meets m ON m.meet_id = r.meet_id
        WHERE m.wso_geography IS NOT NULL
          AND r.wso IS DISTINCT FROM m.wso_geography
          AND (%s::bigint IS NULL OR m.meet_id = %s::bigint)
        """,
        (meet_id, meet_id),
    ).fetchone()
    return int(row[0]) if row else 0


def validate_fixes(
    conn: psycopg.Connection,
    assigner: RegionAssigner,
    counters: AuditCounters,
    meet_id: int | None = None,
) -> AuditResult:
    result = analyze_contamination(conn, assigner, counters, meet_id=meet_id)
    counters.results_drifted = count_result_drift(conn, meet_id)
    return result


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def build_audit_report(
    result: AuditResult,
    outcomes: list[FixOutcome] | None,
    counters: AuditCounters,
    operation: str,
) -> str:
    lines = [
        "=" * 60,
        "WSO Geography Contamination Report",
        f"  operation: {operation}",
        "=" * 60,
        f"  meets analyzed:        {result.total}",
        f"  contaminated meets:    {len(result.contaminated)}",
        f"  valid assignments:     {len(result.valid)}",
        f"  unresolvable:          {len(result.unresolvable)}",
        f"  contamination rate:    {result.contamination_rate}%",
    ]
    if result.by_territory:
        lines.append("\nContamination by WSO:")
        for territory, stats in result.by_territory.items():
            lines.append(
                f"  {territory}: {stats.contamination_rate}% "
                f"({stats.contaminated_meets}/{stats.total_meets} meets)"
            )
            for ex in stats.contaminated_examples:
                lines.append(
                    f"    - \"{ex['meet_name']}\" in {ex['actual_state']} should be {ex['correct_wso']}"
                )
            hidden = stats.contaminated_meets - len(stats.contaminated_examples)
            if hidden > 0:
                lines.append(f"    ... and {hidden} more")
    if outcomes is not None:
        verb = "would fix" if operation == "dry-run" else "fixed"
        lines += [
            "",
            f"  meets {verb}:  {counters.meets_fixed}",
            f"  fix failures:  {counters.meets_fix_failed}",
            f"  results affected: {counters.results_affected}",
        ]
    if operation == "validate":
        lines.append(f"  results with wso != meet wso_geography: {counters.results_drifted}")
    if counters.warnings:
        lines.append(f"\nWarnings ({len(counters.warnings)}):")
        for w in counters.warnings[:20]:
            lines.append(f"  {w}")
        if len(counters.warnings) > 20:
            lines.append(f"  ... and {len(counters.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def audit_report_dict(
    result: AuditResult,
    outcomes: list[FixOutcome] | None,
    operation: str,
) -> dict[str, Any]:
    return {
        "metadata": {
            "timestamp": datetime.utcnow().isoformat(),
            "operation": operation,
        },
        "summary": result.summary(),
        "contamination_by_wso": {t: s.to_dict() for t, s in result.by_territory.items()},
        "contaminated_meets": [asdict(c) for c in result.contaminated],
        "unresolvable_meets": [asdict(u) for u in result.unresolvable],
        "valid_assignments": len(result.valid),
        "fix_results": [asdict(o) for o in outcomes] if outcomes is not None else None,
        "update_results": _update_totals(outcomes) if outcomes is not None else None,
    }


def _update_totals(outcomes: list[FixOutcome]) -> dict[str, int]:
    ok = [o for o in outcomes if o.success]
    return {
        "meets_updated": len(ok),
        "results_updated": sum(o.affected_results for o in ok),
        "failed": len(outcomes) - len(ok),
    }


def write_audit_report(run_id: str, report: dict[str, Any], report_dir: Path = Path("./artifacts/reports")) -> Path:
    path = report_dir / f"{run_id}_wso_contamination.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report, indent=2, default=str), encoding="utf-8")
    return path
