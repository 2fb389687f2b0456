"""wso_attribution.cli

CLI entrypoint for the record attribution engine.

Modes (--mode):
  wso_audit          — geography contamination audit of meets / results
                       (--analyze default, --dry-run, --fix, --validate)
  identity_backfill  — tiered identity verification + metadata back-fill of
                       incomplete results (--dry-run to write nothing;
                       --suspect-lifters to re-verify likely merged lifters)
  name_merge         — membership-number conflict groups verified against
                       external history, then merged (dry-run unless --fix)

Usage:
    wso-attribution --mode wso_audit --fix --db-dsn "$WSO_DB_DSN"
    wso-attribution --mode identity_backfill --meet-id 7011 --limit 50 \\
        --division-codes-path config/division_codes.json
    wso-attribution --mode name_merge --athlete "Paul Smith" --fix

Exit code 0 whenever the run completes, including per-item failures listed
in the summary; 1 only for setup errors (no DSN, missing or invalid input
files).
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import click
import psycopg

from wso_attribution.geography_rules import (
    DEFAULT_GEOGRAPHY_PATH,
    GeographyValidationError,
    load_geography,
)
from wso_attribution.session_reporter import SessionReporter, SkipList, write_run_report

log = logging.getLogger(__name__)

MODES = ["wso_audit", "identity_backfill", "name_merge"]


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def _fatal(run_id: str, message: str) -> NoReturn:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _audit_operation(analyze: bool, fix: bool, validate: bool, dry_run: bool) -> str:
    if validate:
        return "validate"
    if dry_run:
        return "dry-run"
    if fix:
        return "fix"
    return "analyze"


@click.command()
@click.option("--mode", required=True, type=click.Choice(MODES), help="Engine to run")
@click.option("--db-dsn", envvar="WSO_DB_DSN", default=None, help="PostgreSQL DSN (or WSO_DB_DSN)")
@click.option("--analyze", is_flag=True, default=False, help="[wso_audit] Report contamination only (default)")
@click.option("--fix", is_flag=True, default=False, help="[wso_audit|name_merge] Apply changes")
@click.option("--validate", is_flag=True, default=False, help="[wso_audit] Re-check after a fix, count result drift")
@click.option("--dry-run", is_flag=True, default=False, help="Perform every read, write nothing")
@click.option("--meet-id", default=None, type=int, help="Restrict to one meet")
@click.option("--athlete", default=None, help="[identity_backfill|name_merge] Restrict to one athlete name")
@click.option("--limit", default=None, type=int, help="Max items (results, groups, or meets fixed)")
@click.option("--force", is_flag=True, default=False, help="Ignore the skip-list; backfill complete results too")
@click.option(
    "--suspect-lifters",
    is_flag=True,
    default=False,
    help="[identity_backfill] Re-verify every result of lifters that look like several athletes",
)
@click.option(
    "--geography-file",
    default=str(DEFAULT_GEOGRAPHY_PATH),
    show_default=True,
    type=click.Path(),
    help="[wso_audit] Boundary / territory YAML",
)
@click.option(
    "--division-codes-path",
    default="config/division_codes.json",
    show_default=True,
    type=click.Path(),
    help="[identity_backfill] Division name -> ranking filter code JSON",
)
@click.option(
    "--skip-list-path",
    default="./artifacts/unresolved_skip_list.json",
    show_default=True,
    type=click.Path(),
    help="Persisted unresolved entries",
)
@click.option(
    "--merge-log-dir",
    default="./artifacts/merge_logs",
    show_default=True,
    type=click.Path(),
    help="[name_merge] Directory for merger_log.csv / merger_errors.csv",
)
@click.option("--report-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--base-url", default=None, help="External source base URL")
@click.option("--request-delay-seconds", default=2.0, type=float, show_default=True, help="Base delay between requests")
@click.option("--request-jitter-seconds", default=0.5, type=float, show_default=True, help="Random ±jitter added to each delay")
@click.option("--max-consecutive-failures", default=5, type=int, show_default=True, help="Stop the run after this many source failures in a row")
@click.option("--retry-attempts", default=3, type=int, show_default=True, help="Attempts per fetch on transport failure")
@click.option("--retry-delay-seconds", default=2.0, type=float, show_default=True, help="Fixed delay between attempts")
@click.option("--timeout", default=30, type=int, show_default=True, help="Fetch timeout in seconds")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
def main(
    mode: str,
    db_dsn: str | None,
    analyze: bool,
    fix: bool,
    validate: bool,
    dry_run: bool,
    meet_id: int | None,
    athlete: str | None,
    limit: int | None,
    force: bool,
    suspect_lifters: bool,
    geography_file: str,
    division_codes_path: str,
    skip_list_path: str,
    merge_log_dir: str,
    report_dir: str,
    base_url: str | None,
    request_delay_seconds: float,
    request_jitter_seconds: float,
    max_consecutive_failures: int,
    retry_attempts: int,
    retry_delay_seconds: float,
    timeout: int,
    run_id: str | None,
    log_level: str,
) -> None:
    """Record attribution engine: WSO geography audit, identity backfill, name merge."""
    setup_logging(log_level)
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    if not db_dsn:
        _fatal(run_id, "no database DSN; pass --db-dsn or set WSO_DB_DSN")

    if mode == "wso_audit":
        _run_audit(
            run_id, started_at, db_dsn,  # type: ignore[arg-type]
            operation=_audit_operation(analyze, fix, validate, dry_run),
            geography_file=Path(geography_file),
            meet_id=meet_id,
            limit=limit,
            report_dir=Path(report_dir),
        )
        return

    from wso_attribution.external_source import DEFAULT_BASE_URL, ExternalSource, RateLimiter

    # Merge mode is a dry run unless --fix is given.
    effective_dry_run = dry_run or (mode == "name_merge" and not fix)

    division_codes: dict[str, int] = {}
    if mode == "identity_backfill":
        from wso_attribution.external_source import load_division_codes
        codes_path = Path(division_codes_path)
        if not codes_path.exists():
            _fatal(run_id, f"division codes file not found: {codes_path}")
        try:
            division_codes = load_division_codes(codes_path)
        except ValueError as exc:
            _fatal(run_id, f"invalid division codes file {codes_path}: {exc}")

    reporter = SessionReporter(
        SkipList(Path(skip_list_path)), force=force, persist=not effective_dry_run
    )
    reporter.start()
    rate_limiter = RateLimiter(
        base_delay=request_delay_seconds,
        jitter=request_jitter_seconds,
        max_consecutive_failures=max_consecutive_failures,
    )
    source = ExternalSource(
        base_url=base_url or DEFAULT_BASE_URL,
        division_codes=division_codes,
        rate_limiter=rate_limiter,
        max_attempts=retry_attempts,
        retry_delay=retry_delay_seconds,
        timeout=timeout,
    )

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={effective_dry_run})")
    inputs = {
        "meet_id": meet_id,
        "athlete": athlete,
        "limit": limit,
        "force": force,
        "suspect_lifters": suspect_lifters,
        "skip_list_path": skip_list_path,
    }

    conn = psycopg.connect(db_dsn, autocommit=False)  # type: ignore[arg-type]
    try:
        with source:
            if mode == "identity_backfill":
                from wso_attribution.identity_backfill import run_identity_backfill
                from wso_attribution.identity_verifier import IdentityVerifier

                stats = run_identity_backfill(
                    conn, IdentityVerifier(source), reporter,
                    dry_run=effective_dry_run,
                    meet_id=meet_id,
                    athlete=athlete,
                    limit=limit,
                    force=force,
                    suspects_only=suspect_lifters,
                )
                title = "Identity Backfill Summary"
                details = stats.to_dict()
            else:
                from wso_attribution.merge_engine import MergeLog, build_merge_report, run_conflict_merge

                if meet_id is not None:
                    click.echo(f"[{run_id}] --meet-id is ignored by name_merge")
                merge_counters = run_conflict_merge(
                    conn, source, reporter, MergeLog(Path(merge_log_dir)),
                    dry_run=effective_dry_run,
                    athlete=athlete,
                    limit=limit,
                )
                click.echo(build_merge_report(merge_counters, dry_run=effective_dry_run))
                title = "Identity Merge Summary"
                details = merge_counters.to_dict()
                inputs["merge_log_dir"] = merge_log_dir

        if effective_dry_run:
            conn.rollback()
        else:
            conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    click.echo(reporter.build_summary(title, dry_run=effective_dry_run))
    report_path = write_run_report(
        run_id, started_at, mode, effective_dry_run, inputs,
        {**reporter.to_report(), "details": details, "source": source.counters.to_dict()},
        Path(report_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if source.counters.safe_stop_reason:
        click.echo(
            f"[{run_id}] External source safe stop ({source.counters.safe_stop_reason}); "
            "run ended early, rerun to continue",
            err=True,
        )


def _run_audit(
    run_id: str,
    started_at: str,
    db_dsn: str,
    operation: str,
    geography_file: Path,
    meet_id: int | None,
    limit: int | None,
    report_dir: Path,
) -> None:
    from wso_attribution.contamination_audit import (
        AuditCounters,
        analyze_contamination,
        apply_territory_fixes,
        audit_report_dict,
        build_audit_report,
        validate_fixes,
        write_audit_report,
    )
    from wso_attribution.region_assigner import RegionAssigner

    if not geography_file.exists():
        _fatal(run_id, f"geography file not found: {geography_file}")
    try:
        geography = load_geography(geography_file)
    except GeographyValidationError as exc:
        _fatal(run_id, f"invalid geography file {geography_file}: {exc}")
    assigner = RegionAssigner(geography)

    click.echo(f"[{run_id}] Starting wso_audit run (operation={operation})")
    counters = AuditCounters()
    outcomes = None

    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        if operation == "validate":
            result = validate_fixes(conn, assigner, counters, meet_id=meet_id)
        else:
            result = analyze_contamination(conn, assigner, counters, meet_id=meet_id)
            if operation in ("fix", "dry-run"):
                outcomes = apply_territory_fixes(
                    conn, result.contaminated, counters,
                    dry_run=operation == "dry-run",
                    limit=limit,
                )
        if operation == "fix":
            conn.commit()
        else:
            conn.rollback()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    click.echo(build_audit_report(result, outcomes, counters, operation))
    audit_path = write_audit_report(run_id, audit_report_dict(result, outcomes, operation), report_dir)
    click.echo(f"[{run_id}] Contamination report: {audit_path}")
    report_path = write_run_report(
        run_id, started_at, "wso_audit", operation != "fix",
        {
            "operation": operation,
            "geography_file": str(geography_file),
            "geography_yaml_hash": geography.yaml_hash,
            "meet_id": meet_id,
            "limit": limit,
        },
        counters.to_dict(),
        report_dir,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if counters.db_errors:
        click.echo(f"[{run_id}] {counters.db_errors} DB errors (see report)", err=True)


if __name__ == "__main__":
    main()
