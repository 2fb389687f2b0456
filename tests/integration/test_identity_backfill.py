"""Integration tests for identity backfill.

Verification runs against an in-memory fake source; writes go to a live DB.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import psycopg

from wso_attribution.external_source import RankingEntry, SourceSafeStop
from wso_attribution.identity_backfill import (
    find_suspect_lifters,
    iter_incomplete_results,
    run_identity_backfill,
)
from wso_attribution.identity_verifier import IdentityVerifier
from wso_attribution.session_reporter import SessionReporter, SkipList


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeSource:
    """Rankings keyed by (age_category, weight_class); no member profiles."""

    def __init__(self, rankings=None) -> None:
        self.rankings = rankings or {}

    def lookup_rankings(self, age_category, weight_class, meet_date):
        return self.rankings.get((age_category, weight_class), [])

    def fetch_member_profile(self, internal_id):
        return None


class StoppingSource(FakeSource):
    """Answers the first `answers` ranking lookups, then gives up for good."""

    def __init__(self, rankings=None, answers=1) -> None:
        super().__init__(rankings)
        self.answers = answers

    def lookup_rankings(self, age_category, weight_class, meet_date):
        if self.answers <= 0:
            raise SourceSafeStop("5 consecutive failures")
        self.answers -= 1
        return super().lookup_rankings(age_category, weight_class, meet_date)


PAUL_RANKING = RankingEntry(
    athlete_name="Paul Smith",
    total=Decimal("250"),
    internal_id="55501",
    membership_number="160878",
    national_rank=3,
    club="Iron Barbell Club",
    wso="Carolina",
    gender="M",
    lifter_age=31,
)


def _source() -> FakeSource:
    return FakeSource({("Open Men's", "89kg"): [PAUL_RANKING]})


def _insert_lifter(conn: psycopg.Connection, lifter_id, name, membership_number=None, internal_id=None) -> None:
    conn.execute(
        """
        INSERT INTO lifters (lifter_id, athlete_name, membership_number, internal_id)
        VALUES (%s, %s, %s, %s)
        """,
        (lifter_id, name, membership_number, internal_id),
    )


def _insert_result(conn: psycopg.Connection, lifter_id, name, total=250, meet_id=10, **extra) -> int:
    cols = {
        "meet_id": meet_id,
        "lifter_id": lifter_id,
        "lifter_name": name,
        "meet_name": "Spring Open",
        "date": date(2024, 5, 4),
        "age_category": "Open Men's",
        "weight_class": "89kg",
        "total": total,
        **extra,
    }
    row = conn.execute(
        f"INSERT INTO meet_results ({', '.join(cols)}) VALUES ({', '.join(['%s'] * len(cols))}) RETURNING result_id",
        tuple(cols.values()),
    ).fetchone()
    return row[0]


def _seed_meet(conn: psycopg.Connection) -> None:
    conn.execute("INSERT INTO meets (meet_id, meet_name, meet_date) VALUES (10, 'Spring Open', '2024-05-04')")
    conn.execute("INSERT INTO meets (meet_id, meet_name, meet_date) VALUES (11, 'Summer Open', '2024-07-04')")


def _result(conn: psycopg.Connection, result_id: int) -> dict:
    cur = conn.execute(
        """
        SELECT lifter_id, wso, club_name, gender, national_rank, competition_age
        FROM meet_results WHERE result_id = %s
        """,
        (result_id,),
    )
    row = cur.fetchone()
    return dict(zip([d.name for d in cur.description], row)) if row else {}


def _run(conn, source, reporter=None, dry_run=False, **kwargs):
    reporter = reporter or SessionReporter(None)
    reporter.start()
    stats = run_identity_backfill(conn, IdentityVerifier(source), reporter, dry_run=dry_run, **kwargs)
    conn.commit()
    return stats, reporter


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

def test_worklist_selects_incomplete_results(db_conn):
    conn, _ = db_conn
    _seed_meet(conn)
    _insert_lifter(conn, 1, "Paul Smith")
    incomplete = _insert_result(conn, 1, "Paul Smith")
    _insert_result(
        conn, 1, "Paul Smith", meet_id=11,
        wso="Carolina", gender="M", competition_age=31, national_rank=3,
    )

    assert [r["result_id"] for r in iter_incomplete_results(conn)] == [incomplete]
    assert len(list(iter_incomplete_results(conn, force=True))) == 2
    assert list(iter_incomplete_results(conn, athlete="nobody")) == []
    assert len(list(iter_incomplete_results(conn, page_size=1, force=True))) == 2


def test_backfill_fills_blank_metadata(db_conn):
    conn, _ = db_conn
    _seed_meet(conn)
    _insert_lifter(conn, 1, "Paul Smith")
    rid = _insert_result(conn, 1, "Paul Smith")

    stats, reporter = _run(conn, _source())

    assert reporter.counters.completed == 1
    assert stats.results_updated == 1
    assert _result(conn, rid) == {
        "lifter_id": 1,
        "wso": "Carolina",
        "club_name": "Iron Barbell Club",
        "gender": "M",
        "national_rank": 3,
        "competition_age": 31,
    }
    lifter = conn.execute("SELECT internal_id, membership_number FROM lifters WHERE lifter_id = 1").fetchone()
    assert lifter == (55501, "160878")


def test_backfill_never_overwrites(db_conn):
    conn, _ = db_conn
    _seed_meet(conn)
    _insert_lifter(conn, 1, "Paul Smith", membership_number="999999")
    rid = _insert_result(conn, 1, "Paul Smith", club_name="Home Gym", gender="M")

    _run(conn, _source())

    row = _result(conn, rid)
    assert row["club_name"] == "Home Gym"
    assert row["wso"] == "Carolina"
    membership = conn.execute("SELECT membership_number FROM lifters WHERE lifter_id = 1").fetchone()[0]
    assert membership == "999999"


def test_decontamination_reassigns_result(db_conn):
    conn, _ = db_conn
    _seed_meet(conn)
    _insert_lifter(conn, 1, "Paul Smith", internal_id=55501)
    _insert_lifter(conn, 2, "Paul Smith", internal_id=77701)
    # attributed to the wrong Paul Smith
    rid = _insert_result(conn, 2, "Paul Smith")

    stats, reporter = _run(conn, _source())

    assert stats.results_reassigned == 1
    assert stats.lifters_deleted == 1
    assert _result(conn, rid)["lifter_id"] == 1
    ids = [r[0] for r in conn.execute("SELECT lifter_id FROM lifters ORDER BY lifter_id").fetchall()]
    assert ids == [1]
    assert reporter.counters.completed == 1


def test_decontamination_conflict_deletes_duplicate(db_conn):
    conn, _ = db_conn
    _seed_meet(conn)
    _insert_lifter(conn, 1, "Paul Smith", internal_id=55501)
    _insert_lifter(conn, 2, "Paul Smith", internal_id=77701)
    keeper_rid = _insert_result(
        conn, 1, "Paul Smith",
        wso="Carolina", gender="M", competition_age=31, national_rank=3,
    )
    dup_rid = _insert_result(conn, 2, "Paul Smith")

    stats, _ = _run(conn, _source())

    assert stats.duplicates_deleted == 1
    assert _result(conn, dup_rid) == {}
    assert _result(conn, keeper_rid)["lifter_id"] == 1
    assert stats.lifters_deleted == 1


def test_unresolved_goes_to_skip_list(db_conn, tmp_path):
    conn, _ = db_conn
    _seed_meet(conn)
    _insert_lifter(conn, 3, "Nobody Known")
    rid = _insert_result(conn, 3, "Nobody Known", total=180)

    path = tmp_path / "skip.json"
    _, reporter = _run(conn, _source(), reporter=SessionReporter(SkipList(path)))

    assert reporter.counters.failed == 1
    assert [e.identifier for e in SkipList(path).entries()] == [f"result:{rid}"]
    assert _result(conn, rid)["wso"] is None

    # a later run skips it
    _, again = _run(conn, _source(), reporter=SessionReporter(SkipList(path)))
    assert again.counters.skipped == 1
    assert again.counters.processed == 0


def test_dry_run_writes_nothing(db_conn, tmp_path):
    conn, _ = db_conn
    _seed_meet(conn)
    _insert_lifter(conn, 1, "Paul Smith", internal_id=55501)
    _insert_lifter(conn, 2, "Paul Smith", internal_id=77701)
    _insert_lifter(conn, 3, "Nobody Known")
    moved = _insert_result(conn, 2, "Paul Smith")
    unknown = _insert_result(conn, 3, "Nobody Known", total=180)
    conn.commit()

    path = tmp_path / "skip.json"
    stats, reporter = _run(
        conn, _source(), reporter=SessionReporter(SkipList(path), persist=False), dry_run=True
    )

    assert reporter.counters.completed == 1
    assert reporter.counters.failed == 1
    assert stats.results_reassigned == 0
    assert _result(conn, moved)["lifter_id"] == 2
    assert _result(conn, moved)["wso"] is None
    assert _result(conn, unknown)["wso"] is None
    assert conn.execute("SELECT COUNT(*) FROM lifters").fetchone()[0] == 3
    assert not path.exists()


def test_limit_and_meet_scope(db_conn):
    conn, _ = db_conn
    _seed_meet(conn)
    _insert_lifter(conn, 1, "Paul Smith")
    _insert_lifter(conn, 4, "Ana Lopez")
    _insert_result(conn, 1, "Paul Smith")
    other = _insert_result(conn, 4, "Ana Lopez", meet_id=11)

    _, reporter = _run(conn, _source(), meet_id=11)
    assert reporter.counters.processed == 1
    assert reporter.counters.failed == 1
    assert reporter.unresolved[0].identifier == f"result:{other}"

    _, limited = _run(conn, _source(), limit=1)
    assert limited.counters.processed == 1


def test_safe_stop_keeps_earlier_work_and_ends_run(db_conn, tmp_path):
    conn, _ = db_conn
    _seed_meet(conn)
    _insert_lifter(conn, 1, "Paul Smith")
    _insert_lifter(conn, 4, "Ana Lopez")
    done = _insert_result(conn, 1, "Paul Smith")
    pending = _insert_result(conn, 4, "Ana Lopez", meet_id=11)
    _insert_result(conn, 4, "Ana Lopez", total=190)

    path = tmp_path / "skip.json"
    source = StoppingSource({("Open Men's", "89kg"): [PAUL_RANKING]}, answers=1)
    stats, reporter = _run(conn, source, reporter=SessionReporter(SkipList(path)))

    assert stats.results_updated == 1
    assert _result(conn, done)["wso"] == "Carolina"
    assert _result(conn, pending)["wso"] is None
    assert reporter.counters.processed == 1
    assert reporter.counters.failed == 0
    assert reporter.counters.safe_stop_reason == "5 consecutive failures"
    # stopped results are retried next run, not skip-listed
    assert not path.exists()


def _seed_merged_lifter(conn: psycopg.Connection) -> dict[str, int]:
    """Lifter 2 carries results from three WSOs, one of them lifter 1's."""
    _seed_meet(conn)
    conn.execute("INSERT INTO meets (meet_id, meet_name, meet_date) VALUES (12, 'Fall Open', '2024-09-14')")
    _insert_lifter(conn, 1, "Paul Smith", internal_id=55501)
    _insert_lifter(conn, 2, "Paul Smith", internal_id=77701)
    return {
        "misfiled": _insert_result(
            conn, 2, "Paul Smith",
            wso="Carolina", gender="M", competition_age=31, national_rank=3,
        ),
        "florida": _insert_result(conn, 2, "Paul Smith", total=180, meet_id=11, wso="Florida"),
        "ohio": _insert_result(conn, 2, "Paul Smith", total=190, meet_id=12, wso="Ohio"),
    }


def test_find_suspect_lifters(db_conn):
    conn, _ = db_conn
    _seed_merged_lifter(conn)

    suspects = find_suspect_lifters(conn)
    assert [(s.lifter_id, s.reasons) for s in suspects] == [(2, ("3 WSOs",))]
    assert suspects[0].result_count == 3

    by_count = find_suspect_lifters(conn, min_results=3, max_wsos=5)
    assert [(s.lifter_id, s.reasons) for s in by_count] == [(2, ("3 results",))]
    assert find_suspect_lifters(conn, athlete="Ana Lopez") == []


def test_worklist_narrowed_to_lifters(db_conn):
    conn, _ = db_conn
    ids = _seed_merged_lifter(conn)
    assert [r["result_id"] for r in iter_incomplete_results(conn, lifter_ids=[2])] == [ids["florida"], ids["ohio"]]
    assert len(list(iter_incomplete_results(conn, lifter_ids=[2], force=True))) == 3
    assert list(iter_incomplete_results(conn, lifter_ids=[1])) == []


def test_suspect_lifters_reverify_complete_results(db_conn):
    conn, _ = db_conn
    ids = _seed_merged_lifter(conn)

    # the normal worklist never looks at the complete, misfiled result
    stats, _ = _run(conn, _source())
    assert stats.results_reassigned == 0
    assert _result(conn, ids["misfiled"])["lifter_id"] == 2

    stats, reporter = _run(conn, _source(), suspects_only=True)
    assert stats.suspect_lifters == 1
    assert stats.results_reassigned == 1
    assert _result(conn, ids["misfiled"])["lifter_id"] == 1
    assert _result(conn, ids["florida"])["lifter_id"] == 2
    assert reporter.counters.processed == 3
    assert reporter.counters.failed == 2
    # lifter 2 still owns results
    assert stats.lifters_deleted == 0


def test_no_suspects_means_empty_worklist(db_conn):
    conn, _ = db_conn
    _seed_meet(conn)
    _insert_lifter(conn, 1, "Paul Smith")
    _insert_result(conn, 1, "Paul Smith")

    stats, reporter = _run(conn, _source(), suspects_only=True)
    assert stats.suspect_lifters == 0
    assert reporter.counters.processed == 0
