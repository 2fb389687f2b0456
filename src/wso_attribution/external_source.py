"""wso_attribution.external_source

Authoritative external profile source (Sport80 public rankings).

Design principles:
  - Conservative / polite: exactly one in-flight request, 2s base delay,
    ±0.5s jitter, exponential backoff while failures repeat.
  - One requests.Session per run, opened and closed by the caller through
    the ExternalSource context manager.
  - Transport failures (connection errors, timeouts, 429, 5xx) are retried
    a fixed number of times with a fixed delay, then surface as
    SourceUnavailable. A 404 / empty page is a logical answer, never retried.
  - Safe stop: after max_consecutive_failures failures in a row the source
    raises SourceSafeStop and refuses further requests; runners stop there.

Lookups:
  - rankings: division rankings filtered by date range + division code. The
    filter is a base64-encoded JSON object in the `filters` query parameter.
  - member profile: a member page (active name, membership number, gender)
    plus its paginated competition history (MAX_HISTORY_PAGES cap; a profile
    cut at the cap is logged and counted in SourceCounters.history_truncated).
"""

from __future__ import annotations

import base64
import json
import logging
import random
import re
import time
import urllib.parse
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, NoReturn, Protocol

import requests
from bs4 import BeautifulSoup

from wso_attribution.normalize import (
    clean_membership_number,
    gender_from_category,
    normalize_space,
    parse_date,
    parse_total,
    result_signature,
    trim,
)

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://usaweightlifting.sport80.com"
RANKINGS_PATH = "/public/rankings/all"
MEMBER_PATH = "/public/rankings/member/{internal_id}"
USER_AGENT = "WSO-Attribution/1.0 (results data maintenance)"

MAX_HISTORY_PAGES = 20
RANKING_WINDOW_BEFORE = timedelta(days=3)
RANKING_WINDOW_AFTER = timedelta(days=10)
ACTIVE_DIVISION_CUTOFF = date(2025, 6, 1)
INACTIVE_PREFIX = "(Inactive) "

_MEMBER_ID_RE = re.compile(r"/member/(\d+)")
_MEMBERSHIP_RE = re.compile(r"member(?:ship)?\s*(?:number|no\.?|#)?\s*[:#]?\s*(\d{3,})", re.I)
_GENDER_RE = re.compile(r"gender\s*:?\s*(male|female|m|f)\b", re.I)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SourceUnavailable(Exception):
    """Transport-level failure after retries; means "no evidence", not "disproven"."""


class SourceSafeStop(Exception):
    """Too many transport failures in a row; the run stops, no more requests."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RankingEntry:
    athlete_name: str
    total: Decimal | None = None
    best_snatch: Decimal | None = None
    best_cj: Decimal | None = None
    internal_id: str | None = None
    membership_number: str | None = None
    national_rank: int | None = None
    club: str | None = None
    wso: str | None = None
    gender: str | None = None
    lifter_age: int | None = None
    lift_date: date | None = None


@dataclass(frozen=True)
class HistoryEntry:
    meet_name: str | None
    meet_date: date | None
    total: Decimal | None
    division: str | None = None
    body_weight: Decimal | None = None
    best_snatch: Decimal | None = None
    best_cj: Decimal | None = None

    @property
    def signature(self) -> tuple[date, Decimal] | None:
        return result_signature(self.meet_date, self.total)


@dataclass
class MemberProfile:
    internal_id: str
    name: str | None
    membership_number: str | None = None
    gender: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)

    def signatures(self) -> set[tuple[date, Decimal]]:
        return {e.signature for e in self.history if e.signature is not None}


@dataclass
class SourceCounters:
    requests_made: int = 0
    network_errors: int = 0
    rate_limit_hits: int = 0
    retries: int = 0
    not_found: int = 0
    pages_parsed: int = 0
    history_truncated: int = 0
    safe_stop_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class ProfileSource(Protocol):
    def lookup_rankings(
        self,
        age_category: str,
        weight_class: str,
        meet_date: date,
    ) -> list[RankingEntry] | None: ...

    def fetch_member_profile(self, internal_id: str) -> MemberProfile | None: ...


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

@dataclass
class RateLimiter:
    """One request at a time, spaced base_delay ± jitter seconds apart.

    Each failure in a row doubles the spacing (up to max_backoff times the
    base delay); a success resets it. Once max_consecutive_failures failures
    have happened in a row, on_failure() answers True and the fetch layer
    stops the run.
    """

    base_delay: float = 2.0
    jitter: float = 0.5
    max_consecutive_failures: int = 5
    max_backoff: float = 32.0
    _failures: int = field(default=0, init=False, repr=False)

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def exhausted(self) -> bool:
        return self._failures >= self.max_consecutive_failures

    def next_delay(self) -> float:
        spacing = self.base_delay * min(2.0 ** self._failures, self.max_backoff)
        return max(0.0, spacing + random.uniform(-self.jitter, self.jitter))

    def sleep(self) -> None:
        time.sleep(self.next_delay())

    def on_success(self) -> None:
        self._failures = 0

    def on_failure(self, reason: str = "") -> bool:
        self._failures += 1
        log.debug("source failure %d/%d (%s)", self._failures, self.max_consecutive_failures, reason)
        return self.exhausted


# ---------------------------------------------------------------------------
# Division codes + filter URL
# ---------------------------------------------------------------------------

def load_division_codes(path: Path) -> dict[str, int]:
    """Load the division name -> code JSON mapping.

    Accepts either the bare mapping or one wrapped as {"division_codes": {...}}.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict) and isinstance(data.get("division_codes"), dict):
        data = data["division_codes"]
    if not isinstance(data, dict):
        raise ValueError(f"division codes file must hold a JSON object: {path}")
    return {str(k): int(v) for k, v in data.items()}


def _kg_variant(weight_class: str) -> str:
    if " kg" in weight_class:
        return weight_class.replace(" kg", "kg")
    return weight_class.replace("kg", " kg")


def resolve_division_code(
    codes: dict[str, int],
    age_category: str | None,
    weight_class: str | None,
    meet_date: date | None,
) -> int | None:
    """Division code for '{age_category} {weight_class}'.

    Meets before ACTIVE_DIVISION_CUTOFF prefer the '(Inactive) ' division,
    later meets prefer the active one; the other is the fallback. The
    '56kg' / '56 kg' spacing variant is tried when the exact name is missing.
    """
    category = normalize_space(age_category)
    weight = normalize_space(weight_class)
    if not category or not weight or meet_date is None:
        return None

    active_first = meet_date >= ACTIVE_DIVISION_CUTOFF
    for name in (f"{category} {weight}", f"{category} {_kg_variant(weight)}"):
        ordered = (name, INACTIVE_PREFIX + name) if active_first else (INACTIVE_PREFIX + name, name)
        for key in ordered:
            if key in codes:
                return codes[key]
    return None


def ranking_window(meet_date: date) -> tuple[date, date]:
    return meet_date - RANKING_WINDOW_BEFORE, meet_date + RANKING_WINDOW_AFTER


def build_rankings_url(
    base_url: str,
    division_code: int,
    start: date,
    end: date,
) -> str:
    filters = {
        "date_range_start": start.isoformat(),
        "date_range_end": end.isoformat(),
        "weight_class": division_code,
    }
    encoded = base64.b64encode(json.dumps(filters, separators=(",", ":")).encode("utf-8")).decode("ascii")
    return f"{base_url.rstrip('/')}{RANKINGS_PATH}?filters={urllib.parse.quote(encoded, safe='')}"


def decode_rankings_filter(url: str) -> dict[str, Any]:
    """Inverse of build_rankings_url's filter encoding (for logs and tests)."""
    qs = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
    raw = qs["filters"][0]
    return json.loads(base64.b64decode(raw).decode("utf-8"))


def member_url(base_url: str, internal_id: str, page: int = 1) -> str:
    url = f"{base_url.rstrip('/')}{MEMBER_PATH.format(internal_id=internal_id)}"
    return url if page <= 1 else f"{url}?page={page}"


# ---------------------------------------------------------------------------
# HTML parsing
# ---------------------------------------------------------------------------

def _header_index(headers: list[str], *needles: str, exclude: tuple[str, ...] = ()) -> int | None:
    for i, h in enumerate(headers):
        if any(n in h for n in needles) and not any(x in h for x in exclude):
            return i
    return None


def _cell(cells: list[str], idx: int | None) -> str | None:
    if idx is None or idx >= len(cells):
        return None
    return trim(cells[idx])


def _int_or_none(value: str | None) -> int | None:
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"[^\d]", "", v)
    return int(digits) if digits else None


def _table_rows(soup: BeautifulSoup) -> tuple[list[str], list[Any]]:
    table = soup.find("table")
    if table is None:
        return [], []
    headers = [normalize_space(th.get_text(" ")) or "" for th in table.select("thead th")]
    headers = [h.lower() for h in headers]
    body_rows = table.select("tbody tr") or table.find_all("tr")[1:]
    return headers, body_rows


def parse_rankings_html(html: str) -> list[RankingEntry]:
    """Parse a division rankings table into RankingEntry rows.

    Columns are located by header text; unrecognised tables yield [].
    """
    soup = BeautifulSoup(html, "html.parser")
    headers, rows = _table_rows(soup)
    if not headers:
        return []

    col = {
        "rank": _header_index(headers, "rank"),
        "name": _header_index(headers, "athlete", "lifter", "name", exclude=("age",)),
        "age": _header_index(headers, "lifter age", "comp age", "age", exclude=("category",)),
        "club": _header_index(headers, "club", "team"),
        "date": _header_index(headers, "date"),
        "wso": _header_index(headers, "wso", "lws", "state"),
        "snatch": _header_index(headers, "snatch"),
        "cj": _header_index(headers, "c&j", "clean", "cj"),
        "total": _header_index(headers, "total"),
        "gender": _header_index(headers, "gender"),
        "membership": _header_index(headers, "membership", "member #", "member"),
    }
    if col["name"] is None:
        return []

    entries: list[RankingEntry] = []
    for tr in rows:
        cells = [c.get_text(" ", strip=True) for c in tr.find_all("td")]
        if not cells:
            continue
        name = normalize_space(_cell(cells, col["name"]))
        if not name:
            continue
        link = tr.find("a", href=_MEMBER_ID_RE)
        internal_id = _MEMBER_ID_RE.search(link["href"]).group(1) if link else None
        entries.append(RankingEntry(
            athlete_name=name,
            total=parse_total(_cell(cells, col["total"])),
            best_snatch=parse_total(_cell(cells, col["snatch"])),
            best_cj=parse_total(_cell(cells, col["cj"])),
            internal_id=internal_id or trim(tr.get("data-member-id")),
            membership_number=clean_membership_number(_cell(cells, col["membership"])),
            national_rank=_int_or_none(_cell(cells, col["rank"])),
            club=_cell(cells, col["club"]),
            wso=_cell(cells, col["wso"]),
            gender=(_cell(cells, col["gender"]) or None),
            lifter_age=_int_or_none(_cell(cells, col["age"])),
            lift_date=parse_date(_cell(cells, col["date"])),
        ))
    return entries


def _profile_name(soup: BeautifulSoup) -> str | None:
    for h2 in soup.find_all("h2"):
        text = normalize_space(h2.get_text(" "))
        if text and text.endswith("Results"):
            return normalize_space(text[: -len("Results")])
    for selector in (".v-card__title", ".s80-toolbar-title"):
        el = soup.select_one(selector)
        if el is not None:
            text = normalize_space(el.get_text(" ")) or ""
            text = text.replace(" Back to Rankings", "").replace(" Results", "")
            return normalize_space(text)
    return None


@dataclass
class MemberPage:
    name: str | None
    membership_number: str | None
    gender: str | None
    entries: list[HistoryEntry]
    has_next: bool


def parse_member_page(html: str) -> MemberPage:
    """Parse one page of a member profile: identity header + history rows."""
    soup = BeautifulSoup(html, "html.parser")
    name = _profile_name(soup)
    text = soup.get_text(" ")
    m = _MEMBERSHIP_RE.search(text)
    membership = clean_membership_number(m.group(1)) if m else None
    g = _GENDER_RE.search(text)
    gender = g.group(1)[0].upper() if g else None

    headers, rows = _table_rows(soup)
    col = {
        "meet": _header_index(headers, "meet", "event", "competition"),
        "date": _header_index(headers, "date"),
        "division": _header_index(headers, "division", "category"),
        "bw": _header_index(headers, "body", "bw"),
        "snatch": _header_index(headers, "snatch"),
        "cj": _header_index(headers, "c&j", "clean", "cj"),
        "total": _header_index(headers, "total"),
    }
    # Fallback layout: meet, date, ..., total
    if col["meet"] is None:
        col["meet"] = 0
    if col["date"] is None:
        col["date"] = 1

    entries: list[HistoryEntry] = []
    for tr in rows:
        cells = [c.get_text(" ", strip=True) for c in tr.find_all("td")]
        if len(cells) < 3:
            continue
        raw_date = _cell(cells, col["date"])
        total_idx = col["total"] if col["total"] is not None else len(cells) - 1
        raw_total = _cell(cells, total_idx)
        if not raw_date or raw_total is None or raw_date.lower() == "date":
            continue
        division = _cell(cells, col["division"])
        entries.append(HistoryEntry(
            meet_name=normalize_space(_cell(cells, col["meet"])),
            meet_date=parse_date(raw_date),
            total=parse_total(raw_total),
            division=division,
            body_weight=parse_total(_cell(cells, col["bw"])),
            best_snatch=parse_total(_cell(cells, col["snatch"])),
            best_cj=parse_total(_cell(cells, col["cj"])),
        ))
        if gender is None and division:
            gender = gender_from_category(division)

    has_next = soup.select_one('a[rel="next"]') is not None
    return MemberPage(name, membership, gender, entries, has_next)


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------

def _safe_stop(url: str, counters: SourceCounters, rate_limiter: RateLimiter) -> NoReturn:
    counters.safe_stop_reason = "failed_safe_stop"
    log.error(
        "external source safe stop: %d consecutive failures (last %s)",
        rate_limiter.consecutive_failures, url,
    )
    raise SourceSafeStop(f"{rate_limiter.consecutive_failures} consecutive failures, last {url}")


def _fetch_with_retry(
    session: requests.Session,
    url: str,
    rate_limiter: RateLimiter,
    counters: SourceCounters,
    max_attempts: int = 3,
    retry_delay: float = 2.0,
    timeout: int = 30,
) -> requests.Response:
    """GET url politely; retry only transport failures.

    Returns the response for any non-retryable status (including 404).
    Raises SourceUnavailable once attempts are exhausted, SourceSafeStop as
    soon as the rate limiter has seen too many failures in a row.
    """
    last_reason = ""
    for attempt in range(max_attempts):
        if attempt > 0:
            counters.retries += 1
            time.sleep(retry_delay)
        rate_limiter.sleep()

        counters.requests_made += 1
        try:
            resp = session.get(url, timeout=timeout)
        except requests.RequestException as exc:
            counters.network_errors += 1
            last_reason = f"network error: {exc}"
            log.warning("fetch %s attempt %d failed: %s", url, attempt + 1, exc)
            if rate_limiter.on_failure("transport"):
                _safe_stop(url, counters, rate_limiter)
            continue

        if resp.status_code == 429 or resp.status_code >= 500:
            counters.rate_limit_hits += 1
            last_reason = f"HTTP {resp.status_code}"
            log.warning("fetch %s attempt %d returned %s", url, attempt + 1, resp.status_code)
            if rate_limiter.on_failure(str(resp.status_code)):
                _safe_stop(url, counters, rate_limiter)
            continue

        rate_limiter.on_success()
        return resp

    raise SourceUnavailable(f"{url}: {last_reason} after {max_attempts} attempts")


class ExternalSource:
    """Scoped handle on the external source: one HTTP session per run.

    Usage:
        with ExternalSource(division_codes=codes) as source:
            entries = source.lookup_rankings("Open Men's", "89kg", date(2024, 5, 4))
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        division_codes: dict[str, int] | None = None,
        rate_limiter: RateLimiter | None = None,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        timeout: int = 30,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url
        self.division_codes = division_codes or {}
        self.rate_limiter = rate_limiter or RateLimiter()
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.counters = SourceCounters()
        self._session = session
        self._owns_session = session is None

    # -- lifecycle --------------------------------------------------------

    def open(self) -> "ExternalSource":
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"User-Agent": USER_AGENT})
            self._owns_session = True
        return self

    def close(self) -> None:
        if self._session is not None and self._owns_session:
            self._session.close()
        self._session = None

    def __enter__(self) -> "ExternalSource":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _get(self, url: str) -> requests.Response:
        if self._session is None:
            raise RuntimeError("ExternalSource is not open")
        if self.counters.safe_stop_reason:
            raise SourceSafeStop(f"source stopped ({self.counters.safe_stop_reason})")
        return _fetch_with_retry(
            self._session, url, self.rate_limiter, self.counters,
            max_attempts=self.max_attempts,
            retry_delay=self.retry_delay,
            timeout=self.timeout,
        )

    # -- lookups ----------------------------------------------------------

    def lookup_rankings(
        self,
        age_category: str,
        weight_class: str,
        meet_date: date,
    ) -> list[RankingEntry] | None:
        """Division rankings around meet_date, or None if the division is unknown."""
        code = resolve_division_code(self.division_codes, age_category, weight_class, meet_date)
        if code is None:
            log.info("no division code for %r %r", age_category, weight_class)
            return None
        start, end = ranking_window(meet_date)
        resp = self._get(build_rankings_url(self.base_url, code, start, end))
        if resp.status_code != 200:
            self.counters.not_found += 1
            return []
        self.counters.pages_parsed += 1
        return parse_rankings_html(resp.text)

    def fetch_member_profile(self, internal_id: str) -> MemberProfile | None:
        """Member profile with full history, or None when the profile is missing."""
        profile: MemberProfile | None = None
        seen: set[tuple[Any, ...]] = set()
        for page in range(1, MAX_HISTORY_PAGES + 1):
            resp = self._get(member_url(self.base_url, str(internal_id), page))
            if resp.status_code != 200:
                if profile is None:
                    self.counters.not_found += 1
                    return None
                break
            parsed = parse_member_page(resp.text)
            self.counters.pages_parsed += 1
            if profile is None:
                if not parsed.name:
                    return None
                profile = MemberProfile(
                    internal_id=str(internal_id),
                    name=parsed.name,
                    membership_number=parsed.membership_number,
                    gender=parsed.gender,
                )
            new_rows = [
                e for e in parsed.entries
                if (e.meet_name, e.meet_date, e.total) not in seen
            ]
            for e in new_rows:
                seen.add((e.meet_name, e.meet_date, e.total))
            profile.history.extend(new_rows)
            if not parsed.has_next or not new_rows:
                break
        else:
            self.counters.history_truncated += 1
            log.warning(
                "profile %s: history cut at %d pages, later pages not read",
                internal_id, MAX_HISTORY_PAGES,
            )
        return profile
