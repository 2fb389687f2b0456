"""Normalization functions shared by the attribution resolvers.

All functions accept str | None (plus already-typed values where noted) and
return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%b %d, %Y",
    "%B %d, %Y",
    "%m/%d/%Y",
    "%d %b %Y",
    "%d %B %Y",
)
_ISO_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ]")
_UNKNOWN_CATEGORIES = frozenset({"", "-", "unknown"})


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_name  (athlete name equality)
# ---------------------------------------------------------------------------

def normalize_name(value: str | None) -> str | None:
    """Lowercase, remove punctuation except spaces, collapse spaces.

    Name matching never goes further than equality of this form: no fuzzy
    scoring, no initials expansion.
    """
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^\w\s]", "", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


def names_match(a: str | None, b: str | None) -> bool:
    na = normalize_name(a)
    return na is not None and na == normalize_name(b)


# ---------------------------------------------------------------------------
# Rule 4: parse_date  (tolerant of the formats both sources emit)
# ---------------------------------------------------------------------------

def parse_date(value: str | date | None) -> date | None:
    """Parse a date from ISO, 'Jul 23, 2025', '07/23/2025' and similar.

    datetime / date inputs pass through (datetime is truncated to its date).
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    v = normalize_space(value)
    if v is None:
        return None
    m = _ISO_PREFIX.match(v)
    if m:
        v = m.group(1)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


# ---------------------------------------------------------------------------
# Rule 5: parse_total
# ---------------------------------------------------------------------------

def parse_total(value: str | int | float | Decimal | None) -> Decimal | None:
    """Parse a kilogram value ('250', '250.0', '250 kg', '1,005') into Decimal."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    v = trim(value)
    if v is None:
        return None
    v = re.sub(r"(?i)\s*kg$", "", v).replace(",", "")
    try:
        return Decimal(v)
    except InvalidOperation:
        return None


def totals_close(a: Decimal | None, b: Decimal | None, tolerance: Decimal = Decimal("0.1")) -> bool:
    if a is None or b is None:
        return False
    return abs(a - b) <= tolerance


# ---------------------------------------------------------------------------
# Rule 6: membership numbers, categories
# ---------------------------------------------------------------------------

def clean_membership_number(value: str | int | None) -> str | None:
    """Keep digits only ('#160878' -> '160878')."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    return digits if digits else None


def is_unknown_category(value: str | None) -> bool:
    return (trim(value) or "").lower() in _UNKNOWN_CATEGORIES


def open_category_for_gender(gender: str | None) -> str | None:
    """'M' -> "Open Men's", 'F' -> "Open Women's"."""
    g = (trim(gender) or "").upper()[:1]
    if g == "M":
        return "Open Men's"
    if g in ("F", "W"):
        return "Open Women's"
    return None


def gender_from_category(category: str | None) -> str | None:
    c = (trim(category) or "").lower()
    if "women" in c or "girls" in c:
        return "F"
    if "men" in c or "boys" in c:
        return "M"
    return None


# ---------------------------------------------------------------------------
# Rule 7: result_signature  (date + total)
# ---------------------------------------------------------------------------

def result_signature(
    value_date: str | date | None,
    total: str | int | float | Decimal | None,
) -> tuple[date, Decimal] | None:
    """Return the (date, total) signature used to compare local and external results.

    Decimal equality makes '250' and '250.0' the same signature.
    """
    d = parse_date(value_date)
    t = parse_total(total)
    if d is None or t is None:
        return None
    return (d, t)
