"""wso_attribution.geography_rules

YAML-based geography configuration for region classification.

Responsibilities:
  - Load and validate the geography YAML (config/geography.yml by default)
  - Expose it as an immutable GeographyConfig injected into
    BoundaryClassifier / RegionAssigner
  - Hash YAML content for traceability in run reports

YAML layout:
    version: "2025.1"
    boundaries:
      - {name: Tennessee, abbreviation: TN, min_lat: .., max_lat: .., min_lng: .., max_lng: ..}
    border_overrides:
      - {label: Johnson City, boundaries: [Tennessee, North Carolina], winner: Tennessee}
      - {label: VA/NC line, boundaries: [Virginia, North Carolina],
         latitude_threshold: 36.55, north: Virginia, south: North Carolina}
    territories:
      Tennessee-Kentucky: [Tennessee, Kentucky]
    territory_splits:
      - {boundary: California, latitude_threshold: 35.5,
         north: California North Central, south: California South}

Usage:
    from pathlib import Path
    from wso_attribution.geography_rules import load_geography

    geography = load_geography(Path("config/geography.yml"))
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_GEOGRAPHY_PATH = Path("config/geography.yml")

REQUIRED_YAML_KEYS = frozenset({"version", "boundaries", "territories"})
REQUIRED_BOUNDARY_KEYS = frozenset({"name", "min_lat", "max_lat", "min_lng", "max_lng"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GeographyValidationError(ValueError):
    """Raised when a geography YAML file fails schema validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AdministrativeBoundary:
    name: str
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float
    abbreviation: str | None = None

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng

    @property
    def center(self) -> tuple[float, float]:
        return ((self.min_lat + self.max_lat) / 2, (self.min_lng + self.max_lng) / 2)


@dataclass(frozen=True)
class BorderOverride:
    """Documented winner for a known overlap between boundaries.

    Either `winner` is set, or `latitude_threshold` with `north` / `south`
    (north wins when lat >= threshold).
    """

    label: str
    boundaries: frozenset[str]
    winner: str | None = None
    latitude_threshold: float | None = None
    north: str | None = None
    south: str | None = None

    def applies_to(self, matches: set[str] | frozenset[str]) -> bool:
        return self.boundaries <= set(matches)

    def resolve(self, lat: float) -> str:
        if self.winner is not None:
            return self.winner
        return self.north if lat >= self.latitude_threshold else self.south  # type: ignore[return-value,operator]


@dataclass(frozen=True)
class TerritorySplit:
    """One boundary divided into two territories by a latitude line."""

    boundary: str
    latitude_threshold: float
    north: str
    south: str

    def resolve(self, lat: float) -> str:
        return self.north if lat >= self.latitude_threshold else self.south


@dataclass(frozen=True)
class GeographyConfig:
    """Parsed, validated, read-only geography loaded from YAML."""

    version: str
    boundaries: tuple[AdministrativeBoundary, ...]
    border_overrides: tuple[BorderOverride, ...]
    territories: Mapping[str, frozenset[str]]
    territory_splits: tuple[TerritorySplit, ...] = ()
    yaml_hash: str = ""
    raw_yaml: str = field(repr=False, default="")

    def boundary(self, name: str) -> AdministrativeBoundary | None:
        for b in self.boundaries:
            if b.name == name:
                return b
        return None

    def split_for(self, boundary_name: str) -> TerritorySplit | None:
        for s in self.territory_splits:
            if s.boundary == boundary_name:
                return s
        return None

    def territories_for(self, boundary_name: str) -> list[str]:
        return sorted(t for t, members in self.territories.items() if boundary_name in members)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_geography(yaml_path: Path = DEFAULT_GEOGRAPHY_PATH) -> GeographyConfig:
    """Load, validate, and return a GeographyConfig from a YAML file.

    Raises:
        GeographyValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = Path(yaml_path).read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    return replace(
        build_geography(data),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        raw_yaml=raw,
    )


def build_geography(data: dict[str, Any]) -> GeographyConfig:
    """Validate an already-parsed mapping and build the immutable config.

    Tests use this directly with fixture geographies.
    """
    validate_geography(data)
    boundaries = tuple(
        AdministrativeBoundary(
            name=str(b["name"]),
            min_lat=float(b["min_lat"]),
            max_lat=float(b["max_lat"]),
            min_lng=float(b["min_lng"]),
            max_lng=float(b["max_lng"]),
            abbreviation=(str(b["abbreviation"]).upper() if b.get("abbreviation") else None),
        )
        for b in data["boundaries"]
    )
    overrides = tuple(
        BorderOverride(
            label=str(o.get("label") or " / ".join(o["boundaries"])),
            boundaries=frozenset(o["boundaries"]),
            winner=o.get("winner"),
            latitude_threshold=(
                float(o["latitude_threshold"]) if o.get("latitude_threshold") is not None else None
            ),
            north=o.get("north"),
            south=o.get("south"),
        )
        for o in (data.get("border_overrides") or [])
    )
    territories = MappingProxyType({
        str(name): frozenset(members) for name, members in data["territories"].items()
    })
    splits = tuple(
        TerritorySplit(
            boundary=s["boundary"],
            latitude_threshold=float(s["latitude_threshold"]),
            north=s["north"],
            south=s["south"],
        )
        for s in (data.get("territory_splits") or [])
    )
    return GeographyConfig(
        version=str(data["version"]),
        boundaries=boundaries,
        border_overrides=overrides,
        territories=territories,
        territory_splits=splits,
    )


def validate_geography(data: dict[str, Any]) -> None:
    """Raise GeographyValidationError if data does not match required schema.

    Validates:
      - Required top-level keys present
      - Boundary rectangles well-formed and names unique
      - Overrides, territories and splits reference known boundaries
      - Each boundary belongs to one territory unless a split covers it
    """
    if not isinstance(data, dict):
        raise GeographyValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise GeographyValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    boundaries = data.get("boundaries") or []
    if not boundaries:
        raise GeographyValidationError("'boundaries' must not be empty.")

    names: set[str] = set()
    for b in boundaries:
        _validate_boundary(b)
        if b["name"] in names:
            raise GeographyValidationError(f"Duplicate boundary name '{b['name']}'.")
        names.add(b["name"])

    for o in data.get("border_overrides") or []:
        _validate_override(o, names)

    territories = data.get("territories") or {}
    if not isinstance(territories, dict) or not territories:
        raise GeographyValidationError("'territories' must be a non-empty mapping.")
    for territory, members in territories.items():
        if not members:
            raise GeographyValidationError(f"Territory '{territory}' has no boundaries.")
        unknown = set(members) - names
        if unknown:
            raise GeographyValidationError(
                f"Territory '{territory}' references unknown boundaries: {sorted(unknown)}"
            )

    split_boundaries: set[str] = set()
    for s in data.get("territory_splits") or []:
        for key in ("boundary", "latitude_threshold", "north", "south"):
            if s.get(key) is None:
                raise GeographyValidationError(f"Territory split missing '{key}': {s}")
        if s["boundary"] not in names:
            raise GeographyValidationError(f"Territory split references unknown boundary '{s['boundary']}'.")
        for side in ("north", "south"):
            if s["boundary"] not in (territories.get(s[side]) or []):
                raise GeographyValidationError(
                    f"Territory split '{s[side]}' must be a territory containing '{s['boundary']}'."
                )
        _numeric(s["latitude_threshold"], "territory_splits.latitude_threshold")
        split_boundaries.add(s["boundary"])

    owners: dict[str, list[str]] = {}
    for territory, members in territories.items():
        for m in members:
            owners.setdefault(m, []).append(territory)
    for boundary_name, owning in owners.items():
        if len(owning) > 1 and boundary_name not in split_boundaries:
            raise GeographyValidationError(
                f"Boundary '{boundary_name}' maps to several territories {sorted(owning)} "
                "without a territory split."
            )


def _numeric(value: Any, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise GeographyValidationError(f"'{label}' value '{value}' is not numeric.")


def _validate_boundary(b: Any) -> None:
    if not isinstance(b, dict):
        raise GeographyValidationError(f"Boundary entry must be a mapping: {b!r}")
    missing = REQUIRED_BOUNDARY_KEYS - set(b.keys())
    if missing:
        raise GeographyValidationError(f"Boundary {b.get('name')!r} missing keys: {sorted(missing)}")
    min_lat = _numeric(b["min_lat"], f"{b['name']}.min_lat")
    max_lat = _numeric(b["max_lat"], f"{b['name']}.max_lat")
    min_lng = _numeric(b["min_lng"], f"{b['name']}.min_lng")
    max_lng = _numeric(b["max_lng"], f"{b['name']}.max_lng")
    if min_lat > max_lat or min_lng > max_lng:
        raise GeographyValidationError(f"Boundary '{b['name']}' has min > max.")
    if not (-90.0 <= min_lat <= 90.0 and -90.0 <= max_lat <= 90.0):
        raise GeographyValidationError(f"Boundary '{b['name']}' latitude outside [-90, 90].")
    if not (-180.0 <= min_lng <= 180.0 and -180.0 <= max_lng <= 180.0):
        raise GeographyValidationError(f"Boundary '{b['name']}' longitude outside [-180, 180].")


def _validate_override(o: Any, names: set[str]) -> None:
    if not isinstance(o, dict) or not o.get("boundaries"):
        raise GeographyValidationError(f"Border override must list 'boundaries': {o!r}")
    pair = set(o["boundaries"])
    if len(pair) < 2:
        raise GeographyValidationError(f"Border override needs at least two boundaries: {o!r}")
    unknown = pair - names
    if unknown:
        raise GeographyValidationError(f"Border override references unknown boundaries: {sorted(unknown)}")
    if o.get("winner") is not None:
        if o["winner"] not in pair:
            raise GeographyValidationError(
                f"Border override winner '{o['winner']}' is not one of {sorted(pair)}."
            )
        return
    if o.get("latitude_threshold") is None or not o.get("north") or not o.get("south"):
        raise GeographyValidationError(
            f"Border override {sorted(pair)} needs 'winner' or 'latitude_threshold' + 'north' + 'south'."
        )
    _numeric(o["latitude_threshold"], "border_overrides.latitude_threshold")
    if o["north"] not in pair or o["south"] not in pair:
        raise GeographyValidationError(
            f"Border override north/south must be members of {sorted(pair)}."
        )
