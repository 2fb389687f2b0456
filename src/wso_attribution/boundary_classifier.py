"""wso_attribution.boundary_classifier

Point-in-rectangle classification of a coordinate into one administrative
boundary (US state).

Resolution order when rectangles overlap:
  1. border_overrides from the geography config, in file order; the first
     override whose boundaries are all among the matches decides.
  2. nearest rectangle center (Euclidean distance in degrees); ties keep
     the first boundary in config order.
"""

from __future__ import annotations

import logging
import math

from wso_attribution.geography_rules import AdministrativeBoundary, GeographyConfig

log = logging.getLogger(__name__)


def valid_coordinate(lat: float | None, lng: float | None) -> bool:
    if lat is None or lng is None:
        return False
    try:
        return not (math.isnan(float(lat)) or math.isnan(float(lng)))
    except (TypeError, ValueError):
        return False


class BoundaryClassifier:
    """Return the most plausible boundary name for a coordinate, or None."""

    def __init__(self, geography: GeographyConfig) -> None:
        self._geography = geography

    @property
    def geography(self) -> GeographyConfig:
        return self._geography

    def matches(self, lat: float, lng: float) -> list[AdministrativeBoundary]:
        """All boundaries whose rectangle contains the point, in config order."""
        if not valid_coordinate(lat, lng):
            return []
        lat, lng = float(lat), float(lng)
        return [b for b in self._geography.boundaries if b.contains(lat, lng)]

    def classify(self, lat: float | None, lng: float | None) -> str | None:
        if not valid_coordinate(lat, lng):
            return None
        lat, lng = float(lat), float(lng)  # type: ignore[arg-type]
        found = self.matches(lat, lng)
        if not found:
            return None
        if len(found) == 1:
            return found[0].name

        names = {b.name for b in found}
        for override in self._geography.border_overrides:
            if override.applies_to(names):
                winner = override.resolve(lat)
                log.debug("override %r -> %s for (%s, %s)", override.label, winner, lat, lng)
                return winner

        return _nearest_center(found, lat, lng).name


def _nearest_center(
    candidates: list[AdministrativeBoundary],
    lat: float,
    lng: float,
) -> AdministrativeBoundary:
    best = candidates[0]
    best_distance = math.inf
    for b in candidates:
        c_lat, c_lng = b.center
        distance = math.hypot(lat - c_lat, lng - c_lng)
        if distance < best_distance:
            best_distance = distance
            best = b
    return best
