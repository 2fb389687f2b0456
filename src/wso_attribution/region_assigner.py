"""wso_attribution.region_assigner

Map a competition location to its WSO territory.

Order of evidence:
  1. Textual region field (full boundary name or two-letter abbreviation)
     when it names a known boundary.
  2. BoundaryClassifier on the coordinates.
  3. Territory split (California north/south by latitude) applied last to
     the resolved boundary.

A boundary without a configured territory yields territory=None with
method 'no_territory_mapping'; nothing is defaulted.
"""

from __future__ import annotations

from dataclasses import dataclass

from wso_attribution.boundary_classifier import BoundaryClassifier, valid_coordinate
from wso_attribution.geography_rules import GeographyConfig
from wso_attribution.normalize import normalize_space

# Assignment methods
METHOD_REGION_TEXT = "region_text"
METHOD_COORDINATES = "coordinates"
METHOD_INVALID_COORDINATES = "invalid_coordinates"
METHOD_OUT_OF_BOUNDS = "coordinates_out_of_bounds"
METHOD_NO_MAPPING = "no_territory_mapping"


@dataclass(frozen=True)
class RegionAssignment:
    territory: str | None
    boundary: str | None
    method: str
    reason: str | None = None


@dataclass(frozen=True)
class AssignmentValidation:
    is_valid: bool
    correct_territory: str | None
    boundary: str | None
    reason: str


class RegionAssigner:
    def __init__(
        self,
        geography: GeographyConfig,
        classifier: BoundaryClassifier | None = None,
    ) -> None:
        self._geography = geography
        self._classifier = classifier or BoundaryClassifier(geography)
        self._by_text: dict[str, str] = {}
        for b in geography.boundaries:
            self._by_text[b.name.lower()] = b.name
            if b.abbreviation:
                self._by_text[b.abbreviation.lower()] = b.name

    @property
    def classifier(self) -> BoundaryClassifier:
        return self._classifier

    def boundary_from_text(self, region_text: str | None) -> str | None:
        v = normalize_space(region_text)
        if v is None:
            return None
        return self._by_text.get(v.rstrip(".").lower())

    def territory_for_boundary(self, boundary: str, lat: float | None) -> RegionAssignment:
        split = self._geography.split_for(boundary)
        if split is not None:
            if not valid_coordinate(lat, 0.0):
                return RegionAssignment(
                    None, boundary, METHOD_INVALID_COORDINATES,
                    f"{boundary} is split by latitude but no latitude is available",
                )
            return RegionAssignment(split.resolve(float(lat)), boundary, METHOD_COORDINATES)  # type: ignore[arg-type]

        owners = self._geography.territories_for(boundary)
        if not owners:
            return RegionAssignment(
                None, boundary, METHOD_NO_MAPPING,
                f"Cannot determine correct WSO for state: {boundary}",
            )
        return RegionAssignment(owners[0], boundary, METHOD_COORDINATES)

    def assign(
        self,
        lat: float | None,
        lng: float | None,
        region_text: str | None = None,
    ) -> RegionAssignment:
        boundary = self.boundary_from_text(region_text)
        if boundary is not None:
            result = self.territory_for_boundary(boundary, lat)
            if result.territory is not None:
                return RegionAssignment(result.territory, boundary, METHOD_REGION_TEXT)
            return result

        if not valid_coordinate(lat, lng):
            return RegionAssignment(
                None, None, METHOD_INVALID_COORDINATES, "Invalid or missing coordinates"
            )

        boundary = self._classifier.classify(lat, lng)
        if boundary is None:
            return RegionAssignment(
                None, None, METHOD_OUT_OF_BOUNDS,
                "Coordinates do not fall within any configured boundary",
            )
        return self.territory_for_boundary(boundary, lat)

    def validate_assignment(
        self,
        current_territory: str | None,
        lat: float | None,
        lng: float | None,
        region_text: str | None = None,
    ) -> AssignmentValidation:
        if not current_territory:
            return AssignmentValidation(False, None, None, "Missing WSO assignment")
        assignment = self.assign(lat, lng, region_text)
        if assignment.territory is None:
            return AssignmentValidation(
                False, None, assignment.boundary, assignment.reason or assignment.method
            )
        if assignment.territory == current_territory:
            return AssignmentValidation(True, assignment.territory, assignment.boundary, "Assignment is correct")
        return AssignmentValidation(
            False,
            assignment.territory,
            assignment.boundary,
            f"Should be {assignment.territory} based on location in {assignment.boundary}",
        )
