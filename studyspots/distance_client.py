"""Distance Matrix client and response parsing."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import config
from .http import HttpClient, RequestBudget, check_status

Coordinate = Tuple[float, float]


class DistanceMatrixClient:
    def __init__(self, http_client: HttpClient, budget: RequestBudget) -> None:
        self.http = http_client
        self.budget = budget

    def distance_matrix(
        self,
        origin: Coordinate,
        destinations: Sequence[Coordinate],
        mode: str = config.DISTANCE_MODE,
    ) -> Dict[str, Any]:
        if len(destinations) > config.DISTANCE_MATRIX_BATCH_SIZE:
            raise ValueError(
                f"At most {config.DISTANCE_MATRIX_BATCH_SIZE} destinations per call"
            )
        params = build_distance_params(origin, destinations, mode)
        self.budget.consume("distance")
        response = self.http.get_json(config.DISTANCE_MATRIX_URL, params)
        return check_status(response, ("OK",))

    def road_distances_km(
        self, origin: Coordinate, destinations: Sequence[Coordinate]
    ) -> List[Optional[float]]:
        response = self.distance_matrix(origin, destinations)
        return parse_distance_elements(response, expected=len(destinations))


def format_coordinate(coord: Coordinate) -> str:
    return f"{coord[0]},{coord[1]}"


def build_distance_params(
    origin: Coordinate,
    destinations: Sequence[Coordinate],
    mode: str,
) -> Dict[str, Any]:
    return {
        "origins": format_coordinate(origin),
        "destinations": "|".join(format_coordinate(d) for d in destinations),
        "mode": mode,
    }


def parse_distance_elements(response: Dict[str, Any], expected: int) -> List[Optional[float]]:
    """Map each destination element to kilometres, or None when the element is not OK.

    Raises ValueError when the response is malformed or does not cover every destination.
    """
    rows = response.get("rows") or []
    if not isinstance(rows, list):
        raise ValueError("Distance matrix response has malformed rows")
    if not rows or not isinstance(rows[0], dict):
        raise ValueError("Distance matrix response has no rows")
    elements = rows[0].get("elements")
    count = len(elements) if isinstance(elements, list) else 0
    if count != expected:
        raise ValueError(
            f"Distance matrix returned {count} elements for {expected} destinations"
        )

    distances: List[Optional[float]] = []
    for element in elements:
        if not isinstance(element, dict):
            raise ValueError(f"Distance matrix element is a {type(element).__name__}")
        if element.get("status") != "OK":
            distances.append(None)
            continue
        distance = element.get("distance") or {}
        if not isinstance(distance, dict):
            raise ValueError("Distance matrix element has a malformed distance")
        meters = distance.get("value")
        if meters is None:
            distances.append(None)
            continue
        if isinstance(meters, bool) or not isinstance(meters, (int, float)):
            raise ValueError(f"Distance value is not a number: {meters!r}")
        distances.append(float(meters) / 1000.0)
    return distances
