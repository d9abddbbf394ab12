"""Query and StudySpot records shared by the pipeline, CLI and server."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from . import config


class InvalidQueryError(ValueError):
    pass


@dataclass(frozen=True)
class Query:
    lat: float
    lng: float
    max_distance_km: float = config.DEFAULT_MAX_DISTANCE_KM

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "Query":
        """Build a query from handler/CLI input (`lat`, `lng`, optional `maxDistance`)."""
        if not isinstance(payload, dict):
            raise InvalidQueryError("Missing coordinates")
        lat = _coerce_float(payload.get("lat"))
        lng = _coerce_float(payload.get("lng"))
        if lat is None or lng is None:
            raise InvalidQueryError("Missing coordinates")
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise InvalidQueryError("Coordinates out of range")

        raw_max = payload.get("maxDistance")
        if raw_max is None:
            max_distance = config.DEFAULT_MAX_DISTANCE_KM
        else:
            max_distance = _coerce_float(raw_max)
            if max_distance is None or max_distance <= 0:
                raise InvalidQueryError("maxDistance must be a positive number")
        return cls(lat=lat, lng=lng, max_distance_km=max_distance)

    def search_radius_m(self) -> int:
        # Straight-line search radius understates road distance, so search wider.
        radius = max(
            self.max_distance_km * config.SEARCH_RADIUS_FACTOR_M_PER_KM,
            config.SEARCH_RADIUS_MIN_M,
        )
        return int(min(radius, config.SEARCH_RADIUS_MAX_M))


def _coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def candidate_key(name: Optional[str], lat: Any, lng: Any) -> str:
    return f"{name}_{lat}_{lng}"


@dataclass
class StudySpot:
    name: str
    location: str
    rating: float
    wifi: bool
    coffee: bool
    quiet: bool
    outlets: bool
    open_time: str
    lat: float
    lng: float
    place_id: str
    photos: List[str] = field(default_factory=list)
    price_level: Optional[int] = None
    user_ratings_total: Optional[int] = None
    distance: Optional[float] = None

    @property
    def key(self) -> str:
        return candidate_key(self.name, self.lat, self.lng)

    def identity_keys(self) -> Tuple[str, ...]:
        place_id = self.place_id if self.place_id != self.key else None
        return identity_keys(self.name, self.lat, self.lng, place_id)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "location": self.location,
            "rating": self.rating,
            "Wifi": self.wifi,
            "Coffee": self.coffee,
            "Quiet": self.quiet,
            "Outlets": self.outlets,
            "openTime": self.open_time,
            "coordinates": {"lat": self.lat, "lng": self.lng},
            "place_id": self.place_id,
            "photos": list(self.photos),
        }
        if self.price_level is not None:
            data["price_level"] = self.price_level
        if self.user_ratings_total is not None:
            data["user_ratings_total"] = self.user_ratings_total
        if self.distance is not None:
            data["distance"] = self.distance
        return data


def _round_coord(value: Any) -> Any:
    try:
        return round(float(value), config.COORD_KEY_PRECISION)
    except (TypeError, ValueError):
        return value


def identity_keys(name: Optional[str], lat: Any, lng: Any, place_id: Optional[str] = None) -> Tuple[str, ...]:
    """Keys under which two places count as the same physical place.

    The external place id is preferred; name plus rounded coordinates covers
    records without one and the same place returned with a different id.
    """
    rounded = candidate_key((name or "").strip().lower(), _round_coord(lat), _round_coord(lng))
    keys = [f"geo:{rounded}"]
    if place_id:
        keys.insert(0, f"id:{place_id}")
    return tuple(keys)
