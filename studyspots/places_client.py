"""Places API client (nearby search, details, photos) and response parsing."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from . import config
from .http import ApiStatusError, HttpClient, RequestBudget, RequestMetrics, check_status

logger = logging.getLogger(__name__)


class PlacesClient:
    def __init__(
        self,
        http_client: HttpClient,
        budget: RequestBudget,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.http = http_client
        self.budget = budget
        self.metrics = metrics
        self._details_memory: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    @property
    def api_key(self) -> str:
        return self.http.api_key

    def search_nearby(self, lat: float, lng: float, radius_m: int, keyword: str) -> Dict[str, Any]:
        params = build_nearby_params(lat, lng, radius_m, keyword)
        self.budget.consume("places")
        response = self.http.get_json(config.PLACES_NEARBY_SEARCH_URL, params)
        return check_status(response, config.OK_STATUSES)

    def nearby_candidates(
        self, lat: float, lng: float, radius_m: int, keyword: str
    ) -> List[Dict[str, Any]]:
        return parse_nearby_response(self.search_nearby(lat, lng, radius_m, keyword))

    def place_details(self, place_id: str) -> Dict[str, Any]:
        """Return the details `result` for a place, raising ApiStatusError on non-OK."""
        with self._lock:
            cached = self._details_memory.get(place_id)
        if cached is not None:
            if self.metrics is not None:
                self.metrics.inc_dedup_skip("details")
            return cached

        self.budget.consume("details")
        response = self.http.get_json(config.PLACES_DETAILS_URL, build_details_params(place_id))
        check_status(response, ("OK",))
        result = response.get("result")
        if not isinstance(result, dict):
            raise ApiStatusError(response.get("status"), "details response has no result")
        with self._lock:
            self._details_memory[place_id] = result
        return result

    def photo_url(self, photo_reference: str) -> str:
        return build_photo_url(photo_reference, self.api_key)


def build_nearby_params(lat: float, lng: float, radius_m: int, keyword: str) -> Dict[str, Any]:
    return {
        "location": f"{lat},{lng}",
        "radius": int(radius_m),
        "type": config.NEARBY_SEARCH_TYPE,
        "keyword": keyword,
    }


def build_details_params(place_id: str) -> Dict[str, Any]:
    return {"place_id": place_id, "fields": config.PLACES_DETAILS_FIELDS}


def build_photo_url(photo_reference: str, api_key: str) -> str:
    query = urlencode(
        {
            "maxwidth": config.PHOTO_MAX_WIDTH,
            "photoreference": photo_reference,
            "key": api_key,
        }
    )
    return f"{config.PLACES_PHOTO_URL}?{query}"


# Adapter/mapper for nearby search response fields

def parse_nearby_response(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    results = response.get("results") or []
    if not isinstance(results, list):
        raise ValueError("Nearby search response has no results list")
    parsed: List[Dict[str, Any]] = []
    for p in results:
        try:
            candidate = _parse_nearby_place(p)
        except ValueError as exc:
            logger.debug("Skipping malformed nearby result: %s", exc)
            continue
        if candidate is not None:
            parsed.append(candidate)
    return parsed


def _parse_nearby_place(p: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(p, dict):
        raise ValueError(f"result is a {type(p).__name__}")
    lat, lng = parse_location(p)
    name = p.get("name")
    if not isinstance(name, str) or not name or lat is None or lng is None:
        return None
    types = p.get("types") or []
    vicinity = p.get("vicinity")
    place_id = p.get("place_id")
    return {
        "place_id": place_id if isinstance(place_id, str) else None,
        "name": name,
        "types": [t for t in types if isinstance(t, str)] if isinstance(types, list) else [],
        "vicinity": vicinity if isinstance(vicinity, str) else None,
        "lat": lat,
        "lng": lng,
        "rating": parse_number(p.get("rating")),
        "price_level": parse_count(p.get("price_level")),
        "user_ratings_total": parse_count(p.get("user_ratings_total")),
    }


def parse_location(place: Dict[str, Any]):
    """Return (lat, lng) floats, or (None, None) when the geometry is absent or malformed."""
    geometry = place.get("geometry")
    location = geometry.get("location") if isinstance(geometry, dict) else None
    if not isinstance(location, dict):
        return None, None
    try:
        return float(location["lat"]), float(location["lng"])
    except (KeyError, TypeError, ValueError):
        return None, None


def parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    raise ValueError(f"Expected a number, got {type(value).__name__}")


def parse_count(value: Any) -> Optional[int]:
    number = parse_number(value)
    return None if number is None else int(number)
