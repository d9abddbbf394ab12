"""Pipeline orchestration: discovery, suitability, enrichment, road distance, ranking."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

import requests

from . import config
from .classify import classify
from .distance_client import DistanceMatrixClient
from .http import ApiStatusError, BudgetExceededError, HttpClient, RequestBudget, RequestMetrics
from .models import Query, StudySpot, candidate_key, identity_keys
from .places_client import PlacesClient, parse_count, parse_location, parse_number

logger = logging.getLogger(__name__)

# Failures of a single upstream call; anything else propagates to the caller.
RECOVERABLE_ERRORS = (ApiStatusError, BudgetExceededError, requests.RequestException, ValueError)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class PipelineResult:
    spots: List[StudySpot]
    summary: Dict[str, Any]

    def to_payload(self) -> Dict[str, Any]:
        return {"studySpots": [spot.to_dict() for spot in self.spots]}


def run(
    query: Query,
    api_key: Optional[str] = None,
    places_client: Optional[PlacesClient] = None,
    distance_client: Optional[DistanceMatrixClient] = None,
    max_results: Optional[int] = None,
    max_workers: Optional[int] = None,
    keywords: Optional[Sequence[str]] = None,
    metrics: Optional[RequestMetrics] = None,
    max_places: int = config.MAX_PLACES_REQUESTS_PER_RUN,
    max_details: int = config.MAX_DETAILS_REQUESTS_PER_RUN,
    max_distance: int = config.MAX_DISTANCE_REQUESTS_PER_RUN,
    today: Optional[date] = None,
) -> PipelineResult:
    if metrics is None:
        metrics = RequestMetrics()
    if max_results is None:
        max_results = config.MAX_RESULTS
    if max_workers is None:
        max_workers = config.PIPELINE_MAX_WORKERS
    if keywords is None:
        keywords = list(config.SEARCH_KEYWORDS)
    if today is None:
        today = datetime.now().date()

    if places_client is None or distance_client is None:
        if not api_key:
            raise config.MissingApiKeyError("API key is required when using real API clients")
        http_client = HttpClient(
            api_key,
            timeout=config.HTTP_TIMEOUT_SECONDS,
            retry_max=config.HTTP_RETRY_MAX,
            backoff_base=config.HTTP_BACKOFF_BASE,
            backoff_max=config.HTTP_BACKOFF_MAX,
        )
        budget = RequestBudget(
            max_places=max_places,
            max_details=max_details,
            max_distance=max_distance,
            on_consume=_log_request_use,
            metrics=metrics,
        )
        if places_client is None:
            places_client = PlacesClient(http_client, budget, metrics=metrics)
        if distance_client is None:
            distance_client = DistanceMatrixClient(http_client, budget)

    radius_m = query.search_radius_m()
    logger.info(
        "Searching for places near %s, %s, filtering to %skm by road distance",
        query.lat,
        query.lng,
        query.max_distance_km,
    )

    logger.info("Stage 1: discovery (%s keywords, radius %sm)", len(keywords), radius_m)
    candidates = discover_candidates(
        places_client, query, radius_m, keywords, max_workers=max_workers, metrics=metrics
    )

    logger.info("Stage 2: suitability filter (%s candidates)", len(candidates))
    suitable = filter_suitable(candidates)

    logger.info("Stage 3: detail enrichment (%s candidates)", len(suitable))
    enriched = enrich_candidates(
        places_client, suitable, today, max_workers=max_workers, metrics=metrics
    )

    spots: List[StudySpot] = []
    if enriched:
        logger.info("Stage 4: road distances (%s spots)", len(enriched))
        resolved = resolve_road_distances(
            distance_client,
            (query.lat, query.lng),
            enriched,
            max_workers=max_workers,
            metrics=metrics,
        )
        within = filter_by_distance(resolved, query.max_distance_km)
        logger.info(
            "Study spots within %skm by road: %s", query.max_distance_km, len(within)
        )
        unique = dedupe_spots(within)
        logger.info("Study spots after deduplication: %s", len(unique))
        spots = rank_spots(unique, max_results)
    else:
        resolved = within = unique = []

    logger.info("Final study spots count: %s", len(spots))
    summary = {
        "origin": {"lat": query.lat, "lng": query.lng},
        "max_distance_km": query.max_distance_km,
        "search_radius_m": radius_m,
        "keywords": list(keywords),
        "candidates": len(candidates),
        "found_by": _count_found_by(candidates, keywords),
        "suitable": len(suitable),
        "enriched": len(enriched),
        "with_distance": sum(1 for s in resolved if s.distance is not None),
        "within_distance": len(within),
        "unique": len(unique),
        "returned": len(spots),
        "requests": metrics.as_dict(),
    }
    return PipelineResult(spots=spots, summary=summary)


def _log_request_use(kind: str, used: int) -> None:
    logger.debug("%s requests used: %s", kind.capitalize(), used)


def _count_found_by(candidates: Sequence[Dict[str, Any]], keywords: Sequence[str]) -> Dict[str, int]:
    counts = {keyword: 0 for keyword in keywords}
    for candidate in candidates:
        counts[candidate["found_by"]] += 1
    return counts


def _map_ordered(fn: Callable[[T], R], items: Sequence[T], max_workers: int) -> List[R]:
    """Apply fn to every item, concurrently when allowed, keeping input order."""
    if max_workers <= 1 or len(items) <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as pool:
        return list(pool.map(fn, items))


def _raw_identity_keys(candidate: Dict[str, Any]) -> Tuple[str, ...]:
    return identity_keys(
        candidate.get("name"), candidate.get("lat"), candidate.get("lng"), candidate.get("place_id")
    )


def discover_candidates(
    places_client: PlacesClient,
    query: Query,
    radius_m: int,
    keywords: Sequence[str],
    max_workers: int = 1,
    metrics: Optional[RequestMetrics] = None,
) -> List[Dict[str, Any]]:
    def search(keyword: str) -> List[Dict[str, Any]]:
        logger.info("Searching for: %s", keyword)
        try:
            found = places_client.nearby_candidates(query.lat, query.lng, radius_m, keyword)
        except RECOVERABLE_ERRORS as exc:
            logger.warning("Search for %r failed: %s", keyword, exc)
            if metrics is not None:
                metrics.inc_failure("places")
            return []
        logger.info("%s results count: %s", keyword, len(found))
        return found

    results_by_keyword = _map_ordered(search, list(keywords), max_workers)

    candidates: List[Dict[str, Any]] = []
    seen: Set[str] = set()
    for keyword, found in zip(keywords, results_by_keyword):
        for candidate in found:
            keys = _raw_identity_keys(candidate)
            if seen.intersection(keys):
                logger.debug("Skipping duplicate: %s (%s)", candidate.get("name"), keyword)
                continue
            seen.update(keys)
            candidate["found_by"] = keyword
            candidates.append(candidate)
    return candidates


def is_suitable(candidate: Dict[str, Any]) -> bool:
    return classify(candidate.get("name"), candidate.get("types")).suitable


def filter_suitable(candidates: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    kept: List[Dict[str, Any]] = []
    for candidate in candidates:
        if is_suitable(candidate):
            kept.append(candidate)
        else:
            logger.debug("%s not suitable for studying", candidate.get("name"))
    return kept


def open_time_for_day(weekday_text: Optional[Sequence[str]], day: date) -> str:
    # weekday_text is Monday-first, which matches date.weekday().
    if not weekday_text:
        return config.HOURS_NOT_AVAILABLE
    idx = day.weekday()
    if idx >= len(weekday_text):
        return config.HOURS_NOT_AVAILABLE
    return weekday_text[idx] or config.HOURS_NOT_AVAILABLE


def build_spot_from_details(
    candidate: Dict[str, Any],
    details: Dict[str, Any],
    photo_url: Callable[[str], str],
    today: date,
) -> StudySpot:
    """Build a spot from a details result; raises ValueError on a malformed result."""
    name = _optional_str(details, "name") or candidate["name"]
    types = details.get("types") or candidate.get("types") or []
    if not isinstance(types, list):
        raise ValueError("details types is not a list")
    types = [t for t in types if isinstance(t, str)]
    lat, lng = parse_location(details)
    if lat is None or lng is None:
        lat, lng = candidate["lat"], candidate["lng"]

    opening_hours = details.get("opening_hours") or {}
    if not isinstance(opening_hours, dict):
        raise ValueError("details opening_hours is not an object")
    weekday_text = opening_hours.get("weekday_text")
    if weekday_text is not None and not (
        isinstance(weekday_text, list) and all(isinstance(t, str) for t in weekday_text)
    ):
        raise ValueError("details weekday_text is not a list of strings")
    raw_photos = details.get("photos") or []
    if not isinstance(raw_photos, list):
        raise ValueError("details photos is not a list")
    photos = [
        photo_url(p["photo_reference"])
        for p in raw_photos
        if isinstance(p, dict) and isinstance(p.get("photo_reference"), str)
    ]
    amenities = classify(name, types).amenities

    return StudySpot(
        name=name,
        location=_optional_str(details, "formatted_address")
        or candidate.get("vicinity")
        or config.ADDRESS_NOT_AVAILABLE,
        rating=parse_number(details.get("rating")) or 0,
        wifi=amenities.wifi,
        coffee=amenities.coffee,
        quiet=amenities.quiet,
        outlets=amenities.outlets,
        open_time=open_time_for_day(weekday_text, today),
        lat=lat,
        lng=lng,
        place_id=_place_id_or_key(candidate),
        photos=photos,
        price_level=parse_count(details.get("price_level")),
        user_ratings_total=parse_count(details.get("user_ratings_total")),
    )


def _optional_str(data: Dict[str, Any], field: str) -> Optional[str]:
    value = data.get(field)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"details {field} is not a string")
    return value


def build_fallback_spot(candidate: Dict[str, Any]) -> StudySpot:
    amenities = classify(candidate.get("name"), candidate.get("types")).amenities
    return StudySpot(
        name=candidate["name"],
        location=candidate.get("vicinity") or config.ADDRESS_NOT_AVAILABLE,
        rating=candidate.get("rating") or 0,
        wifi=amenities.wifi,
        coffee=amenities.coffee,
        quiet=amenities.quiet,
        outlets=amenities.outlets,
        open_time=config.HOURS_NOT_AVAILABLE,
        lat=candidate["lat"],
        lng=candidate["lng"],
        place_id=_place_id_or_key(candidate),
        photos=[],
        price_level=candidate.get("price_level"),
        user_ratings_total=candidate.get("user_ratings_total"),
    )


def _place_id_or_key(candidate: Dict[str, Any]) -> str:
    return candidate.get("place_id") or candidate_key(
        candidate.get("name"), candidate.get("lat"), candidate.get("lng")
    )


def enrich_candidate(
    places_client: PlacesClient,
    candidate: Dict[str, Any],
    today: date,
    metrics: Optional[RequestMetrics] = None,
) -> StudySpot:
    place_id = candidate.get("place_id")
    if place_id:
        try:
            details = places_client.place_details(place_id)
            return build_spot_from_details(candidate, details, places_client.photo_url, today)
        except RECOVERABLE_ERRORS as exc:
            logger.warning("Failed to get details for %s: %s", candidate.get("name"), exc)
            if metrics is not None:
                metrics.inc_failure("details")
    return build_fallback_spot(candidate)


def enrich_candidates(
    places_client: PlacesClient,
    candidates: Sequence[Dict[str, Any]],
    today: date,
    max_workers: int = 1,
    metrics: Optional[RequestMetrics] = None,
) -> List[StudySpot]:
    return _map_ordered(
        lambda c: enrich_candidate(places_client, c, today, metrics=metrics),
        list(candidates),
        max_workers,
    )


def batched(items: Sequence[T], size: int) -> List[List[T]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def resolve_road_distances(
    distance_client: DistanceMatrixClient,
    origin: Tuple[float, float],
    spots: Sequence[StudySpot],
    batch_size: Optional[int] = None,
    max_workers: int = 1,
    metrics: Optional[RequestMetrics] = None,
) -> List[StudySpot]:
    """Attach road distances; spots of a failed batch are kept without one."""
    if batch_size is None:
        batch_size = config.DISTANCE_MATRIX_BATCH_SIZE

    def resolve(batch: List[StudySpot]) -> List[StudySpot]:
        destinations = [(spot.lat, spot.lng) for spot in batch]
        try:
            distances = distance_client.road_distances_km(origin, destinations)
        except RECOVERABLE_ERRORS as exc:
            logger.warning(
                "Distance Matrix failed for batch of %s: %s; keeping batch without distances",
                len(batch),
                exc,
            )
            if metrics is not None:
                metrics.inc_failure("distance")
            return list(batch)

        kept: List[StudySpot] = []
        for spot, km in zip(batch, distances):
            if km is None:
                logger.debug("Distance calculation failed for %s; dropping", spot.name)
                continue
            spot.distance = km
            logger.debug("%s: %.1fkm by road", spot.name, km)
            kept.append(spot)
        return kept

    resolved: List[StudySpot] = []
    for kept in _map_ordered(resolve, batched(list(spots), batch_size), max_workers):
        resolved.extend(kept)
    return resolved


def filter_by_distance(spots: Iterable[StudySpot], max_distance_km: float) -> List[StudySpot]:
    kept: List[StudySpot] = []
    for spot in spots:
        if spot.distance is None or spot.distance <= max_distance_km:
            kept.append(spot)
        else:
            logger.debug(
                "%s too far (%.1fkm > %skm)", spot.name, spot.distance, max_distance_km
            )
    return kept


def dedupe_spots(spots: Iterable[StudySpot]) -> List[StudySpot]:
    unique: List[StudySpot] = []
    seen: Set[str] = set()
    for spot in spots:
        keys = spot.identity_keys()
        if seen.intersection(keys):
            continue
        seen.update(keys)
        unique.append(spot)
    return unique


def rank_sort_key(spot: StudySpot) -> Tuple[int, float, float]:
    if spot.distance is not None:
        return (0, spot.distance, 0.0)
    return (1, 0.0, -float(spot.rating or 0))


def rank_spots(spots: Iterable[StudySpot], max_results: Optional[int] = None) -> List[StudySpot]:
    if max_results is None:
        max_results = config.MAX_RESULTS
    # sorted() is stable: equal keys keep encounter order.
    return sorted(spots, key=rank_sort_key)[: max(0, int(max_results))]


def render_summary(summary: Dict[str, Any]) -> List[str]:
    requests_info = summary.get("requests") or {}
    network = requests_info.get("network") or {}
    failures = requests_info.get("failures") or {}
    found_by = summary.get("found_by") or {}
    origin = summary.get("origin") or {}
    return [
        f"Origin: {origin.get('lat')}, {origin.get('lng')}",
        f"Max distance (km): {summary.get('max_distance_km')}",
        f"Search radius (m): {summary.get('search_radius_m')}",
        f"Candidates discovered: {summary.get('candidates', 0)}",
        "Candidates by keyword: "
        + (", ".join(f"{keyword}={count}" for keyword, count in found_by.items()) or "none"),
        f"Suitable for studying: {summary.get('suitable', 0)}",
        f"With road distance: {summary.get('with_distance', 0)}",
        f"Within max distance: {summary.get('within_distance', 0)}",
        f"Returned: {summary.get('returned', 0)}",
        "Requests (network): places={places}, details={details}, distance={distance}".format(
            places=network.get("places", 0),
            details=network.get("details", 0),
            distance=network.get("distance", 0),
        ),
        "Failures: places={places}, details={details}, distance={distance}".format(
            places=failures.get("places", 0),
            details=failures.get("details", 0),
            distance=failures.get("distance", 0),
        ),
    ]
