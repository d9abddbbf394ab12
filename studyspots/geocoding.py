"""Single-shot lookups used before the pipeline runs: geocoding and autocomplete."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence

import requests

from . import config
from .http import HttpClient, check_status
from .places_client import parse_location

logger = logging.getLogger(__name__)


def geocode_address(http_client: HttpClient, address: str) -> Optional[Dict[str, float]]:
    """Resolve one free-text address to `{"lat", "lng"}`, or None when unresolved."""
    try:
        data = http_client.get_json(config.GEOCODE_URL, {"address": address})
    except (requests.RequestException, ValueError) as exc:
        logger.error("Geocoding request failed for %r: %s", address, exc)
        return None

    if not isinstance(data, dict):
        logger.error("Unexpected geocoding payload for %r", address)
        return None
    results = data.get("results") or []
    if data.get("status") != "OK" or not isinstance(results, list) or not results:
        logger.warning("Geocoding failed for address: %s. Status: %s", address, data.get("status"))
        return None
    if not isinstance(results[0], dict):
        logger.error("Unexpected geocoding result for %r", address)
        return None
    lat, lng = parse_location(results[0])
    if lat is None or lng is None:
        return None
    return {"lat": lat, "lng": lng}


def geocode_addresses(
    http_client: HttpClient,
    addresses: Sequence[str],
    max_workers: Optional[int] = None,
) -> List[Dict[str, Any]]:
    def resolve(address: str) -> Dict[str, Any]:
        location = geocode_address(http_client, address)
        return {
            "address": address,
            "lat": location["lat"] if location else None,
            "lng": location["lng"] if location else None,
        }

    if not addresses:
        return []
    workers = max_workers or config.PIPELINE_MAX_WORKERS
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(addresses)))) as pool:
        return list(pool.map(resolve, addresses))


def autocomplete(
    http_client: HttpClient,
    text: str,
    components: Optional[str] = None,
    limit: int = config.AUTOCOMPLETE_MAX_PREDICTIONS,
) -> List[Dict[str, str]]:
    """Return up to `limit` place predictions.

    Raises ApiStatusError on a non-OK status and ValueError on a malformed response.
    """
    params: Dict[str, Any] = {"input": text}
    restrict = config.AUTOCOMPLETE_COMPONENTS if components is None else components
    if restrict:
        params["components"] = restrict
    data = http_client.get_json(config.PLACES_AUTOCOMPLETE_URL, params)
    check_status(data, config.OK_STATUSES)
    predictions = data.get("predictions") or []
    if not isinstance(predictions, list) or not all(isinstance(p, dict) for p in predictions):
        raise ValueError("Autocomplete response has malformed predictions")
    return [
        {"description": p.get("description"), "place_id": p.get("place_id")}
        for p in predictions[: max(0, int(limit))]
    ]

