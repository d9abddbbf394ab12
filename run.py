"""CLI entrypoint."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from studyspots import config
from studyspots.geocoding import geocode_address
from studyspots.http import HttpClient
from studyspots.models import InvalidQueryError, Query, StudySpot
from studyspots.pipeline import render_summary, run
from studyspots.presentation import (
    AMENITY_CHOICES,
    SORT_CHOICES,
    filter_spots,
    paginate,
    sort_spots,
)

logger = logging.getLogger(__name__)


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer: {value}")
    return number


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Find study spots near a location")
    parser.add_argument("--preflight", action="store_true", help="Check configuration and exit")
    parser.add_argument("--lat", type=float, default=None)
    parser.add_argument("--lng", type=float, default=None)
    parser.add_argument(
        "--address",
        type=str,
        default=None,
        help="Free-text location, geocoded before searching (instead of --lat/--lng)",
    )
    parser.add_argument(
        "--max-distance",
        type=float,
        default=None,
        help=f"Max road distance in km (default: {config.DEFAULT_MAX_DISTANCE_KM:g})",
    )
    parser.add_argument(
        "--max-results",
        type=positive_int,
        default=None,
        help=f"Max spots returned by the search (default: {config.MAX_RESULTS})",
    )
    parser.add_argument(
        "--workers", type=positive_int, default=None, help="Concurrent requests per stage"
    )
    parser.add_argument("--sort", choices=SORT_CHOICES, default="distance")
    parser.add_argument("--min-rating", type=float, default=None)
    parser.add_argument(
        "--amenity",
        action="append",
        choices=AMENITY_CHOICES,
        default=[],
        help="Require an amenity (repeatable)",
    )
    parser.add_argument(
        "--open-now",
        action="store_true",
        help="Only spots whose hours text mentions 'open' (text heuristic, not a clock check)",
    )
    parser.add_argument("--page", type=positive_int, default=1)
    parser.add_argument("--per-page", type=positive_int, default=config.RESULTS_PER_PAGE)
    parser.add_argument("--json", action="store_true", help="Print the raw JSON payload")
    parser.add_argument("--config", type=str, default=None, help="Path to search_config.json")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def run_preflight(api_key: Optional[str]) -> int:
    ok = True
    if api_key:
        print("API key: OK")
    else:
        print(f"API key: MISSING ({config.API_KEY_ENV})")
        ok = False
    print(f"Keywords: {', '.join(config.SEARCH_KEYWORDS)}")
    print(
        "Request caps: places={places}, details={details}, distance={distance}".format(
            places=config.MAX_PLACES_REQUESTS_PER_RUN,
            details=config.MAX_DETAILS_REQUESTS_PER_RUN,
            distance=config.MAX_DISTANCE_REQUESTS_PER_RUN,
        )
    )
    print("Preflight: PASS" if ok else "Preflight: FAIL")
    return 0 if ok else 1


def resolve_origin(args: argparse.Namespace, api_key: str) -> Query:
    payload = {"lat": args.lat, "lng": args.lng}
    if args.address:
        http_client = HttpClient(
            api_key,
            timeout=config.HTTP_TIMEOUT_SECONDS,
            retry_max=config.HTTP_RETRY_MAX,
            backoff_base=config.HTTP_BACKOFF_BASE,
            backoff_max=config.HTTP_BACKOFF_MAX,
        )
        location = geocode_address(http_client, args.address)
        if location is None:
            raise InvalidQueryError(f"Could not geocode address: {args.address}")
        payload = dict(location)
    if args.max_distance is not None:
        payload["maxDistance"] = args.max_distance
    return Query.from_payload(payload)


def format_spot(index: int, spot: StudySpot) -> str:
    distance = f"{spot.distance:.1f}km" if spot.distance is not None else "distance n/a"
    amenities = [
        label
        for label, present in (
            ("Wifi", spot.wifi),
            ("Coffee", spot.coffee),
            ("Quiet", spot.quiet),
            ("Outlets", spot.outlets),
        )
        if present
    ]
    lines = [
        f"{index}. {spot.name} ({distance}, rating {spot.rating})",
        f"   {spot.location}",
        f"   {spot.open_time}",
    ]
    if amenities:
        lines.append(f"   {' | '.join(amenities)}")
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    config.load_env()
    args = parse_args(argv)
    config.load_search_config(args.config)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.preflight:
        return run_preflight(os.environ.get(config.API_KEY_ENV))

    try:
        api_key = config.get_api_key()
    except config.MissingApiKeyError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if not args.address and (args.lat is None or args.lng is None):
        print("Provide --address or both --lat and --lng", file=sys.stderr)
        return 2

    try:
        query = resolve_origin(args, api_key)
        result = run(
            query,
            api_key=api_key,
            max_results=args.max_results,
            max_workers=args.workers,
        )
    except InvalidQueryError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except Exception as exc:
        logger.exception("Search failed")
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    spots = filter_spots(
        result.spots,
        amenities=args.amenity,
        min_rating=args.min_rating,
        open_now=args.open_now,
    )
    spots = sort_spots(spots, by=args.sort)

    if args.json:
        print(json.dumps({"studySpots": [s.to_dict() for s in spots]}, indent=2, ensure_ascii=False))
        return 0

    for line in render_summary(result.summary):
        logger.info(line)

    if not spots:
        print("No study spots found.")
        return 0

    page = paginate(spots, page=args.page, per_page=args.per_page)
    offset = (page.page - 1) * page.per_page
    for idx, spot in enumerate(page.items, start=offset + 1):
        print(format_spot(idx, spot))
    print(f"Page {page.page}/{page.total_pages} ({page.total_items} spots)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
