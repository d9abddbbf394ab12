import json
from datetime import date
from pathlib import Path

import pytest
import requests

from studyspots import config
from studyspots.distance_client import parse_distance_elements
from studyspots.http import ApiStatusError, RequestMetrics, check_status
from studyspots.models import Query
from studyspots.pipeline import rank_sort_key, render_summary, run
from studyspots.places_client import build_photo_url, parse_nearby_response

MONDAY = date(2026, 10, 19)
ORIGIN = Query(lat=13.70, lng=100.53, max_distance_km=10)


def load_fixture(name):
    path = Path(__file__).parent / "fixtures" / name
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class FakePlacesClient:
    def __init__(self, nearby_by_keyword, details_by_id, raise_for_keywords=()):
        self.nearby_by_keyword = nearby_by_keyword
        self.details_by_id = details_by_id
        self.raise_for_keywords = set(raise_for_keywords)
        self.nearby_calls = []
        self.details_calls = []

    def nearby_candidates(self, lat, lng, radius_m, keyword):
        self.nearby_calls.append((keyword, radius_m))
        if keyword in self.raise_for_keywords:
            raise requests.ConnectionError("connection reset")
        payload = self.nearby_by_keyword.get(keyword, {"status": "ZERO_RESULTS", "results": []})
        return parse_nearby_response(check_status(payload, config.OK_STATUSES))

    def place_details(self, place_id):
        self.details_calls.append(place_id)
        payload = self.details_by_id.get(place_id, {"status": "NOT_FOUND"})
        check_status(payload, ("OK",))
        return payload["result"]

    def photo_url(self, photo_reference):
        return build_photo_url(photo_reference, "test-key")


class FakeDistanceClient:
    def __init__(self, meters_by_coord, fail_when_contains=(), status="OK"):
        self.meters_by_coord = meters_by_coord
        self.fail_when_contains = set(fail_when_contains)
        self.status = status
        self.calls = []

    def road_distances_km(self, origin, destinations):
        self.calls.append(list(destinations))
        coords = [f"{lat},{lng}" for lat, lng in destinations]
        if self.fail_when_contains.intersection(coords):
            raise requests.ConnectionError("simulated network error")
        if self.status != "OK":
            raise ApiStatusError(self.status, "quota")
        elements = []
        for coord in coords:
            meters = self.meters_by_coord.get(coord)
            if meters is None:
                elements.append({"status": "ZERO_RESULTS"})
            else:
                elements.append({"status": "OK", "distance": {"value": meters}})
        response = {"status": "OK", "rows": [{"elements": elements}]}
        return parse_distance_elements(response, expected=len(destinations))


def full_places_client(**kwargs):
    return FakePlacesClient(
        {
            "cafe": load_fixture("nearby_cafe.json"),
            "library": load_fixture("nearby_library.json"),
            "coffee shop": load_fixture("nearby_coffee_shop.json"),
        },
        load_fixture("place_details.json"),
        **kwargs,
    )


def run_offline(places_client, distance_client, query=ORIGIN, **kwargs):
    kwargs.setdefault("max_workers", 1)
    return run(
        query,
        api_key=None,
        places_client=places_client,
        distance_client=distance_client,
        today=MONDAY,
        **kwargs,
    )


def assert_pipeline_invariants(spots, max_distance_km, cap=config.MAX_RESULTS):
    keys = [s.key for s in spots]
    assert len(keys) == len(set(keys))
    for spot in spots:
        assert spot.distance is None or spot.distance <= max_distance_km
    for a, b in zip(spots, spots[1:]):
        if a.distance is not None and b.distance is not None:
            assert a.distance <= b.distance
        elif a.distance is None:
            assert b.distance is None
            assert a.rating >= b.rating
    assert len(spots) <= cap


def test_single_starbucks_scenario():
    places = FakePlacesClient(
        {
            "cafe": {
                "status": "OK",
                "results": [
                    {
                        "name": "Starbucks",
                        "place_id": "p_starbucks",
                        "geometry": {"location": {"lat": 13.701, "lng": 100.531}},
                        "types": ["cafe"],
                    }
                ],
            }
        },
        load_fixture("place_details.json"),
    )
    distances = FakeDistanceClient({"13.701,100.531": 2300})

    result = run_offline(places, distances)

    assert [s.name for s in result.spots] == ["Starbucks"]
    spot = result.spots[0]
    assert spot.coffee is True
    assert spot.wifi is True
    assert spot.outlets is True
    assert spot.quiet is False
    assert spot.rating == 4.7
    assert spot.distance == pytest.approx(2.3)
    assert spot.open_time == "Monday: 7:00 AM – 9:00 PM"
    assert spot.location == "1 Silom Rd, Bang Rak, Bangkok 10500, Thailand"
    assert spot.photos == [
        build_photo_url("ref-sb-1", "test-key"),
        build_photo_url("ref-sb-2", "test-key"),
    ]
    assert [kw for kw, _ in places.nearby_calls] == config.SEARCH_KEYWORDS


def test_full_run_ranks_by_distance_and_drops_far_spots():
    places = full_places_client()
    distances = FakeDistanceClient(load_fixture("distance_meters.json"))

    result = run_offline(places, distances)

    names = [s.name for s in result.spots]
    # Starbucks and Roots tie at 2.3km and keep encounter order.
    assert names == [
        "Starbucks",
        "Roots Coffee Roaster",
        "Neilson Hays Library",
        "Hive Coworking Space",
    ]
    assert "Somchai Noodles" not in names
    assert "Far Away Reading Room Cafe" not in names
    assert_pipeline_invariants(result.spots, ORIGIN.max_distance_km)

    assert result.summary["candidates"] == 6
    assert result.summary["suitable"] == 5
    assert result.summary["within_distance"] == 4
    assert result.summary["returned"] == 4


def test_restaurant_is_rejected_before_detail_lookup():
    places = full_places_client()
    run_offline(places, FakeDistanceClient(load_fixture("distance_meters.json")))
    assert "p_noodles" not in places.details_calls


def test_duplicate_from_two_keywords_is_merged():
    places = full_places_client()
    result = run_offline(places, FakeDistanceClient(load_fixture("distance_meters.json")))

    starbucks = [s for s in result.spots if s.name == "Starbucks"]
    assert len(starbucks) == 1
    assert places.details_calls.count("p_starbucks") == 1


def test_details_failure_falls_back_to_nearby_record():
    places = full_places_client()
    result = run_offline(places, FakeDistanceClient(load_fixture("distance_meters.json")))

    hive = next(s for s in result.spots if s.name == "Hive Coworking Space")
    assert hive.location == "Sukhumvit 55"
    assert hive.open_time == config.HOURS_NOT_AVAILABLE
    assert hive.photos == []
    assert hive.rating == 4.4
    assert hive.quiet is True
    assert hive.coffee is False
    assert hive.user_ratings_total == 120
    assert result.summary["requests"]["failures"]["details"] == 1


def test_batch_failure_keeps_spots_without_distance(monkeypatch):
    monkeypatch.setattr(config, "DISTANCE_MATRIX_BATCH_SIZE", 2)
    places = full_places_client()
    # Batches: [Starbucks, Hive], [Library, Far], [Roots]
    distances = FakeDistanceClient(
        load_fixture("distance_meters.json"), fail_when_contains={"13.725,100.528"}
    )

    result = run_offline(places, distances)

    assert len(distances.calls) == 3
    names = [s.name for s in result.spots]
    assert names == [
        "Starbucks",
        "Roots Coffee Roaster",
        "Hive Coworking Space",
        "Far Away Reading Room Cafe",
        "Neilson Hays Library",
    ]
    without = [s for s in result.spots if s.distance is None]
    assert {s.name for s in without} == {"Far Away Reading Room Cafe", "Neilson Hays Library"}
    assert all(s.distance is not None for s in result.spots[:3])
    assert_pipeline_invariants(result.spots, ORIGIN.max_distance_km)
    assert result.summary["requests"]["failures"]["distance"] == 1


def test_top_level_distance_status_failure_keeps_everything():
    places = full_places_client()
    result = run_offline(places, FakeDistanceClient({}, status="OVER_QUERY_LIMIT"))

    assert len(result.spots) == 5
    assert all(s.distance is None for s in result.spots)
    ratings = [s.rating for s in result.spots]
    assert ratings == sorted(ratings, reverse=True)


def test_unreachable_element_is_dropped():
    places = full_places_client()
    meters = load_fixture("distance_meters.json")
    del meters["13.73,100.56"]

    result = run_offline(places, FakeDistanceClient(meters))

    assert "Hive Coworking Space" not in [s.name for s in result.spots]


def test_failed_keyword_search_does_not_abort():
    places = full_places_client(raise_for_keywords={"cafe"})
    result = run_offline(places, FakeDistanceClient(load_fixture("distance_meters.json")))

    names = [s.name for s in result.spots]
    assert "Neilson Hays Library" in names
    assert "Starbucks" in names  # still found via "coffee shop"
    assert "Hive Coworking Space" not in names
    assert result.summary["requests"]["failures"]["places"] == 1


def test_all_searches_failing_yields_empty_list():
    places = FakePlacesClient(
        {kw: {"status": "REQUEST_DENIED", "error_message": "bad key"} for kw in config.SEARCH_KEYWORDS},
        {},
    )
    distances = FakeDistanceClient({})

    result = run_offline(places, distances)

    assert result.spots == []
    assert result.to_payload() == {"studySpots": []}
    assert distances.calls == []


def test_results_are_capped():
    results = [
        {
            "name": f"Cafe {i}",
            "place_id": f"p{i}",
            "geometry": {"location": {"lat": 13.70 + i / 1000, "lng": 100.53}},
            "types": ["cafe"],
        }
        for i in range(40)
    ]
    meters = {f"{13.70 + i / 1000},100.53": 100 * (40 - i) for i in range(40)}
    places = FakePlacesClient({"cafe": {"status": "OK", "results": results}}, {})

    result = run_offline(places, FakeDistanceClient(meters))
    assert len(result.spots) == config.MAX_RESULTS
    assert result.spots[0].name == "Cafe 39"

    capped = run_offline(places, FakeDistanceClient(meters), max_results=20)
    assert len(capped.spots) == 20


def test_concurrent_run_matches_sequential_run():
    meters = load_fixture("distance_meters.json")
    sequential = run_offline(full_places_client(), FakeDistanceClient(meters), max_workers=1)
    concurrent = run_offline(full_places_client(), FakeDistanceClient(meters), max_workers=8)

    assert [s.to_dict() for s in concurrent.spots] == [s.to_dict() for s in sequential.spots]


def test_search_radius_is_wider_than_threshold():
    places = full_places_client()
    run_offline(places, FakeDistanceClient({}), query=Query(13.70, 100.53, 20))
    assert {radius for _, radius in places.nearby_calls} == {30000}


def test_payload_shape():
    places = full_places_client()
    result = run_offline(places, FakeDistanceClient(load_fixture("distance_meters.json")))
    payload = result.to_payload()

    first = payload["studySpots"][0]
    assert set(first) == {
        "name",
        "location",
        "rating",
        "Wifi",
        "Coffee",
        "Quiet",
        "Outlets",
        "openTime",
        "coordinates",
        "place_id",
        "photos",
        "price_level",
        "user_ratings_total",
        "distance",
    }
    roots = next(s for s in payload["studySpots"] if s["name"] == "Roots Coffee Roaster")
    assert roots["rating"] == 0
    assert "price_level" not in roots


def test_summary_lines_report_requests():
    metrics = RequestMetrics()
    metrics.inc_network("places")
    metrics.inc_network("distance")
    places = full_places_client()
    result = run_offline(
        places, FakeDistanceClient(load_fixture("distance_meters.json")), metrics=metrics
    )

    lines = render_summary(result.summary)
    assert "Returned: 4" in lines
    assert "Requests (network): places=1, details=0, distance=1" in lines
    assert sorted(result.spots, key=rank_sort_key) == result.spots


def test_malformed_details_result_falls_back_to_nearby_record():
    details = load_fixture("place_details.json")
    details["p_starbucks"] = {
        "status": "OK",
        "result": {"name": "Starbucks", "opening_hours": "Open 24 hours"},
    }
    details["p_library"]["result"]["photos"] = {"photo_reference": "ref-lib"}
    places = FakePlacesClient(
        {
            "cafe": load_fixture("nearby_cafe.json"),
            "library": load_fixture("nearby_library.json"),
            "coffee shop": load_fixture("nearby_coffee_shop.json"),
        },
        details,
    )

    result = run_offline(places, FakeDistanceClient(load_fixture("distance_meters.json")))

    starbucks = next(s for s in result.spots if s.name == "Starbucks")
    assert starbucks.location == "Silom Road, Bang Rak"
    assert starbucks.open_time == config.HOURS_NOT_AVAILABLE
    assert starbucks.rating == 4.5
    library = next(s for s in result.spots if s.name == "Neilson Hays Library")
    assert library.photos == []
    assert library.open_time == config.HOURS_NOT_AVAILABLE
    # Hive is NOT_FOUND; Starbucks and the library are malformed.
    assert result.summary["requests"]["failures"]["details"] == 3


class MalformedElementDistanceClient(FakeDistanceClient):
    def road_distances_km(self, origin, destinations):
        self.calls.append(list(destinations))
        elements = [{"status": "OK", "distance": 2300} for _ in destinations]
        response = {"status": "OK", "rows": [{"elements": elements}]}
        return parse_distance_elements(response, expected=len(destinations))


def test_malformed_distance_element_keeps_batch_without_distance():
    places = full_places_client()
    result = run_offline(places, MalformedElementDistanceClient({}))

    assert len(result.spots) == 5
    assert all(s.distance is None for s in result.spots)
    assert result.summary["requests"]["failures"]["distance"] == 1


def test_malformed_nearby_result_is_skipped_alone():
    library = load_fixture("nearby_library.json")
    library["results"].insert(0, {"name": "Broken", "geometry": "13.7,100.5", "types": ["library"]})
    library["results"].insert(
        1,
        {
            "name": "Odd Rating Cafe",
            "rating": "five",
            "types": ["cafe"],
            "geometry": {"location": {"lat": 13.702, "lng": 100.532}},
        },
    )
    places = FakePlacesClient(
        {
            "cafe": load_fixture("nearby_cafe.json"),
            "library": library,
            "coffee shop": load_fixture("nearby_coffee_shop.json"),
        },
        load_fixture("place_details.json"),
    )

    result = run_offline(places, FakeDistanceClient(load_fixture("distance_meters.json")))

    names = [s.name for s in result.spots]
    assert "Neilson Hays Library" in names
    assert "Broken" not in names
    assert "Odd Rating Cafe" not in names
    assert result.summary["requests"]["failures"]["places"] == 0


def test_summary_counts_candidates_by_keyword():
    places = full_places_client()
    result = run_offline(places, FakeDistanceClient(load_fixture("distance_meters.json")))

    assert result.summary["found_by"] == {
        "cafe": 3,
        "library": 2,
        "coworking space": 0,
        "coffee shop": 1,
    }
    lines = render_summary(result.summary)
    assert "Candidates by keyword: cafe=3, library=2, coworking space=0, coffee shop=1" in lines
