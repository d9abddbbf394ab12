import pytest

from studyspots.distance_client import build_distance_params, parse_distance_elements
from studyspots.places_client import (
    build_details_params,
    build_nearby_params,
    build_photo_url,
    parse_location,
    parse_nearby_response,
)


def test_parse_nearby_skips_missing_fields():
    response = {
        "results": [
            {"place_id": "p1"},
            {"place_id": "p2", "name": "No geometry"},
            {"name": "No id", "geometry": {"location": {"lat": 1.0, "lng": 2.0}}},
            {
                "place_id": "p4",
                "name": "Cafe",
                "geometry": {"location": {"lat": "13.7", "lng": 100.5}},
                "types": ["cafe"],
                "vicinity": "Silom",
                "rating": 4.2,
            },
            "not-a-dict",
        ]
    }

    parsed = parse_nearby_response(response)
    assert [p["name"] for p in parsed] == ["No id", "Cafe"]
    assert parsed[0]["place_id"] is None
    assert parsed[0]["types"] == []
    assert parsed[0]["rating"] is None
    assert parsed[1]["lat"] == 13.7
    assert parsed[1]["vicinity"] == "Silom"


def test_parse_nearby_empty_results():
    assert parse_nearby_response({"status": "ZERO_RESULTS"}) == []


def test_parse_location_variants():
    assert parse_location({"geometry": {"location": {"lat": 1, "lng": 2}}}) == (1.0, 2.0)
    assert parse_location({"geometry": {"location": {"lat": 1}}}) == (None, None)
    assert parse_location({}) == (None, None)


def test_parse_distance_elements_mixed_statuses():
    response = {
        "status": "OK",
        "rows": [
            {
                "elements": [
                    {"status": "OK", "distance": {"value": 2300}},
                    {"status": "ZERO_RESULTS"},
                    {"status": "OK"},
                    {"status": "OK", "distance": {"value": 0}},
                ]
            }
        ],
    }
    assert parse_distance_elements(response, expected=4) == [2.3, None, None, 0.0]


def test_parse_distance_elements_rejects_short_rows():
    response = {"rows": [{"elements": [{"status": "OK", "distance": {"value": 10}}]}]}
    with pytest.raises(ValueError):
        parse_distance_elements(response, expected=2)
    with pytest.raises(ValueError):
        parse_distance_elements({"rows": []}, expected=1)


def test_request_params():
    assert build_nearby_params(13.7, 100.5, 15000, "cafe") == {
        "location": "13.7,100.5",
        "radius": 15000,
        "type": "establishment",
        "keyword": "cafe",
    }
    details = build_details_params("p1")
    assert details["place_id"] == "p1"
    assert "opening_hours" in details["fields"]

    params = build_distance_params((13.7, 100.5), [(13.71, 100.51), (13.72, 100.52)], "driving")
    assert params == {
        "origins": "13.7,100.5",
        "destinations": "13.71,100.51|13.72,100.52",
        "mode": "driving",
    }


def test_photo_url_shape():
    url = build_photo_url("ref/1", "k")
    assert url == (
        "https://maps.googleapis.com/maps/api/place/photo"
        "?maxwidth=400&photoreference=ref%2F1&key=k"
    )


@pytest.mark.parametrize(
    "element",
    [
        {"status": "OK", "distance": 2300},
        {"status": "OK", "distance": {"value": "2300"}},
        "OK",
    ],
)
def test_parse_distance_elements_rejects_malformed_element(element):
    response = {"status": "OK", "rows": [{"elements": [element]}]}
    with pytest.raises(ValueError):
        parse_distance_elements(response, expected=1)


def test_parse_distance_elements_rejects_malformed_rows():
    with pytest.raises(ValueError):
        parse_distance_elements({"rows": "nope"}, expected=1)


def test_parse_location_malformed_geometry():
    assert parse_location({"geometry": "13.7,100.5"}) == (None, None)
    assert parse_location({"geometry": {"location": [13.7, 100.5]}}) == (None, None)
    assert parse_location({"geometry": {"location": {"lat": "north", "lng": 1}}}) == (None, None)


def test_parse_nearby_skips_only_malformed_results():
    response = {
        "results": [
            {
                "place_id": "p1",
                "name": "Bad Rating",
                "rating": "high",
                "geometry": {"location": {"lat": 1.0, "lng": 2.0}},
            },
            {
                "place_id": 7,
                "name": "Good",
                "types": "cafe",
                "vicinity": ["x"],
                "geometry": {"location": {"lat": 1.0, "lng": 2.0}},
                "user_ratings_total": 12.0,
            },
        ]
    }
    parsed = parse_nearby_response(response)
    assert [p["name"] for p in parsed] == ["Good"]
    assert parsed[0]["place_id"] is None
    assert parsed[0]["types"] == []
    assert parsed[0]["vicinity"] is None
    assert parsed[0]["user_ratings_total"] == 12

    with pytest.raises(ValueError):
        parse_nearby_response({"results": {"name": "x"}})
