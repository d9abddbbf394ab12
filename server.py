"""Study spot JSON API server.

Serves the study spot search plus the geocoding, autocomplete and distance
matrix passthroughs used by the front end to resolve free-text locations.
"""
from __future__ import annotations

import json
import logging
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

import requests

from studyspots import config, pipeline
from studyspots.geocoding import autocomplete, geocode_addresses
from studyspots.http import ApiStatusError, HttpClient
from studyspots.models import InvalidQueryError, Query

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8000

Response = Tuple[int, Dict[str, Any]]


def _make_http_client(api_key: str) -> HttpClient:
    return HttpClient(
        api_key,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        retry_max=config.HTTP_RETRY_MAX,
        backoff_base=config.HTTP_BACKOFF_BASE,
        backoff_max=config.HTTP_BACKOFF_MAX,
    )


def handle_places_search(
    payload: Dict[str, Any],
    environ: Optional[Mapping[str, str]] = None,
    runner: Callable[..., pipeline.PipelineResult] = pipeline.run,
) -> Response:
    try:
        query = Query.from_payload(payload)
    except InvalidQueryError as exc:
        return 400, {"message": str(exc)}

    try:
        api_key = config.get_api_key(environ)
    except config.MissingApiKeyError:
        return 500, {"message": "Google Maps API key not configured"}

    try:
        result = runner(query, api_key=api_key)
    except Exception:
        logger.exception("Error fetching study spots")
        return 500, {"message": "Failed to fetch study spots"}
    return 200, result.to_payload()


def handle_geocode(
    payload: Dict[str, Any],
    environ: Optional[Mapping[str, str]] = None,
    http_factory: Callable[[str], HttpClient] = _make_http_client,
) -> Response:
    addresses = payload.get("addresses")
    if not isinstance(addresses, list) or not all(isinstance(a, str) for a in addresses):
        return 400, {"message": "Invalid addresses"}
    try:
        api_key = config.get_api_key(environ)
    except config.MissingApiKeyError:
        return 500, {"message": "Google Maps API key not configured"}

    coordinates = geocode_addresses(http_factory(api_key), addresses)
    return 200, {"coordinates": coordinates}


def handle_autocomplete(
    payload: Dict[str, Any],
    environ: Optional[Mapping[str, str]] = None,
    http_factory: Callable[[str], HttpClient] = _make_http_client,
) -> Response:
    text = payload.get("input")
    if not isinstance(text, str) or not text.strip():
        return 400, {"message": "Invalid or missing input"}
    try:
        api_key = config.get_api_key(environ)
    except config.MissingApiKeyError:
        logger.error("Google Maps API key is not configured.")
        return 500, {"message": "API key is not configured on the server."}

    try:
        predictions = autocomplete(http_factory(api_key), text.strip())
    except ApiStatusError as exc:
        logger.error("Google Places API Error: %s", exc)
        return 500, {"message": f"Google Places API error: {exc.status}"}
    except (requests.RequestException, ValueError):
        logger.exception("Autocomplete request failed")
        return 500, {"message": "An internal server error occurred."}
    return 200, {"predictions": predictions}


def handle_distance_matrix(
    payload: Dict[str, Any],
    environ: Optional[Mapping[str, str]] = None,
    http_factory: Callable[[str], HttpClient] = _make_http_client,
) -> Response:
    origin = payload.get("origin")
    destinations = payload.get("destinations")
    if not origin or not isinstance(destinations, list) or not destinations:
        return 400, {"error": "Missing origin or destinations"}
    try:
        api_key = config.get_api_key(environ)
    except config.MissingApiKeyError:
        return 500, {"error": "Google Maps API key not configured"}

    params = {
        "origins": str(origin),
        "destinations": "|".join(str(d) for d in destinations),
        "mode": config.DISTANCE_MODE,
    }
    # Upstream status codes are passed through for the caller to inspect.
    try:
        data = http_factory(api_key).get_json(config.DISTANCE_MATRIX_URL, params)
    except (requests.RequestException, ValueError) as exc:
        logger.error("Distance matrix request failed: %s", exc)
        return 500, {"error": "Failed to fetch distance matrix"}
    if not isinstance(data, dict):
        return 500, {"error": "Failed to fetch distance matrix"}
    return 200, data


ROUTES: Dict[str, Callable[[Dict[str, Any]], Response]] = {
    "/api/places-search": handle_places_search,
    "/api/geocode": handle_geocode,
    "/api/places-autocomplete": handle_autocomplete,
    "/api/distance-matrix": handle_distance_matrix,
}


class StudySpotHandler(BaseHTTPRequestHandler):
    routes = ROUTES

    def do_POST(self) -> None:
        path = urlparse(self.path).path
        route = self.routes.get(path)
        if route is None:
            self._send_json({"message": "Not found"}, 404)
            return
        try:
            payload = self._read_json_body()
        except ValueError:
            self._send_json({"message": "Invalid JSON body"}, 400)
            return
        if not isinstance(payload, dict):
            self._send_json({"message": "Invalid JSON body"}, 400)
            return
        try:
            status, body = route(payload)
        except Exception:
            logger.exception("Unhandled error on %s", path)
            status, body = 500, {"message": "An internal server error occurred."}
        self._send_json(body, status)

    def do_GET(self) -> None:
        self._method_not_allowed()

    def do_PUT(self) -> None:
        self._method_not_allowed()

    def do_DELETE(self) -> None:
        self._method_not_allowed()

    def _method_not_allowed(self) -> None:
        path = urlparse(self.path).path
        if path not in self.routes:
            self._send_json({"message": "Not found"}, 404)
            return
        self._send_json({"message": "Method not allowed"}, 405, extra_headers={"Allow": "POST"})

    def _read_json_body(self) -> Any:
        length = int(self.headers.get("Content-Length", 0) or 0)
        raw = self.rfile.read(length) if length else b""
        return json.loads(raw) if raw else {}

    def _send_json(
        self,
        data: Dict[str, Any],
        status: int = 200,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> None:
        body = json.dumps(data).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        for key, value in (extra_headers or {}).items():
            self.send_header(key, value)
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        logger.info("%s - %s", self.address_string(), fmt % args)


def make_server(port: int, host: str = "") -> ThreadingHTTPServer:
    return ThreadingHTTPServer((host, port), StudySpotHandler)


def main() -> int:
    config.load_env()
    config.load_search_config()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    port = int(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_PORT

    server = make_server(port)
    logger.info("Study spot API running at http://localhost:%s", port)

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down.")
    server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
