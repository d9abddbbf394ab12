"""Project configuration.

Loads optional overrides from search_config.json when available, falling
back to sensible defaults. Keep API request shapes centralized here.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

_REPO_ROOT = Path(__file__).resolve().parent.parent

API_KEY_ENV = "GOOGLE_MAPS_API_KEY"

# --- API endpoints ---

MAPS_API_BASE_URL = "https://maps.googleapis.com/maps/api"
PLACES_NEARBY_SEARCH_URL = f"{MAPS_API_BASE_URL}/place/nearbysearch/json"
PLACES_DETAILS_URL = f"{MAPS_API_BASE_URL}/place/details/json"
PLACES_PHOTO_URL = f"{MAPS_API_BASE_URL}/place/photo"
PLACES_AUTOCOMPLETE_URL = f"{MAPS_API_BASE_URL}/place/autocomplete/json"
DISTANCE_MATRIX_URL = f"{MAPS_API_BASE_URL}/distancematrix/json"
GEOCODE_URL = f"{MAPS_API_BASE_URL}/geocode/json"

# --- Field masks ---

PLACES_DETAILS_FIELDS = (
    "name,formatted_address,rating,geometry,opening_hours,photos,types,"
    "price_level,user_ratings_total"
)

# --- Discovery ---

SEARCH_KEYWORDS: List[str] = ["cafe", "library", "coworking space", "coffee shop"]
NEARBY_SEARCH_TYPE = "establishment"
SEARCH_RADIUS_FACTOR_M_PER_KM = 1500
SEARCH_RADIUS_MIN_M = 15000
SEARCH_RADIUS_MAX_M = 50000
OK_STATUSES = {"OK", "ZERO_RESULTS"}

# --- Suitability and amenity heuristics ---

SUITABLE_TYPES = {"cafe", "library", "book_store"}
SUITABLE_NAME_TOKENS = ("coffee", "cafe", "library", "coworking", "workspace")
CAFE_TYPES = {"cafe"}
CAFE_NAME_TOKENS = ("coffee", "cafe", "starbucks", "true coffee")
LIBRARY_TYPES = {"library"}
COWORKING_NAME_TOKENS = ("coworking", "workspace")

# --- Enrichment ---

HOURS_NOT_AVAILABLE = "Hours not available"
ADDRESS_NOT_AVAILABLE = "Address not available"
PHOTO_MAX_WIDTH = 400

# --- Distance ---

DISTANCE_MATRIX_BATCH_SIZE = 25
DISTANCE_MODE = "driving"

# --- Ranking ---

DEFAULT_MAX_DISTANCE_KM = 10.0
MAX_RESULTS = 30
COORD_KEY_PRECISION = 6

# --- Presentation ---

RESULTS_PER_PAGE = 6
AUTOCOMPLETE_COMPONENTS: Optional[str] = "country:th"
AUTOCOMPLETE_MAX_PREDICTIONS = 3

# --- Budgets ---

MAX_PLACES_REQUESTS_PER_RUN = 20
MAX_DETAILS_REQUESTS_PER_RUN = 300
MAX_DISTANCE_REQUESTS_PER_RUN = 50

# --- Concurrency ---

PIPELINE_MAX_WORKERS = 8

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 20
HTTP_RETRY_MAX = 3
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0


class MissingApiKeyError(RuntimeError):
    """Raised when the Google Maps API key is not configured."""


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> bool:
    """Load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _REPO_ROOT
    env_path = (root / path).resolve()
    if not env_path.exists():
        return False
    load_dotenv(dotenv_path=env_path, override=False)
    return True


def get_api_key(environ: Optional[dict] = None) -> str:
    env = os.environ if environ is None else environ
    api_key = (env.get(API_KEY_ENV) or "").strip()
    if not api_key:
        raise MissingApiKeyError("Google Maps API key not configured")
    return api_key


def load_search_config(path: Optional[str] = None) -> bool:
    """Load search overrides from a JSON file.

    Updates module-level globals with values from the config file.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "search_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    globals_ref = globals()

    keywords = data.get("keywords") or []
    if keywords:
        globals_ref["SEARCH_KEYWORDS"] = [str(k) for k in keywords]

    max_results = data.get("max_results")
    if max_results is not None:
        globals_ref["MAX_RESULTS"] = int(max_results)

    max_dist = data.get("default_max_distance_km")
    if max_dist is not None:
        globals_ref["DEFAULT_MAX_DISTANCE_KM"] = float(max_dist)

    if "autocomplete_components" in data:
        globals_ref["AUTOCOMPLETE_COMPONENTS"] = data["autocomplete_components"] or None

    workers = data.get("max_workers")
    if workers is not None:
        globals_ref["PIPELINE_MAX_WORKERS"] = max(1, int(workers))

    return True
