"""Suitability and amenity heuristics based on place types and name tokens."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from . import config


@dataclass(frozen=True)
class Amenities:
    wifi: bool
    coffee: bool
    quiet: bool
    outlets: bool


@dataclass(frozen=True)
class Classification:
    suitable: bool
    amenities: Amenities


def _matches_any(text: str, needles: Iterable[str]) -> bool:
    return any(needle in text for needle in needles)


def classify(name: Optional[str], types: Optional[Iterable[str]]) -> Classification:
    """Decide whether a place looks study-friendly and infer its amenities.

    Amenities are never observed directly: cafes are assumed to have wifi,
    coffee and outlets, libraries and coworking spaces wifi, quiet and outlets.
    """
    lowered = (name or "").lower()
    type_set = set(types or ())

    suitable = bool(type_set & config.SUITABLE_TYPES) or _matches_any(
        lowered, config.SUITABLE_NAME_TOKENS
    )

    is_cafe = bool(type_set & config.CAFE_TYPES) or _matches_any(lowered, config.CAFE_NAME_TOKENS)
    is_library = bool(type_set & config.LIBRARY_TYPES)
    is_coworking = _matches_any(lowered, config.COWORKING_NAME_TOKENS)

    workable = is_cafe or is_library or is_coworking
    amenities = Amenities(
        wifi=workable,
        coffee=is_cafe,
        quiet=is_library or is_coworking,
        outlets=workable,
    )
    return Classification(suitable=suitable, amenities=amenities)
