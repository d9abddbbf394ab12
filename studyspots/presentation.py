"""Client-side sort, filters and pagination over ranked study spots."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from . import config
from .models import StudySpot

SORT_CHOICES = ("distance", "rating", "reviews")
AMENITY_CHOICES = ("wifi", "coffee", "quiet", "outlets")


@dataclass
class Page:
    items: List[StudySpot]
    page: int
    per_page: int
    total_items: int

    @property
    def total_pages(self) -> int:
        return max(1, math.ceil(self.total_items / self.per_page))

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


def sort_spots(spots: Iterable[StudySpot], by: str = "distance") -> List[StudySpot]:
    if by == "distance":
        return sorted(
            spots,
            key=lambda s: (s.distance is None, s.distance if s.distance is not None else 0.0),
        )
    if by == "rating":
        return sorted(spots, key=lambda s: -float(s.rating or 0))
    if by == "reviews":
        return sorted(spots, key=lambda s: -int(s.user_ratings_total or 0))
    raise ValueError(f"Unknown sort: {by} (expected one of {', '.join(SORT_CHOICES)})")


def is_open_now(spot: StudySpot) -> bool:
    # Substring match on the free-text hours; "Closed" and "Hours not available"
    # fail it, but it does not check the current time against the hours.
    return "open" in (spot.open_time or "").lower()


def filter_spots(
    spots: Iterable[StudySpot],
    amenities: Sequence[str] = (),
    min_rating: Optional[float] = None,
    open_now: bool = False,
) -> List[StudySpot]:
    wanted = [a.lower() for a in amenities]
    unknown = [a for a in wanted if a not in AMENITY_CHOICES]
    if unknown:
        raise ValueError(f"Unknown amenities: {', '.join(unknown)}")

    kept: List[StudySpot] = []
    for spot in spots:
        if any(not getattr(spot, amenity) for amenity in wanted):
            continue
        if min_rating is not None and float(spot.rating or 0) < min_rating:
            continue
        if open_now and not is_open_now(spot):
            continue
        kept.append(spot)
    return kept


def paginate(spots: Sequence[StudySpot], page: int = 1, per_page: Optional[int] = None) -> Page:
    size = per_page or config.RESULTS_PER_PAGE
    if size <= 0:
        raise ValueError("per_page must be positive")
    total_pages = max(1, math.ceil(len(spots) / size))
    current = min(max(1, int(page)), total_pages)
    start = (current - 1) * size
    return Page(
        items=list(spots[start : start + size]),
        page=current,
        per_page=size,
        total_items=len(spots),
    )
