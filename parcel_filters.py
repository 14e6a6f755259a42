"""
Filter cascade and LAS/VAS ranking for the filtered parcel list.

apply_filters() runs six steps in a fixed order. The first five only ever
narrow the working set; the township steps are soft (skipped when they
would leave nothing). The last step is a fallback that restarts from the
full parcel list around the searched place.

Scores:
  LAS (Land Assessment Score): distance to the selected townships or
      searched place, plus a bonus when infrastructure options are picked.
  VAS (Value Assessment Score): price band plus bounded random jitter.
  overall: mean of the two.
"""

import logging
import math
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from geo import coerce_coordinate, haversine_km
from parcel_store import LandParcel
from scoring_config import SCORING_MODEL, clamp, round1

logger = logging.getLogger(__name__)

TOWNSHIP_RADIUS_KM = 10.0
DEFAULT_SEARCH_RADIUS_KM = 50.0
RECOMMENDED_COUNT = 3


@dataclass(frozen=True)
class ReferencePoint:
    latitude: float
    longitude: float
    name: str = ""

    @classmethod
    def from_value(cls, value) -> Optional["ReferencePoint"]:
        """Parse {"latitude", "longitude"[, "name"]}; None if unusable."""
        if not isinstance(value, dict):
            return None
        lat = coerce_coordinate(value.get("latitude", value.get("lat")))
        lng = coerce_coordinate(value.get("longitude", value.get("lng")))
        # Zero coordinates count as missing, matching the stored data
        if not lat or not lng:
            return None
        return cls(latitude=lat, longitude=lng, name=str(value.get("name") or ""))

    def distance_to(self, parcel: LandParcel) -> float:
        return haversine_km(self.latitude, self.longitude, parcel.latitude, parcel.longitude)


_KEY_ALIASES = {
    "maxCost": "max_cost",
    "minSize": "min_size",
    "maxSize": "max_size",
    "maxDistance": "max_distance",
    "townshipCoordinates": "township_coordinates",
    "placeCoordinates": "place_coordinates",
    "userLocation": "user_location",
    "searchRadius": "search_radius",
}


def _positive(value) -> Optional[float]:
    """Number > 0, else None (0 and blanks mean 'no filter')."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or number <= 0:
        return None
    return number


def _optional_number(value) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def _string_list(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v]


@dataclass
class ParcelFilters:
    max_cost: Optional[float] = None
    min_size: Optional[float] = None
    max_size: Optional[float] = None
    max_distance: Optional[float] = None
    township_coordinates: List[ReferencePoint] = field(default_factory=list)
    townships: List[str] = field(default_factory=list)
    infrastructure: List[str] = field(default_factory=list)
    news: List[str] = field(default_factory=list)
    ads: List[str] = field(default_factory=list)
    place_coordinates: Optional[ReferencePoint] = None
    user_location: Optional[ReferencePoint] = None
    search_radius: float = DEFAULT_SEARCH_RADIUS_KM

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ParcelFilters":
        """Accepts both camelCase and snake_case keys."""
        data = {_KEY_ALIASES.get(k, k): v for k, v in (data or {}).items()}
        townships = [
            p for p in (ReferencePoint.from_value(t)
                        for t in data.get("township_coordinates") or [])
            if p is not None
        ]
        return cls(
            max_cost=_positive(data.get("max_cost")),
            min_size=_optional_number(data.get("min_size")),
            max_size=_optional_number(data.get("max_size")),
            max_distance=_positive(data.get("max_distance")),
            township_coordinates=townships,
            townships=_string_list(data.get("townships")),
            infrastructure=_string_list(data.get("infrastructure")),
            news=_string_list(data.get("news")),
            ads=_string_list(data.get("ads")),
            place_coordinates=ReferencePoint.from_value(data.get("place_coordinates")),
            user_location=ReferencePoint.from_value(data.get("user_location")),
            search_radius=_positive(data.get("search_radius")) or DEFAULT_SEARCH_RADIUS_KM,
        )

    def reference_point(self) -> Optional[ReferencePoint]:
        """Origin for the distance filter: first township, place, then user."""
        if self.township_coordinates:
            return self.township_coordinates[0]
        return self.place_coordinates or self.user_location

    def to_dict(self) -> dict:
        def point(p):
            return None if p is None else {"latitude": p.latitude, "longitude": p.longitude, "name": p.name}

        return {
            "max_cost": self.max_cost,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "max_distance": self.max_distance,
            "township_coordinates": [point(p) for p in self.township_coordinates],
            "townships": list(self.townships),
            "infrastructure": list(self.infrastructure),
            "news": list(self.news),
            "ads": list(self.ads),
            "place_coordinates": point(self.place_coordinates),
            "user_location": point(self.user_location),
            "search_radius": self.search_radius,
        }


# =============================================================================
# Filter cascade
# =============================================================================

def _by_cost(parcels, max_cost):
    return [p for p in parcels if 0 < p.price_per_sqft_value <= max_cost]


def _by_size(parcels, min_size, max_size):
    low = min_size or 0.0
    high = max_size or math.inf
    return [p for p in parcels if low <= p.area_value <= high]


def _by_distance(parcels, origin: ReferencePoint, max_km: float):
    return [
        p for p in parcels
        if p.has_coordinates and origin.distance_to(p) <= max_km
    ]


def _near_any_township(parcels, townships: List[ReferencePoint]):
    return [
        p for p in parcels
        if p.has_coordinates
        and any(t.distance_to(p) <= TOWNSHIP_RADIUS_KM for t in townships)
    ]


def _matches_township_text(parcels, townships: List[str]):
    words = [
        word
        for name in townships
        for word in name.lower().split()
        if len(word) > 3
    ]
    matched = []
    for p in parcels:
        haystacks = ((p.property_name or "").lower(), (p.location or "").lower())
        if any(word in text for word in words for text in haystacks):
            matched.append(p)
    return matched


def apply_filters(parcels: List[LandParcel], filters: ParcelFilters) -> List[LandParcel]:
    """Run the cascade over *parcels* and return the surviving list."""
    results = list(parcels)
    logger.info("Filtering %d parcels", len(results))

    if filters.max_cost:
        results = _by_cost(results, filters.max_cost)
        logger.info("After cost filter (<= %s/sq ft): %d", filters.max_cost, len(results))

    if filters.min_size is not None or filters.max_size is not None:
        results = _by_size(results, filters.min_size, filters.max_size)
        logger.info("After size filter: %d", len(results))

    if filters.max_distance:
        origin = filters.reference_point()
        if origin is None:
            logger.warning("No reference coordinates available for distance filtering")
        else:
            results = _by_distance(results, origin, filters.max_distance)
            logger.info("After distance filter (<= %s km): %d", filters.max_distance, len(results))

    if filters.township_coordinates:
        near = _near_any_township(results, filters.township_coordinates)
        if near:
            results = near
        else:
            logger.info("No parcels near selected townships; trying text match")

    if filters.townships:
        matched = _matches_township_text(results, filters.townships)
        if matched:
            results = matched

    if not results and filters.place_coordinates:
        results = _by_distance(parcels, filters.place_coordinates, filters.search_radius)
        logger.info("After place fallback (<= %s km): %d", filters.search_radius, len(results))

    logger.info("Final filtered count: %d", len(results))
    return results


# =============================================================================
# Scoring and ranking
# =============================================================================

@dataclass
class ParcelScores:
    las: float
    vas: float
    overall: float

    def to_dict(self):
        return {"las": self.las, "vas": self.vas, "overall": self.overall}


@dataclass
class RankedParcel:
    parcel: LandParcel
    scores: ParcelScores
    recommended: bool = False

    def to_dict(self):
        data = self.parcel.to_dict()
        data["scores"] = self.scores.to_dict()
        data["recommended"] = self.recommended
        return data


def location_score(parcel: LandParcel, filters: ParcelFilters) -> float:
    cfg = SCORING_MODEL.location
    if not parcel.has_coordinates:
        return cfg.base
    if filters.township_coordinates:
        nearest = min(t.distance_to(parcel) for t in filters.township_coordinates)
        return max(cfg.township_floor, 10 - nearest / cfg.township_divisor)
    if filters.place_coordinates:
        distance = filters.place_coordinates.distance_to(parcel)
        return max(cfg.place_floor, 10 - distance / cfg.place_divisor)
    return cfg.base


def calculate_scores(parcel: LandParcel, filters: ParcelFilters,
                     rng: Optional[random.Random] = None) -> ParcelScores:
    """LAS, VAS and overall for one parcel, each 1 dp within [0, 10].

    *rng* supplies the VAS jitter; pass a seeded Random for stable output.
    """
    rng = rng or random.Random()
    loc_cfg = SCORING_MODEL.location
    val_cfg = SCORING_MODEL.value

    infra_bonus = loc_cfg.infrastructure_bonus if filters.infrastructure else 0.0
    las = min(loc_cfg.ceiling, location_score(parcel, filters) + infra_bonus)

    price = parcel.price_per_sqft_value
    if 0 < price < val_cfg.cheap_below:
        vas = val_cfg.cheap_base + rng.random() * val_cfg.cheap_jitter
    else:
        vas = val_cfg.standard_base + rng.random() * val_cfg.standard_jitter

    overall = (las + vas) / 2
    return ParcelScores(
        las=clamp(round1(las)),
        vas=clamp(round1(vas)),
        overall=clamp(round1(overall)),
    )


def rank_parcels(parcels: List[LandParcel], filters: ParcelFilters,
                 rng_factory=None) -> List[RankedParcel]:
    """Score, sort by overall descending, flag the top three as recommended.

    rng_factory(parcel) returns the Random used for that parcel's VAS;
    by default one unseeded Random is shared.
    """
    shared = random.Random()
    ranked = [
        RankedParcel(
            parcel=p,
            scores=calculate_scores(p, filters, rng_factory(p) if rng_factory else shared),
        )
        for p in parcels
    ]
    ranked.sort(key=lambda r: r.scores.overall, reverse=True)
    for i, item in enumerate(ranked):
        item.recommended = i < RECOMMENDED_COUNT
    return ranked


def seeded_rng(parcel: LandParcel) -> random.Random:
    """Per-parcel Random so a parcel's VAS is stable between requests."""
    return random.Random(f"{parcel.id}:{parcel.property_name}")


def _fmt_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def filter_summary(filters: ParcelFilters) -> str:
    parts = []
    if filters.max_cost:
        parts.append(f"Cost ≤ ₹{_fmt_number(filters.max_cost)}/sq ft")
    if filters.min_size or filters.max_size:
        low = _fmt_number(filters.min_size or 0)
        high = _fmt_number(filters.max_size) if filters.max_size else "∞"
        parts.append(f"Size: {low} - {high} sq ft")
    if filters.max_distance:
        parts.append(f"Distance ≤ {_fmt_number(filters.max_distance)} km")
    if filters.townships:
        parts.append(", ".join(filters.townships))
    return " | ".join(parts) if parts else "All areas"


def search_parcels(parcels: List[LandParcel], filters: ParcelFilters,
                   rng_factory=seeded_rng) -> Dict[str, object]:
    """Cascade plus ranking, shaped for the search API."""
    ranked = rank_parcels(apply_filters(parcels, filters), filters, rng_factory)
    return {
        "parcels": [r.to_dict() for r in ranked],
        "count": len(ranked),
        "summary": filter_summary(filters),
        "model_version": SCORING_MODEL.version,
    }
