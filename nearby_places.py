"""
Points of interest around a parcel, grouped into the four assessment
categories (education, commercial, water, transport).

Each category is one Overpass union query over its OSM tags. Results are
fetched once at the widest radius (5 km) and narrowed locally when the
user picks a smaller radius.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from geo import haversine_km
from overpass_http import OverpassQueryError, OverpassRateLimitError, overpass_query
from scoring_config import SCORING_MODEL, round1

logger = logging.getLogger(__name__)

RADIUS_OPTIONS = (0.5, 1.0, 1.5, 2.0, 3.0, 5.0)
DEFAULT_RADIUS_KM = 5.0

PLACE_CATEGORIES: Dict[str, List[str]] = {
    "education": [
        "amenity=school", "amenity=college", "amenity=university",
        "amenity=kindergarten", "building=school", "building=university",
    ],
    "commercial": [
        "shop=mall", "shop=supermarket", "amenity=marketplace",
        "shop=department_store", "building=commercial", "building=retail",
        "shop=convenience",
    ],
    "water": [
        "natural=water", "water=lake", "water=river", "water=reservoir",
        "water=pond", "water=canal", "waterway=river",
    ],
    "transport": [
        "highway=bus_stop", "amenity=bus_station", "railway=station",
        "railway=halt", "railway=tram_stop", "public_transport=station",
        "public_transport=stop_position", "aeroway=aerodrome",
        "aeroway=terminal", "amenity=taxi", "amenity=ferry_terminal",
    ],
}

_NAME_KEYS = ("name", "operator", "shop")
_CATEGORY_KEYS = (
    "amenity", "natural", "shop", "water", "highway", "railway",
    "aeroway", "building",
)


@dataclass
class NearbyPlace:
    name: str
    distance_km: float
    category: str
    lat: float
    lng: float

    def to_dict(self):
        return asdict(self)


def build_overpass_query(lat: float, lng: float, radius_km: float,
                         tags: List[str]) -> str:
    """Union of node/way/relation clauses, one set per ``key=value`` tag."""
    radius_m = int(round(radius_km * 1000))
    clauses = []
    for tag in tags:
        for element_type in ("node", "way", "relation"):
            clauses.append(
                f"{element_type}[{tag}](around:{radius_m},{lat},{lng});"
            )
    body = "\n  ".join(clauses)
    return f"[out:json][timeout:25];\n(\n  {body}\n);\nout center;"


def _element_position(element: dict) -> Optional[tuple]:
    lat = element.get("lat")
    lon = element.get("lon")
    if lat is None or lon is None:
        center = element.get("center") or {}
        lat = center.get("lat")
        lon = center.get("lon")
    if lat is None or lon is None:
        return None
    return float(lat), float(lon)


def parse_elements(elements: List[dict], lat: float, lng: float,
                   radius_km: float) -> List[NearbyPlace]:
    """Convert raw Overpass elements into named places within *radius_km*.

    Elements without a position or any usable name are dropped.
    """
    places = []
    for element in elements:
        position = _element_position(element)
        if position is None:
            continue
        el_lat, el_lng = position

        distance = haversine_km(lat, lng, el_lat, el_lng)
        if distance > radius_km:
            continue

        tags = element.get("tags") or {}
        name = next((tags[k] for k in _NAME_KEYS if tags.get(k)), None)
        if not name:
            continue
        category = next((tags[k] for k in _CATEGORY_KEYS if tags.get(k)), "Unknown")

        places.append(NearbyPlace(
            name=name,
            distance_km=round(distance, 2),
            category=category,
            lat=el_lat,
            lng=el_lng,
        ))

    places.sort(key=lambda p: p.distance_km)
    return places


def fetch_nearby_places(lat: float, lng: float,
                        radius_km: float = DEFAULT_RADIUS_KM,
                        tags: Optional[List[str]] = None,
                        caller: str = "nearby_places") -> List[NearbyPlace]:
    """Query Overpass for *tags* around a point.

    Failures are logged and yield an empty list; a missing category
    should never sink a whole assessment.
    """
    if not tags:
        return []
    query = build_overpass_query(lat, lng, radius_km, tags)
    try:
        data = overpass_query(query, caller=caller)
    except (OverpassQueryError, OverpassRateLimitError) as e:
        logger.warning("Error fetching nearby places (%s): %s", caller, e)
        return []
    if data.get("_stale"):
        logger.info("Nearby places for %s served from stale cache", caller)
    return parse_elements(data.get("elements") or [], lat, lng, radius_km)


def fetch_category(lat: float, lng: float, category: str,
                   radius_km: float = DEFAULT_RADIUS_KM) -> List[NearbyPlace]:
    if category not in PLACE_CATEGORIES:
        raise ValueError(f"Unknown place category: {category!r}")
    return fetch_nearby_places(
        lat, lng, radius_km, PLACE_CATEGORIES[category],
        caller=f"nearby_places.{category}",
    )


def within_radius(places: List[NearbyPlace], radius_km: float) -> List[NearbyPlace]:
    return [p for p in places if p.distance_km <= radius_km]


def calculate_place_score(places: List[NearbyPlace]) -> float:
    """0-10 score for one category; *places* must be sorted by distance."""
    if not places:
        return 0.0
    cfg = SCORING_MODEL.places
    score = min(len(places) * cfg.per_place, cfg.count_cap)
    very_close = sum(1 for p in places if p.distance_km < cfg.very_close_km)
    score += min(very_close * cfg.per_very_close, cfg.very_close_cap)
    score += max(0.0, cfg.proximity_km - places[0].distance_km)
    return min(round1(score), cfg.ceiling)
