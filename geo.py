"""Distance math and coordinate helpers shared by every ParcelCheck module."""

import math
import re
from dataclasses import dataclass
from typing import Any, Optional

EARTH_RADIUS_KM = 6371.0

_PRICE_STRIP_RE = re.compile(r"[^0-9.\-]")


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def __post_init__(self):
        if not -90.0 <= self.lat <= 90.0:
            raise ValueError(f"Latitude out of range: {self.lat}")
        if not -180.0 <= self.lng <= 180.0:
            raise ValueError(f"Longitude out of range: {self.lng}")

    def to_dict(self):
        return {"lat": self.lat, "lng": self.lng}


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def coerce_coordinate(value: Any) -> Optional[float]:
    """Turn a stored latitude/longitude (number or numeric string) into a float.

    Returns None for missing, empty, non-numeric and NaN values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def parse_price(value: Any) -> float:
    """Parse a formatted price such as "₹3,125" into 3125.0; 0.0 if unparsable."""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return 0.0 if math.isnan(value) else float(value)
    cleaned = _PRICE_STRIP_RE.sub("", str(value))
    try:
        result = float(cleaned)
    except ValueError:
        return 0.0
    return 0.0 if math.isnan(result) else result
