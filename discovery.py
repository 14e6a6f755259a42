"""
Discovery screen options and main-navigation quick filters.

The discovery screen offers four fixed option lists; whatever the user
picks becomes a filters dict for parcel_filters.ParcelFilters. Selected
townships also carry their coordinates so the proximity steps of the
filter cascade can run.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

TOWNSHIPS = (
    "Prestige Lakeside Habitat",
    "Brigade Cornerstone Utopia",
    "Sobha Dream Acres",
    "Godrej Reserve",
    "Shriram Greenfield",
    "Adarsh Palm Retreat",
    "Embassy Springs",
    "Puravankara Purva Land",
)

INFRASTRUCTURE = (
    "Roads", "Power", "Water", "Internet", "Drainage", "Parks",
    "Street Lights", "Security",
)

REAL_ESTATE_NEWS = (
    "Bangalore Land Prices Rise 15%",
    "New IT Parks in Electronic City",
    "Infrastructure Development Updates",
    "Airport Connectivity Improvements",
    "Metro Line Extensions",
    "New Educational Institutes",
)

REAL_ESTATE_ADS = (
    "Premium Plots in Devanahalli",
    "Residential Land Near Airport",
    "BMRDA Approved Sites",
    "Investment Opportunities",
    "Gated Community Plots",
    "Ready to Construct Land",
)

# Approximate township centroids (lat, lng)
TOWNSHIP_COORDINATES: Dict[str, Tuple[float, float]] = {
    "Prestige Lakeside Habitat": (12.9416, 77.7470),
    "Brigade Cornerstone Utopia": (12.9398, 77.7554),
    "Sobha Dream Acres": (12.9367, 77.7100),
    "Godrej Reserve": (13.2400, 77.7000),
    "Shriram Greenfield": (13.0550, 77.7500),
    "Adarsh Palm Retreat": (12.9250, 77.6830),
    "Embassy Springs": (13.2150, 77.6650),
    "Puravankara Purva Land": (13.2250, 77.7150),
}

EMPTY_SELECTION_ERROR = "Please select at least one filter to discover parcels"


class SelectionError(ValueError):
    """User input that cannot become a filter."""


def toggle_selection(selected: List[str], value: str) -> List[str]:
    """Return a new list with *value* removed if present, else appended."""
    if value in selected:
        return [item for item in selected if item != value]
    return list(selected) + [value]


def discovery_options():
    return {
        "townships": list(TOWNSHIPS),
        "infrastructure": list(INFRASTRUCTURE),
        "news": list(REAL_ESTATE_NEWS),
        "ads": list(REAL_ESTATE_ADS),
    }


@dataclass
class DiscoverySelection:
    townships: List[str] = field(default_factory=list)
    infrastructure: List[str] = field(default_factory=list)
    news: List[str] = field(default_factory=list)
    ads: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "DiscoverySelection":
        """Build from request JSON, keeping only known option values."""
        def pick(key, allowed):
            values = data.get(key) or []
            if isinstance(values, str):
                values = [values]
            return [v for v in values if v in allowed]

        return cls(
            townships=pick("townships", TOWNSHIPS),
            infrastructure=pick("infrastructure", INFRASTRUCTURE),
            news=pick("news", REAL_ESTATE_NEWS),
            ads=pick("ads", REAL_ESTATE_ADS),
        )

    @property
    def total(self) -> int:
        return len(self.townships) + len(self.infrastructure) + len(self.news) + len(self.ads)

    def to_filters(self) -> dict:
        """Filters dict for ParcelFilters.from_dict.

        Raises:
            SelectionError: when nothing is selected.
        """
        if self.total == 0:
            raise SelectionError(EMPTY_SELECTION_ERROR)
        return {
            "townships": list(self.townships),
            "township_coordinates": [
                {"name": name, "latitude": lat, "longitude": lng}
                for name in self.townships
                for lat, lng in [TOWNSHIP_COORDINATES[name]]
            ],
            "infrastructure": list(self.infrastructure),
            "news": list(self.news),
            "ads": list(self.ads),
        }


# ---------------------------------------------------------------------------
# Quick filters
# ---------------------------------------------------------------------------

def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _to_float(value) -> Optional[float]:
    if _is_blank(value):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return None if result != result else result


def cost_filter(value) -> dict:
    cost = _to_float(value)
    if cost is None or cost <= 0:
        raise SelectionError("Please enter a valid cost value")
    return {"max_cost": cost}


def size_filter(min_value, max_value) -> dict:
    """Empty min means 0; empty max means unbounded."""
    minimum = 0.0 if _is_blank(min_value) else _to_float(min_value)
    maximum = float("inf") if _is_blank(max_value) else _to_float(max_value)
    if (minimum is None or maximum is None
            or not (minimum >= 0 and maximum > 0 and minimum <= maximum)):
        raise SelectionError("Please enter valid size range")
    result = {"min_size": minimum}
    if maximum != float("inf"):
        result["max_size"] = maximum
    return result


def distance_filter(value) -> dict:
    distance = _to_float(value)
    if distance is None or distance <= 0:
        raise SelectionError("Please enter a valid distance value")
    return {"max_distance": distance}
