"""Server-side parcel map for the printable report, using staticmap + OSM tiles."""

import io
import base64
import logging
from typing import Dict, List, Optional

from staticmap import StaticMap, CircleMarker

logger = logging.getLogger(__name__)


class ParcelStaticMap(StaticMap):
    """StaticMap with zoom clamped to [11, 16].

    Place lists reach 5 km from the parcel, so the floor is one level
    wider than a neighbourhood view.
    """

    ZOOM_MIN = 11
    ZOOM_MAX = 16

    def _calculate_zoom(self):
        z = super()._calculate_zoom()
        return max(self.ZOOM_MIN, min(self.ZOOM_MAX, z))


USER_AGENT = "ParcelCheck/1.0 (land parcel evaluation tool)"

CATEGORY_COLORS = {
    "education": "#2563eb",   # blue
    "commercial": "#16a34a",  # green
    "water": "#0891b2",       # cyan
    "transport": "#ea580c",   # orange
}

RESIDENTIAL_COLOR = "#7c3aed"  # purple
PARCEL_COLOR = "#dc2626"       # red

# Cap per category so a dense city centre doesn't bury the parcel pin
MAX_MARKERS_PER_CATEGORY = 15

# Minimum bbox offset (~0.5 km) when only the parcel is shown
MIN_BBOX_DEG = 0.005


def _has_other_markers(places: Optional[Dict[str, List[dict]]],
                       residential: Optional[List[dict]]) -> bool:
    """True if any POI or project has coordinates."""
    for group in list((places or {}).values()) + [residential or []]:
        for item in (group or []):
            if item.get("lat", item.get("latitude")) is not None and \
                    item.get("lng", item.get("longitude")) is not None:
                return True
    return False


def _position(item: dict):
    lat = item.get("lat", item.get("latitude"))
    lng = item.get("lng", item.get("longitude"))
    if lat is None or lng is None:
        return None
    return lng, lat  # staticmap uses (lng, lat)


def generate_parcel_map(
    parcel_lat: float,
    parcel_lng: float,
    places: Optional[Dict[str, List[dict]]] = None,
    residential: Optional[List[dict]] = None,
    width: int = 720,
    height: int = 420,
) -> Optional[str]:
    """Render the parcel, nearby places and projects as a base64 PNG.

    *places* maps category -> list of place dicts (lat/lng keys);
    *residential* is a list of project dicts (latitude/longitude keys).
    Returns a base64 string (no data URI prefix) or None if rendering
    fails for any reason.
    """
    try:
        m = ParcelStaticMap(
            width,
            height,
            padding_x=24,
            padding_y=24,
            url_template="http://a.tile.openstreetmap.org/{z}/{x}/{y}.png",
            tile_request_timeout=10,
            headers={"User-Agent": USER_AGENT},
        )

        for category, items in (places or {}).items():
            color = CATEGORY_COLORS.get(category, "#6b7280")
            for item in (items or [])[:MAX_MARKERS_PER_CATEGORY]:
                pos = _position(item)
                if pos:
                    m.add_marker(CircleMarker(pos, color, 8))

        for project in (residential or [])[:MAX_MARKERS_PER_CATEGORY]:
            pos = _position(project)
            if pos:
                m.add_marker(CircleMarker(pos, RESIDENTIAL_COLOR, 9))

        # Parcel pin last so it draws on top
        m.add_marker(CircleMarker((parcel_lng, parcel_lat), PARCEL_COLOR, 16))
        m.add_marker(CircleMarker((parcel_lng, parcel_lat), "white", 8))

        if not _has_other_markers(places, residential):
            d = MIN_BBOX_DEG
            for lng_offset, lat_offset in [(-d, -d), (d, -d), (-d, d), (d, d)]:
                m.add_marker(
                    CircleMarker(
                        (parcel_lng + lng_offset, parcel_lat + lat_offset),
                        "#ffffff",
                        1,
                    )
                )

        image = m.render()
        buffer = io.BytesIO()
        image.save(buffer, format="PNG", optimize=True)
        return base64.b64encode(buffer.getvalue()).decode("utf-8")

    except Exception:
        logger.exception("Failed to generate parcel map")
        return None
