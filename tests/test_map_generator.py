"""
Tests for map_generator (parcel report map).

OSM tile requests are mocked with a Pillow-made tile so no network
calls are needed.
"""

import base64
import io
import unittest
from unittest.mock import patch

from PIL import Image
from staticmap import CircleMarker

from map_generator import (
    MAX_MARKERS_PER_CATEGORY,
    ParcelStaticMap,
    _has_other_markers,
    _position,
    generate_parcel_map,
)

PARCEL = (13.2468, 77.7120)


def _tile_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (256, 256), (230, 230, 230)).save(buf, format="PNG")
    return buf.getvalue()


def _mock_tiles():
    """Patch staticmap's requests.get to serve a plain grey tile."""

    class FakeResponse:
        status_code = 200
        content = _tile_bytes()

    return patch("staticmap.staticmap.requests.get", return_value=FakeResponse())


def _decode_png(result):
    raw = base64.b64decode(result)
    assert raw.startswith(b"\x89PNG")
    return Image.open(io.BytesIO(raw))


class TestMarkerHelpers(unittest.TestCase):
    def test_place_coordinates(self):
        self.assertEqual(_position({"lat": 13.0, "lng": 77.0}), (77.0, 13.0))

    def test_project_coordinates(self):
        self.assertEqual(_position({"latitude": 13.0, "longitude": 77.0}), (77.0, 13.0))

    def test_missing_coordinates(self):
        self.assertIsNone(_position({"lat": None, "lng": 77.0}))

    def test_other_markers(self):
        self.assertTrue(_has_other_markers({"education": [{"lat": 13.0, "lng": 77.0}]}, None))
        self.assertTrue(_has_other_markers(None, [{"latitude": 13.0, "longitude": 77.0}]))
        self.assertFalse(_has_other_markers({"water": [{"lat": None, "lng": None}]}, []))
        self.assertFalse(_has_other_markers(None, None))


class TestGenerateParcelMap(unittest.TestCase):
    @_mock_tiles()
    def test_parcel_only(self, _get):
        result = generate_parcel_map(*PARCEL)
        self.assertIsNotNone(result)
        self.assertEqual(_decode_png(result).size, (720, 420))

    @_mock_tiles()
    def test_places_and_projects(self, _get):
        places = {
            "education": [{"lat": 13.25, "lng": 77.715, "name": "School"}],
            "transport": [{"lat": 13.24, "lng": 77.70, "name": "Bus Stand"}],
            "water": [],
        }
        projects = [{"latitude": 13.255, "longitude": 77.72, "project_name": "Acres"}]
        result = generate_parcel_map(*PARCEL, places=places, residential=projects,
                                     width=400, height=300)
        self.assertEqual(_decode_png(result).size, (400, 300))

    @_mock_tiles()
    def test_marker_cap(self, _get):
        many = [{"lat": 13.2468 + i * 0.001, "lng": 77.712} for i in range(40)]
        with patch.object(ParcelStaticMap, "add_marker", autospec=True) as add_marker:
            generate_parcel_map(*PARCEL, places={"commercial": many})
        # capped places plus the two-circle parcel pin
        self.assertEqual(add_marker.call_count, MAX_MARKERS_PER_CATEGORY + 2)

    def test_render_failure_returns_none(self):
        with patch.object(ParcelStaticMap, "render", side_effect=RuntimeError("tiles down")):
            self.assertIsNone(generate_parcel_map(*PARCEL))


class TestParcelStaticMap(unittest.TestCase):
    def test_zoom_clamped(self):
        m = ParcelStaticMap(640, 400, padding_x=24, padding_y=24)
        m.add_marker(CircleMarker((77.0, 12.5), "#2563eb", 8))
        m.add_marker(CircleMarker((78.0, 13.5), "#2563eb", 8))
        self.assertEqual(m._calculate_zoom(), ParcelStaticMap.ZOOM_MIN)

    def test_zoom_ceiling(self):
        m = ParcelStaticMap(640, 400, padding_x=24, padding_y=24)
        m.add_marker(CircleMarker((77.7120, 13.2468), "#2563eb", 8))
        m.add_marker(CircleMarker((77.7121, 13.2469), "#2563eb", 8))
        self.assertEqual(m._calculate_zoom(), ParcelStaticMap.ZOOM_MAX)
