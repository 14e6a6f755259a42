"""Route tests for app.py.

Overpass, Supabase and map rendering are patched out; snapshots and
events go to the temporary SQLite database from conftest.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from bs4 import BeautifulSoup

from conftest import make_parcel
from discovery import EMPTY_SELECTION_ERROR
from maps_links import LINK_PARSE_ERROR, LinkResolutionError
from models import get_event_counts, get_snapshot
from parcel_store import ParcelNotFoundError, ParcelStoreError

LINK = "https://www.google.com/maps/place/Devanahalli/@13.2468,77.712,15z"
JSON = {"Accept": "application/json"}


@pytest.fixture(autouse=True)
def store():
    """Offline services: fake parcel store, no Overpass, stub map image."""
    s = MagicMock()
    s.find_parcel.return_value = make_parcel()
    s.fetch_all_parcels.return_value = [
        make_parcel(),
        make_parcel(id=2, property_name="Pricey Plot", price_per_sqft="₹9,000"),
    ]
    s.fetch_residential_projects.return_value = []
    with patch("app.get_store", return_value=s), \
            patch("parcel_analysis.get_store", return_value=s), \
            patch("parcel_analysis.fetch_category", return_value=[]), \
            patch("app.generate_parcel_map", return_value="iVBORw0KGgo="):
        yield s


@pytest.fixture()
def builder(client):
    """Test client carrying the builder cookie in its cookie jar."""
    client.set_cookie("pc_builder", "parcelcheck-builder")
    return client


def _share_radii(html):
    button = BeautifulSoup(html, "html.parser").find(id="share-button")
    return json.loads(button["data-radii"])


# =========================================================================
# Landing and discovery
# =========================================================================

class TestIndex:
    def test_html(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        html = resp.get_data(as_text=True)
        assert 'id="link"' in html
        assert 'id="discovery-form"' in html
        assert "Godrej Reserve" in html

    def test_json(self, client):
        data = client.get("/", headers=JSON).get_json()
        assert data["radius_options"] == [0.5, 1.0, 1.5, 2.0, 3.0, 5.0]
        assert data["categories"] == ["education", "commercial", "water", "transport"]
        assert len(data["discovery"]["townships"]) == 8

    def test_request_id_header(self, client):
        assert len(client.get("/").headers["X-Request-ID"]) == 10


class TestDiscovery:
    def test_options(self, client):
        data = client.get("/api/discovery").get_json()
        assert [len(data[k]) for k in ("townships", "infrastructure", "news", "ads")] == [8, 8, 6, 6]

    def test_empty_selection(self, client):
        resp = client.post("/api/discovery", json={})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == EMPTY_SELECTION_ERROR

    def test_selection_to_filters(self, client):
        resp = client.post("/api/discovery", json={
            "townships": ["Godrej Reserve", "Not A Township"],
            "infrastructure": ["Roads"],
        })
        data = resp.get_json()
        assert data["selected"] == 2
        assert data["filters"]["townships"] == ["Godrej Reserve"]
        assert data["filters"]["township_coordinates"][0]["name"] == "Godrej Reserve"


# =========================================================================
# Links
# =========================================================================

class TestLocation:
    def test_full_link(self, client):
        resp = client.post("/api/location", json={"link": LINK})
        assert resp.status_code == 200
        data = resp.get_json()
        assert (data["latitude"], data["longitude"]) == (13.2468, 77.712)
        assert get_event_counts() == {"location_resolved": 1}

    def test_form_post(self, client):
        resp = client.post("/api/location", data={"link": LINK})
        assert resp.get_json()["latitude"] == 13.2468

    def test_empty(self, client):
        assert client.post("/api/location", json={"link": "  "}).status_code == 400

    def test_unparseable(self, client):
        resp = client.post("/api/location", json={"link": "https://example.com/no-coords"})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == LINK_PARSE_ERROR


class TestResolve:
    @pytest.mark.parametrize("query", ["", "?url=", "?url=ftp://goo.gl/x"])
    def test_bad_url(self, client, query):
        resp = client.get(f"/api/resolve{query}")
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Missing or invalid 'url' query parameter"}

    @patch("app.resolve_short_link", return_value=LINK)
    def test_resolved(self, mock_resolve, client):
        resp = client.get("/api/resolve?url=https://maps.app.goo.gl/abc")
        assert resp.get_json() == {"finalUrl": LINK}
        mock_resolve.assert_called_once_with("https://maps.app.goo.gl/abc")

    @patch("app.resolve_short_link", side_effect=LinkResolutionError("HTTP 500"))
    def test_resolution_failure(self, mock_resolve, client):
        resp = client.get("/api/resolve?url=https://maps.app.goo.gl/abc")
        assert resp.status_code == 500
        assert resp.get_json()["error"] == "HTTP 500"


# =========================================================================
# Search
# =========================================================================

class TestSearch:
    def test_cost_filter(self, client):
        data = client.post("/api/parcels/search", json={"max_cost": 5000}).get_json()
        assert data["count"] == 1
        assert data["parcels"][0]["property_name"] == "Green Acres Plot"
        assert data["parcels"][0]["recommended"] is True
        assert data["filters"]["max_cost"] == 5000
        assert data["request_id"]

    def test_nested_filters_with_quick(self, client):
        resp = client.post("/api/parcels/search", json={
            "filters": {}, "quick": {"kind": "cost", "value": "5000"},
        })
        assert resp.get_json()["count"] == 1

    def test_no_filters(self, client):
        data = client.post("/api/parcels/search", json={}).get_json()
        assert data["count"] == 2
        assert data["summary"] == "All areas"

    @pytest.mark.parametrize("quick", [
        {"kind": "cost", "value": "abc"},
        {"kind": "size", "min": "10", "max": "5"},
        {"kind": "distance", "value": "-1"},
        {"kind": "colour"},
    ])
    def test_bad_quick_filter(self, client, quick):
        resp = client.post("/api/parcels/search", json={"quick": quick})
        assert resp.status_code == 400
        assert resp.get_json()["error"]

    def test_store_down(self, client, store):
        store.fetch_all_parcels.side_effect = ParcelStoreError("connection refused")
        resp = client.post("/api/parcels/search", json={})
        assert resp.status_code == 503
        data = resp.get_json()
        assert data["error"] == "Failed to load land parcels"
        assert data["retry"] is True


# =========================================================================
# Assessment
# =========================================================================

class TestParcelDetail:
    def test_ok(self, client, store):
        resp = client.get("/api/parcels/1?education_radius=1.5")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["parcel"]["property_name"] == "Green Acres Plot"
        assert data["radii"]["education"] == 1.5
        assert data["pricing"]["cost_per_sqft"] == 3125
        store.find_parcel.assert_called_once_with("1")

    def test_not_found(self, client, store):
        store.find_parcel.side_effect = ParcelNotFoundError("No parcel found with identifier: 9")
        resp = client.get("/api/parcels/9")
        assert resp.status_code == 404
        assert "No parcel found" in resp.get_json()["error"]

    def test_store_down(self, client, store):
        store.find_parcel.side_effect = ParcelStoreError("timeout")
        resp = client.get("/api/parcels/1")
        assert resp.status_code == 503
        assert resp.get_json()["error"] == "Failed to fetch land details"

    def test_bad_radius(self, client):
        assert client.get("/api/parcels/1?water_radius=4").status_code == 400


class TestAssessment:
    def test_coordinates(self, client):
        resp = client.post("/api/assessment", json={"latitude": 13.1, "longitude": 77.6})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["parcel"]["id"] == "manual"
        assert data["parcel"]["latitude"] == 13.1
        assert get_event_counts() == {"assessment_run": 1}

    def test_link(self, client):
        data = client.post("/api/assessment", json={"link": LINK}).get_json()
        assert data["parcel"]["url"] == LINK

    @pytest.mark.parametrize("body,message", [
        ({}, "latitude and longitude are required"),
        ({"latitude": "north", "longitude": 77}, "must be numbers"),
        ({"latitude": 95, "longitude": 77}, "Latitude out of range"),
        ({"latitude": 13, "longitude": 77, "radii": [1]}, "radii must be an object"),
    ])
    def test_invalid(self, client, body, message):
        resp = client.post("/api/assessment", json=body)
        assert resp.status_code == 400
        assert message in resp.get_json()["error"]


class TestReports:
    def test_assessment_report_html(self, client):
        resp = client.get("/assessment/report?lat=13.1&lng=77.6&transport_radius=2")
        assert resp.status_code == 200
        html = resp.get_data(as_text=True)
        assert "User Selected Land Parcel" in html
        assert "data:image/png;base64,iVBORw0KGgo=" in html
        assert 'id="share-button"' in html

    def test_assessment_report_json(self, client):
        data = client.get("/assessment/report?lat=13.1&lng=77.6", headers=JSON).get_json()
        assert data["parcel"]["longitude"] == 77.6

    def test_assessment_report_bad_input(self, client):
        resp = client.get("/assessment/report")
        assert resp.status_code == 400
        html = resp.get_data(as_text=True)
        assert "latitude and longitude are required" in html
        assert "Check your input" in html
        assert "Something went wrong" not in html

    def test_bad_radius_page_is_input_error(self, client):
        resp = client.get("/parcels/1/report?water_radius=4")
        assert resp.status_code == 400
        assert "Check your input" in resp.get_data(as_text=True)

    def test_share_button_carries_radii(self, client):
        resp = client.get("/parcels/1/report?education_radius=1")
        radii = _share_radii(resp.get_data(as_text=True))
        assert radii["education"] == 1.0
        assert radii["water"] == 5.0

    def test_parcel_report(self, client):
        resp = client.get("/parcels/1/report")
        assert resp.status_code == 200
        assert "Green Acres Plot" in resp.get_data(as_text=True)

    def test_parcel_report_not_found(self, client, store):
        store.find_parcel.side_effect = ParcelNotFoundError("No parcel found with identifier: 9")
        resp = client.get("/parcels/9/report")
        assert resp.status_code == 404
        assert "No parcel found" in resp.get_data(as_text=True)


# =========================================================================
# Sharing
# =========================================================================

class TestSharing:
    def _share(self, client, body):
        resp = client.post("/api/assessment/share", json=body)
        assert resp.status_code == 201
        return resp.get_json()

    def test_share_stored_parcel(self, client):
        data = self._share(client, {"parcel_id": 1})
        assert data["url"] == f"/s/{data['snapshot_id']}"

        snap = get_snapshot(data["snapshot_id"])
        assert snap["parcel_name"] == "Green Acres Plot"
        assert snap["risk_level"] == "Low"
        assert get_event_counts() == {"snapshot_created": 1}

    def test_share_manual_point(self, client):
        data = self._share(client, {"latitude": 13.1, "longitude": 77.6})
        assert get_snapshot(data["snapshot_id"])["parcel_name"] == "User Selected Land Parcel"

    def test_share_keeps_report_radii(self, client):
        html = client.get("/parcels/1/report?education_radius=1&transport_radius=2").get_data(as_text=True)
        radii = _share_radii(html)

        data = self._share(client, {"parcel_id": 1, "radii": radii})

        snap = get_snapshot(data["snapshot_id"])
        assert snap["result"]["radii"] == radii
        assert snap["result"]["radii"]["education"] == 1.0
        assert snap["result"]["radii"]["transport"] == 2.0

    def test_share_missing_parcel(self, client, store):
        store.find_parcel.side_effect = ParcelNotFoundError("No parcel found with identifier: 9")
        resp = client.post("/api/assessment/share", json={"parcel_id": 9})
        assert resp.status_code == 404

    def test_view_json(self, client):
        sid = self._share(client, {"parcel_id": 1})["snapshot_id"]
        first = client.get(f"/s/{sid}", headers=JSON).get_json()
        second = client.get(f"/s/{sid}", headers=JSON).get_json()

        assert first["view_count"] == 1
        assert second["view_count"] == 2
        assert first["result"]["parcel"]["property_name"] == "Green Acres Plot"
        assert get_event_counts()["snapshot_viewed"] == 2

    def test_view_html(self, client):
        sid = self._share(client, {"parcel_id": 1})["snapshot_id"]
        resp = client.get(f"/s/{sid}")
        assert resp.status_code == 200
        assert "Green Acres Plot" in resp.get_data(as_text=True)

    def test_unknown_snapshot(self, client):
        assert client.get("/s/nonexistent").status_code == 404
        resp = client.get("/s/nonexistent", headers=JSON)
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Snapshot not found"


# =========================================================================
# Health, builder mode and errors
# =========================================================================

class TestHealthz:
    def test_ok(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "ok"
        assert set(data["services"]) >= {"overpass", "supabase", "link_resolver"}

    def test_missing_config(self, client, monkeypatch):
        monkeypatch.delenv("SUPABASE_ANON_KEY")
        resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.get_json()["missing_keys"] == ["SUPABASE_ANON_KEY"]


class TestBuilderRoutes:
    def test_hidden_without_builder(self, client):
        assert client.get("/debug/events").status_code == 404
        assert client.post("/debug/assess", json={}).status_code == 404

    def test_events_with_cookie(self, builder):
        builder.post("/api/location", json={"link": LINK})
        resp = builder.get("/debug/events")
        assert resp.status_code == 200
        assert resp.get_json() == {"location_resolved": 1}

    def test_builder_key_sets_cookie(self, client):
        resp = client.get("/debug/events?builder_key=parcelcheck-builder")
        assert resp.status_code == 200
        assert "pc_builder=parcelcheck-builder" in resp.headers["Set-Cookie"]

    def test_debug_assess_trace(self, builder):
        resp = builder.post("/debug/assess", json={"latitude": 13.1, "longitude": 77.6})
        assert resp.status_code == 200
        data = resp.get_json()
        stages = {s["stage"] for s in data["trace"]["stages"]}
        assert {"education", "residential", "risk_analysis"} <= stages
        assert data["trace"]["final_outcome"] == "success"

    def test_debug_assess_error(self, builder):
        resp = builder.post("/debug/assess", json={})
        assert resp.status_code == 500
        data = resp.get_json()
        assert "latitude and longitude are required" in data["error"]
        assert data["trace"]["final_outcome"] == "empty"


class TestNonObjectBodies:
    @pytest.mark.parametrize("path", [
        "/api/location", "/api/discovery", "/api/parcels/search",
        "/api/assessment", "/api/assessment/share",
    ])
    @pytest.mark.parametrize("body", [[1, 2], "text", 7])
    def test_rejected(self, client, path, body):
        resp = client.post(path, json=body)
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "Request body must be a JSON object"

    def test_debug_assess_rejects_array(self, builder):
        resp = builder.post("/debug/assess", json=[{"latitude": 13.1}])
        assert resp.status_code == 400


class TestErrorHandlers:
    def test_api_404_is_json(self, client):
        resp = client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Not found"

    def test_page_404_is_html(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert "Not found" in resp.get_data(as_text=True)
