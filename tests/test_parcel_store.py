"""Tests for parcel_store.py with an in-memory stand-in for the Supabase client."""

from types import SimpleNamespace
from unittest.mock import ANY, MagicMock, patch

import pytest

from parcel_store import (
    PARCELS_TABLE,
    PROJECT_COLUMNS,
    PROJECTS_TABLE,
    LandParcel,
    ParcelNotFoundError,
    ParcelStore,
    ParcelStoreError,
    _default_client,
    get_store,
)
from pc_trace import TraceContext, clear_trace, set_trace


class _FakeQuery:
    def __init__(self, rows, error=None):
        self._rows = rows
        self._error = error
        self._filters = []
        self.columns = None

    def select(self, columns):
        self.columns = columns
        return self

    def eq(self, column, value):
        self._filters.append((column, value))
        return self

    def execute(self):
        for column, value in self._filters:
            if self._error and self._error(column, value):
                raise RuntimeError(f"invalid input syntax for {column}: {value!r}")
        rows = [r for r in self._rows if all(r.get(c) == v for c, v in self._filters)]
        return SimpleNamespace(data=rows)


class _FakeClient:
    """Just enough of supabase.Client: table().select().eq().execute().data"""

    def __init__(self, tables, error=None):
        self.tables = tables
        self.error = error
        self.queries = []

    def table(self, name):
        query = _FakeQuery(self.tables.get(name, []), self.error)
        self.queries.append((name, query))
        return query


def _integer_id_column(column, value):
    # Text compared against an integer id column
    return column == "id" and isinstance(value, str)


PARCEL_ROWS = [
    {
        "id": 42, "property_name": "Green Acres Plot", "location": "Devanahalli",
        "total_area": "2400", "total_price": 7500000, "price_per_sqft": "₹3125",
        "latitude": "13.2468", "longitude": 77.712,
    },
    {
        "id": 43, "property_name": "Lake View", "location": "Hoskote",
        "total_area": "n/a", "latitude": "", "longitude": None,
    },
]


@pytest.fixture()
def store():
    return ParcelStore(client=_FakeClient({PARCELS_TABLE: PARCEL_ROWS},
                                          error=_integer_id_column))


# =========================================================================
# Row normalisation
# =========================================================================

class TestLandParcelFromRow:
    def test_coerces_strings(self):
        p = LandParcel.from_row(PARCEL_ROWS[0])
        assert p.latitude == 13.2468
        assert p.longitude == 77.712
        assert p.total_area == 2400.0
        assert p.total_price == "7500000"
        assert p.price_per_sqft_value == 3125.0
        assert p.has_coordinates

    def test_bad_values_become_none(self):
        p = LandParcel.from_row(PARCEL_ROWS[1])
        assert p.total_area is None
        assert p.area_value == 0.0
        assert p.latitude is None
        assert not p.has_coordinates
        assert p.total_price_value == 0.0

    def test_missing_name(self):
        assert LandParcel.from_row({"id": 1}).property_name == ""


# =========================================================================
# Queries
# =========================================================================

class TestFetchAllParcels:
    def test_returns_parcels(self, store):
        parcels = store.fetch_all_parcels()
        assert [p.id for p in parcels] == [42, 43]

    def test_failure_raises_store_error(self):
        client = MagicMock()
        client.table.side_effect = RuntimeError("connection refused")
        with patch("parcel_store.health_monitor.record_call") as record_call:
            with pytest.raises(ParcelStoreError, match="Failed to load landdetails"):
                ParcelStore(client=client).fetch_all_parcels()
        record_call.assert_called_once_with("supabase", False, ANY, "connection refused")

    def test_success_recorded(self, store):
        trace = TraceContext(trace_id="t-store")
        set_trace(trace)
        try:
            with patch("parcel_store.health_monitor.record_call") as record_call:
                store.fetch_all_parcels()
        finally:
            clear_trace()
        record_call.assert_called_once_with("supabase", True, ANY, None)
        assert trace.api_calls[0].service == "supabase"
        assert trace.api_calls[0].endpoint == PARCELS_TABLE


class TestFindParcel:
    def test_numeric_id_after_text_lookups_fail(self, store):
        assert store.find_parcel("42").property_name == "Green Acres Plot"

    def test_by_property_name(self, store):
        assert store.find_parcel("Lake View").id == 43

    def test_integer_identifier(self, store):
        assert store.find_parcel(43).id == 43

    def test_not_found(self, store):
        with pytest.raises(ParcelNotFoundError, match="missing"):
            store.find_parcel("missing")

    def test_every_strategy_failing_is_store_error(self):
        failing = ParcelStore(client=_FakeClient({}, error=lambda column, value: True))
        with pytest.raises(ParcelStoreError) as excinfo:
            failing.find_parcel("42")
        assert not isinstance(excinfo.value, ParcelNotFoundError)

    def test_text_id_column(self):
        rows = [{"id": "abc-1", "property_name": "Text Id Plot"}]
        s = ParcelStore(client=_FakeClient({PARCELS_TABLE: rows}))
        assert s.find_parcel(" abc-1 ").property_name == "Text Id Plot"


class TestResidentialProjects:
    ROWS = [
        {"id": 1, "project_name": "Far Away", "latitude": 13.50, "longitude": 77.71},
        {"id": 2, "project_name": "Next Door", "latitude": "13.2500", "longitude": "77.7120"},
        {"id": 3, "project_name": None, "latitude": 13.27, "longitude": 77.712},
        {"id": 4, "project_name": "No Coords", "latitude": None, "longitude": 77.7},
    ]

    def test_within_five_km_nearest_first(self):
        client = _FakeClient({PROJECTS_TABLE: self.ROWS})
        projects = ParcelStore(client=client).fetch_residential_projects(13.2468, 77.7120)

        assert [p.id for p in projects] == [2, 3]
        assert projects[0].distance_km == pytest.approx(0.36, abs=0.01)
        assert projects[1].project_name == "Unnamed Project"
        assert client.queries[0][1].columns == PROJECT_COLUMNS

    def test_custom_radius(self):
        client = _FakeClient({PROJECTS_TABLE: self.ROWS})
        projects = ParcelStore(client=client).fetch_residential_projects(13.2468, 77.7120, max_km=1)
        assert [p.id for p in projects] == [2]


# =========================================================================
# Client construction
# =========================================================================

class TestClient:
    def test_factory_is_lazy(self):
        factory = MagicMock(return_value=_FakeClient({}))
        s = ParcelStore(client_factory=factory)
        factory.assert_not_called()
        s.fetch_all_parcels()
        s.fetch_all_parcels()
        factory.assert_called_once()

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        with pytest.raises(ParcelStoreError, match="SUPABASE_URL"):
            _default_client()

    @patch("parcel_store.create_client")
    def test_default_client_uses_env(self, create_client, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://abc.supabase.co")
        monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
        _default_client()
        create_client.assert_called_once_with("https://abc.supabase.co", "anon")

    def test_get_store_is_shared(self):
        assert get_store() is get_store()
