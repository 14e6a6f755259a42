"""Shared fixtures for the ParcelCheck test suite.

Provides a Flask test client wired to a temporary SQLite database, and
small builders for parcels and Overpass elements.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # sqlite3 opens its own handle
os.environ["PARCELCHECK_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "fake-anon-key")
# Rate limits are read at import; keep the evaluation routes usable across tests
os.environ.setdefault("RATE_LIMIT_DEFAULT", "10000/minute")
os.environ.setdefault("RATE_LIMIT_EVAL", "10000/minute")

from app import app  # noqa: E402
from models import init_db, _get_db  # noqa: E402
from parcel_store import LandParcel  # noqa: E402

# Base template expects csrf_token() to exist. Provide a benign test fallback.
app.jinja_env.globals.setdefault("csrf_token", lambda: "")


@pytest.fixture(autouse=True)
def _fresh_db():
    """Empty the owned tables before every test, keeping the schema."""
    init_db()
    conn = _get_db()
    for table in ("events", "snapshots", "overpass_cache"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def client():
    """Flask test client with CSRF disabled (we're testing logic, not CSRF)."""
    app.config["TESTING"] = True
    app.config["WTF_CSRF_ENABLED"] = False
    with app.test_client() as c:
        yield c


def make_parcel(**overrides):
    """LandParcel with Devanahalli defaults; override any field."""
    fields = dict(
        id=1,
        property_name="Green Acres Plot",
        property_type="Residential Plot",
        location="Devanahalli, Bangalore",
        url="https://example.com/plot/1",
        total_area=2400.0,
        total_price="₹75,00,000",
        price_per_sqft="₹3125",
        source="Listing",
        latitude=13.2468,
        longitude=77.7120,
    )
    fields.update(overrides)
    return LandParcel(**fields)


@pytest.fixture()
def parcel():
    return make_parcel()
