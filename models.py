"""
Local SQLite storage for ParcelCheck.

Three tables, all written with plain sqlite3:

    snapshots       shared assessments behind /s/<snapshot_id>
    events          append-only analytics (see log_event)
    overpass_cache  Overpass answers keyed by a hash of the query

Parcel and project rows are not copied here; they are read from Supabase
on every request.
"""

import hashlib
import json
import logging
import os
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("PARCELCHECK_DB_PATH", "parcelcheck.db")

OVERPASS_CACHE_TTL_DAYS = 7

_SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshots (
    snapshot_id    TEXT PRIMARY KEY,
    parcel_name    TEXT NOT NULL,
    latitude       REAL,
    longitude      REAL,
    overall_score  REAL,
    risk_level     TEXT,
    result_json    TEXT NOT NULL,
    view_count     INTEGER NOT NULL DEFAULT 0,
    created_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS snapshots_by_created ON snapshots(created_at);

CREATE TABLE IF NOT EXISTS events (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type   TEXT NOT NULL,
    snapshot_id  TEXT,
    metadata     TEXT,
    created_at   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS events_by_type ON events(event_type);

CREATE TABLE IF NOT EXISTS overpass_cache (
    cache_key      TEXT PRIMARY KEY,
    response_json  TEXT NOT NULL,
    created_at     TEXT NOT NULL
);
"""


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _get_db():
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    # WAL lets gunicorn workers read while another writes
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextmanager
def _db():
    """Connection that commits on success and always closes."""
    conn = _get_db()
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db():
    with _db() as conn:
        conn.executescript(_SCHEMA)


# --- snapshots --------------------------------------------------------------

def generate_snapshot_id():
    return secrets.token_hex(4)


def save_snapshot(result_dict):
    """
    Store an evaluation_to_dict() payload and return its snapshot_id.

    Name, coordinates, overall score and risk level are copied into their
    own columns so listings do not have to parse result_json.
    """
    parcel = result_dict.get("parcel") or {}
    overall = (result_dict.get("assessment_scores") or {}).get("overall")
    risk_level = (result_dict.get("risk_analysis") or {}).get("risk_level")
    snapshot_id = generate_snapshot_id()

    with _db() as conn:
        conn.execute(
            "INSERT INTO snapshots (snapshot_id, parcel_name, latitude, longitude,"
            " overall_score, risk_level, result_json, created_at)"
            " VALUES (:id, :name, :lat, :lon, :overall, :risk, :result, :now)",
            {
                "id": snapshot_id,
                "name": parcel.get("property_name") or "Land Parcel",
                "lat": parcel.get("latitude"),
                "lon": parcel.get("longitude"),
                "overall": overall,
                "risk": risk_level,
                "result": json.dumps(result_dict, default=str),
                "now": _utcnow(),
            },
        )
    return snapshot_id


def get_snapshot(snapshot_id):
    """Row as a dict plus the decoded payload under "result"; None if absent or unreadable."""
    with _db() as conn:
        row = conn.execute(
            "SELECT * FROM snapshots WHERE snapshot_id = ?", (snapshot_id,)
        ).fetchone()
    if row is None:
        return None

    snapshot = dict(row)
    try:
        snapshot["result"] = json.loads(snapshot["result_json"])
    except (json.JSONDecodeError, TypeError):
        logger.error("Snapshot %s has unreadable result_json", snapshot_id)
        return None
    return snapshot


def increment_view_count(snapshot_id):
    with _db() as conn:
        conn.execute(
            "UPDATE snapshots SET view_count = view_count + 1 WHERE snapshot_id = ?",
            (snapshot_id,),
        )


# --- analytics --------------------------------------------------------------

def log_event(event_type, snapshot_id=None, metadata=None):
    """
    Append an analytics event.

    event_type: one of location_resolved, assessment_run, snapshot_created,
                snapshot_viewed
    """
    with _db() as conn:
        conn.execute(
            "INSERT INTO events (event_type, snapshot_id, metadata, created_at)"
            " VALUES (?, ?, ?, ?)",
            (event_type, snapshot_id,
             json.dumps(metadata) if metadata else None, _utcnow()),
        )


def get_event_counts():
    with _db() as conn:
        rows = conn.execute(
            "SELECT event_type, COUNT(*) AS n FROM events GROUP BY event_type"
        ).fetchall()
    return {row["event_type"]: row["n"] for row in rows}


# --- Overpass cache ---------------------------------------------------------
# Failures here are logged and treated as a miss; an assessment never
# fails because the cache did.

def overpass_cache_key(query_string: str) -> str:
    return hashlib.sha256(query_string.encode("utf-8")).hexdigest()


def _is_fresh(created_at: Optional[str], ttl_days: int) -> bool:
    """Entries with a missing or unparseable timestamp count as fresh."""
    if not created_at:
        return True
    try:
        created = datetime.fromisoformat(created_at)
    except (ValueError, TypeError):
        return True
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - created <= timedelta(days=ttl_days)


def _cache_row(cache_key: str) -> Optional[sqlite3.Row]:
    try:
        with _db() as conn:
            return conn.execute(
                "SELECT response_json, created_at FROM overpass_cache WHERE cache_key = ?",
                (cache_key,),
            ).fetchone()
    except sqlite3.Error:
        logger.warning("Overpass cache read failed for %s", cache_key, exc_info=True)
        return None


def get_overpass_cache(cache_key: str, ttl_days: Optional[int] = None) -> Optional[str]:
    """Cached JSON text when younger than ttl_days (default 7), else None."""
    row = _cache_row(cache_key)
    if row is None:
        return None
    if ttl_days is None:
        ttl_days = OVERPASS_CACHE_TTL_DAYS
    if not _is_fresh(row["created_at"], ttl_days):
        return None
    return row["response_json"]


def get_overpass_cache_stale(cache_key: str) -> Optional[Tuple[str, str]]:
    """(response_json, created_at) whatever its age, or None."""
    row = _cache_row(cache_key)
    if row is None:
        return None
    return row["response_json"], row["created_at"]


def set_overpass_cache(cache_key: str, response_json: str) -> None:
    try:
        with _db() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO overpass_cache (cache_key, response_json, created_at)"
                " VALUES (?, ?, ?)",
                (cache_key, response_json, _utcnow()),
            )
    except sqlite3.Error:
        logger.warning("Overpass cache write failed for %s", cache_key, exc_info=True)

