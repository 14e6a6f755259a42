"""
Read access to the land-parcel and residential-project tables.

Both tables live in a hosted Supabase (PostgREST) project and are owned
elsewhere; ParcelCheck only reads them. Latitude/longitude columns may
hold numbers or numeric strings, so every row is normalised through
geo.coerce_coordinate before use.
"""

import logging
import os
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional

from supabase import Client, create_client

import health_monitor
from geo import coerce_coordinate, haversine_km, parse_price
from pc_trace import get_trace

logger = logging.getLogger(__name__)

PARCELS_TABLE = "landdetails"
PROJECTS_TABLE = "residentialprojects"
PROJECT_COLUMNS = "id,project_name,latitude,longitude,url"
RESIDENTIAL_RADIUS_KM = 5.0


class ParcelStoreError(Exception):
    """The table store could not be reached or returned an error."""


class ParcelNotFoundError(ParcelStoreError):
    """No parcel matched any lookup strategy."""


@dataclass
class LandParcel:
    id: Any
    property_name: str
    property_type: Optional[str] = None
    location: Optional[str] = None
    url: Optional[str] = None
    total_area: Optional[float] = None
    total_price: Optional[str] = None
    price_per_sqft: Optional[str] = None
    source: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LandParcel":
        area = row.get("total_area")
        try:
            area = float(area) if area not in (None, "") else None
        except (TypeError, ValueError):
            area = None
        return cls(
            id=row.get("id"),
            property_name=row.get("property_name") or "",
            property_type=row.get("property_type"),
            location=row.get("location"),
            url=row.get("url"),
            total_area=area,
            total_price=_as_text(row.get("total_price")),
            price_per_sqft=_as_text(row.get("price_per_sqft")),
            source=row.get("source"),
            latitude=coerce_coordinate(row.get("latitude")),
            longitude=coerce_coordinate(row.get("longitude")),
        )

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def price_per_sqft_value(self) -> float:
        return parse_price(self.price_per_sqft)

    @property
    def total_price_value(self) -> float:
        return parse_price(self.total_price)

    @property
    def area_value(self) -> float:
        return self.total_area or 0.0

    def to_dict(self):
        return asdict(self)


@dataclass
class ResidentialProject:
    id: Any
    project_name: str
    latitude: float
    longitude: float
    distance_km: float
    url: Optional[str] = None

    def to_dict(self):
        return asdict(self)


def _as_text(value):
    if value is None:
        return None
    return str(value)


def _default_client() -> Client:
    url = os.environ.get("SUPABASE_URL", "")
    key = os.environ.get("SUPABASE_ANON_KEY", "")
    if not url or not key:
        raise ParcelStoreError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
    return create_client(url, key)


class ParcelStore:
    """Thin wrapper around the Supabase table client.

    The client is created lazily so importing this module never needs
    credentials; tests pass their own client.
    """

    def __init__(self, client: Optional[Client] = None,
                 client_factory: Callable[[], Client] = _default_client):
        self._client = client
        self._client_factory = client_factory

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def _select(self, table: str, columns: str = "*",
                eq: Optional[tuple] = None) -> List[Dict[str, Any]]:
        endpoint = table if eq is None else f"{table}?{eq[0]}"
        start = time.monotonic()
        try:
            query = self.client.table(table).select(columns)
            if eq is not None:
                query = query.eq(eq[0], eq[1])
            response = query.execute()
        except ParcelStoreError:
            raise
        except Exception as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            self._record(endpoint, elapsed_ms, False, str(e))
            logger.error("Supabase %s query failed: %s", table, e)
            raise ParcelStoreError(f"Failed to load {table}: {e}") from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        self._record(endpoint, elapsed_ms, True)
        return list(response.data or [])

    @staticmethod
    def _record(endpoint: str, elapsed_ms: int, success: bool,
                error: Optional[str] = None) -> None:
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="supabase",
                endpoint=endpoint,
                elapsed_ms=elapsed_ms,
                status_code=200 if success else 0,
                provider_status="" if success else "error",
            )
        health_monitor.record_call("supabase", success, elapsed_ms, error)

    def fetch_all_parcels(self) -> List[LandParcel]:
        rows = self._select(PARCELS_TABLE)
        logger.info("Loaded %d parcels from %s", len(rows), PARCELS_TABLE)
        return [LandParcel.from_row(r) for r in rows]

    def find_parcel(self, identifier) -> LandParcel:
        """Look a parcel up by id, then property_name, then numeric id.

        Raises:
            ParcelNotFoundError: when no strategy matches.
        """
        identifier = str(identifier).strip()
        strategies = [("id", identifier), ("property_name", identifier)]
        numeric = _as_number(identifier)
        if numeric is not None:
            strategies.append(("id", numeric))

        # A type mismatch (text against an integer id column) is a query
        # error for that strategy only; the next strategy still runs.
        errors = []
        for column, value in strategies:
            try:
                rows = self._select(PARCELS_TABLE, eq=(column, value))
            except ParcelStoreError as e:
                logger.info("Parcel lookup by %s=%r failed: %s", column, value, e)
                errors.append(e)
                continue
            if rows:
                logger.info("Parcel %r found by %s", identifier, column)
                return LandParcel.from_row(rows[0])

        if len(errors) == len(strategies):
            raise errors[-1]
        raise ParcelNotFoundError(f"No parcel found with identifier: {identifier}")

    def fetch_residential_projects(self, lat: float, lng: float,
                                   max_km: float = RESIDENTIAL_RADIUS_KM
                                   ) -> List[ResidentialProject]:
        """Projects within *max_km* of a point, nearest first."""
        rows = self._select(PROJECTS_TABLE, columns=PROJECT_COLUMNS)
        projects = []
        for row in rows:
            p_lat = coerce_coordinate(row.get("latitude"))
            p_lng = coerce_coordinate(row.get("longitude"))
            if p_lat is None or p_lng is None:
                continue
            distance = round(haversine_km(lat, lng, p_lat, p_lng), 2)
            if distance > max_km:
                continue
            projects.append(ResidentialProject(
                id=row.get("id"),
                project_name=row.get("project_name") or "Unnamed Project",
                latitude=p_lat,
                longitude=p_lng,
                distance_km=distance,
                url=row.get("url"),
            ))
        projects.sort(key=lambda p: p.distance_km)
        return projects


def _as_number(identifier: str):
    try:
        number = float(identifier)
    except ValueError:
        return None
    if number != number:  # NaN
        return None
    return int(number) if number.is_integer() else number


_store: Optional[ParcelStore] = None


def get_store() -> ParcelStore:
    """Process-wide store, created on first use."""
    global _store
    if _store is None:
        _store = ParcelStore()
    return _store
