#!/usr/bin/env python3
"""
Detailed Land Parcel Analysis

Evaluates one land parcel (stored, or a user-picked point on the map):
nearby schools, shops, water bodies and transport from OpenStreetMap,
residential projects from the parcel store, a parcel score and pricing
breakdown, and the rule-based risk analysis.

Requirements:
- Overpass API (public endpoint, or OVERPASS_BASE_URL)
- SUPABASE_URL / SUPABASE_ANON_KEY for stored parcels and residential projects

Usage:
    python parcel_analysis.py --lat 13.2 --lng 77.7
    python parcel_analysis.py --link "https://maps.app.goo.gl/..."
    python parcel_analysis.py --parcel-id 42 --json
"""

import argparse
import json
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from geo import Coordinates
from maps_links import LINK_PARSE_ERROR, parse_google_maps_link
from nearby_places import (
    DEFAULT_RADIUS_KM,
    PLACE_CATEGORIES,
    RADIUS_OPTIONS,
    NearbyPlace,
    calculate_place_score,
    fetch_category,
    within_radius,
)
from parcel_store import (
    LandParcel,
    ParcelStore,
    ResidentialProject,
    get_store,
)
from pc_trace import get_trace, set_trace
from risk_analysis import (
    DEFAULT_LATITUDE,
    DEFAULT_LOCATION_NAME,
    DEFAULT_LONGITUDE,
    LandAnalysisResult,
    LocationData,
    analyze_land_parcel,
)
from scoring_config import SCORING_MODEL, rating_label, round1, score_badge

load_dotenv()

logger = logging.getLogger(__name__)

CATEGORIES = tuple(PLACE_CATEGORIES)  # education, commercial, water, transport

MANUAL_PARCEL_ID = "manual"


# =============================================================================
# Manual parcels
# =============================================================================

def manual_parcel(lat: float, lng: float, link: Optional[str] = None) -> LandParcel:
    """A placeholder parcel for coordinates the user picked themselves."""
    coords = Coordinates(lat=lat, lng=lng)
    return LandParcel(
        id=MANUAL_PARCEL_ID,
        property_name="User Selected Land Parcel",
        property_type="Custom Entry",
        location="Coordinates provided by user",
        url=link,
        total_area=2400.0,
        total_price="₹75,00,000",
        price_per_sqft="₹3125",
        source="Manual Entry",
        latitude=coords.lat,
        longitude=coords.lng,
    )


# =============================================================================
# Parcel score and pricing
# =============================================================================

@dataclass
class ParcelScore:
    overall: float
    infrastructure_rating: float  # out of 5
    label: str

    def to_dict(self):
        return asdict(self)


def calculate_parcel_score(parcel: LandParcel) -> ParcelScore:
    cfg = SCORING_MODEL.parcel
    location = (parcel.location or "").lower()
    price = parcel.price_per_sqft_value

    score = cfg.base
    for boost in cfg.keyword_boosts:
        if any(k in location for k in boost.keywords):
            score += boost.boost
    for below, bonus in cfg.price_tiers:
        if price < below:
            score += bonus
            break
    if parcel.area_value > cfg.large_area_sqft:
        score += cfg.large_area_boost
    score = min(cfg.ceiling, score)

    overall = round1(score)
    return ParcelScore(
        overall=overall,
        infrastructure_rating=round1(score / cfg.infrastructure_divisor),
        label=rating_label(overall),
    )


@dataclass
class Pricing:
    cost_per_sqft: int
    plot_size: float
    total_cost: float
    registration: int
    total_investment: float
    market_estimate_per_sqft: int
    market_value: float
    below_market: bool

    def to_dict(self):
        return asdict(self)


def _round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def calculate_pricing(parcel: LandParcel) -> Pricing:
    cfg = SCORING_MODEL.pricing
    per_sqft = _round_half_up(parcel.price_per_sqft_value)
    total = parcel.total_price_value
    registration = _round_half_up(total * cfg.registration_rate)
    return Pricing(
        cost_per_sqft=per_sqft,
        plot_size=parcel.area_value,
        total_cost=total,
        registration=registration,
        total_investment=total + registration,
        market_estimate_per_sqft=_round_half_up(per_sqft * cfg.market_multiplier),
        market_value=round(total * cfg.market_multiplier, 2),
        below_market=per_sqft < cfg.below_market_sqft,
    )


def format_lakhs(amount: float) -> str:
    """₹ amount in lakhs, e.g. 7500000 -> '₹75.00L'."""
    return f"₹{amount / 100000:.2f}L"


# =============================================================================
# Static location tables
# =============================================================================

DISTANCE_TABLES: Dict[str, Dict[str, Dict[str, str]]] = {
    "devanahalli": {
        "airport": {"name": "Kempegowda International Airport", "distance": "12.5 km"},
        "prestige": {"name": "Prestige Lakeside Habitat", "distance": "8.2 km"},
        "business_park": {"name": "Devanahalli Business Park", "distance": "3.1 km"},
        "town": {"name": "Devanahalli Town", "distance": "4.1 km"},
        "city": {"name": "Bangalore City Center", "distance": "52.0 km"},
    },
    "whitefield": {
        "airport": {"name": "Kempegowda International Airport", "distance": "45.0 km"},
        "prestige": {"name": "Prestige Tech Park", "distance": "5.2 km"},
        "business_park": {"name": "Whitefield IT Hub", "distance": "2.1 km"},
        "town": {"name": "Whitefield Main Road", "distance": "3.1 km"},
        "city": {"name": "Bangalore City Center", "distance": "22.0 km"},
    },
    "default": {
        "airport": {"name": "Kempegowda International Airport", "distance": "35.0 km"},
        "prestige": {"name": "Nearby IT Park", "distance": "8.0 km"},
        "business_park": {"name": "Business District", "distance": "5.0 km"},
        "town": {"name": "Town Center", "distance": "6.0 km"},
        "city": {"name": "Bangalore City Center", "distance": "25.0 km"},
    },
}


def _amenities(transport, education, commercial):
    names = {
        "transportation": ("Airport", "Bus Stand", "Railway Station", "Highway Access"),
        "education": ("School", "College", "Medical Facility", "Hospital"),
        "commercial": ("Business Park", "Shopping Complex", "Supermarket", "ATM/Banks"),
    }
    distances = {"transportation": transport, "education": education, "commercial": commercial}
    return {
        group: [
            {"name": name, "distance": f"{km} km"}
            for name, km in zip(names[group], distances[group])
        ]
        for group in names
    }


AMENITY_TABLES: Dict[str, Dict[str, List[Dict[str, str]]]] = {
    "devanahalli": _amenities(
        ("12.5", "4.2", "8.5", "3.1"), ("5.2", "7.8", "4.6", "6.3"), ("3.1", "4.5", "3.8", "4.1"),
    ),
    "whitefield": _amenities(
        ("45.2", "5.1", "9.3", "4.2"), ("4.8", "8.2", "5.1", "7.4"), ("2.1", "3.9", "3.2", "3.5"),
    ),
    "default": _amenities(
        ("35.7", "5.5", "8.9", "4.8"), ("5.0", "8.0", "4.5", "6.0"), ("5.0", "4.0", "3.4", "4.0"),
    ),
}

INFRASTRUCTURE_STATUS = {
    "roads": {"status": "Excellent", "ok": True},
    "power": {"status": "Connected", "ok": True},
    "water": {"status": "BWSSB", "ok": True},
    "internet": {"status": "Fiber Ready", "ok": True},
    "drainage": {"status": "Planned", "ok": False},
}


def location_table_key(parcel: LandParcel) -> str:
    location = (parcel.location or "").lower()
    if "devanahalli" in location:
        return "devanahalli"
    if "whitefield" in location:
        return "whitefield"
    return "default"


# =============================================================================
# Assessment dashboard scores
# =============================================================================

@dataclass
class AssessmentScores:
    education: float = 0.0
    commercial: float = 0.0
    transport: float = 0.0
    water: float = 0.0
    residential: float = 0.0
    infrastructure: float = SCORING_MODEL.assessment.infrastructure_score
    overall: float = 0.0

    def to_dict(self):
        return asdict(self)


def calculate_assessment_scores(categories: Dict[str, List[NearbyPlace]],
                                residential: List[ResidentialProject]) -> AssessmentScores:
    """Six-way dashboard; *categories* are the radius-narrowed place lists."""
    cfg = SCORING_MODEL.assessment
    scores = AssessmentScores(
        education=calculate_place_score(categories.get("education", [])),
        commercial=calculate_place_score(categories.get("commercial", [])),
        transport=calculate_place_score(categories.get("transport", [])),
        water=calculate_place_score(categories.get("water", [])),
        residential=min(len(residential) * cfg.per_residential_project, cfg.residential_cap),
        infrastructure=cfg.infrastructure_score,
    )
    scores.overall = round1(
        (scores.education + scores.commercial + scores.transport
         + scores.water + scores.residential + scores.infrastructure) / 6
    )
    return scores


# =============================================================================
# Evaluation
# =============================================================================

@dataclass
class ParcelEvaluation:
    parcel: LandParcel
    radii: Dict[str, float] = field(default_factory=dict)
    places: Dict[str, List[NearbyPlace]] = field(default_factory=dict)  # full 5 km lists
    residential_projects: List[ResidentialProject] = field(default_factory=list)
    assessment_scores: AssessmentScores = field(default_factory=AssessmentScores)
    parcel_score: Optional[ParcelScore] = None
    pricing: Optional[Pricing] = None
    risk_analysis: Optional[LandAnalysisResult] = None
    risk_error: Optional[str] = None
    distances: Dict[str, Dict[str, str]] = field(default_factory=dict)
    amenities: Dict[str, List[Dict[str, str]]] = field(default_factory=dict)
    infrastructure: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    model_version: str = ""
    notes: List[str] = field(default_factory=list)

    def places_within_radius(self, category: str) -> List[NearbyPlace]:
        radius = self.radii.get(category, DEFAULT_RADIUS_KM)
        return within_radius(self.places.get(category, []), radius)


def normalize_radii(radii: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """Per-category radius in km; every value must be one of RADIUS_OPTIONS."""
    result = {c: DEFAULT_RADIUS_KM for c in CATEGORIES}
    for category, value in (radii or {}).items():
        if category not in result:
            raise ValueError(f"Unknown place category: {category!r}")
        try:
            radius = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid radius for {category}: {value!r}")
        if radius not in RADIUS_OPTIONS:
            raise ValueError(
                f"Radius for {category} must be one of {list(RADIUS_OPTIONS)}, got {radius}"
            )
        result[category] = radius
    return result


def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0, exc_info=True)
        raise
    t1 = time.time()
    if trace:
        trace.record_stage(stage_name, t0, t1)
    else:
        logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
    return result


def _timed_stage_in_thread(parent_trace, stage_name, fn, *args, **kwargs):
    """Run _timed_stage in a worker thread with the caller's trace."""
    set_trace(parent_trace)
    return _timed_stage(stage_name, fn, *args, **kwargs)


def _risk_location(parcel: LandParcel) -> LocationData:
    return LocationData(
        latitude=parcel.latitude or DEFAULT_LATITUDE,
        longitude=parcel.longitude or DEFAULT_LONGITUDE,
        location_name=parcel.location or DEFAULT_LOCATION_NAME,
        area=parcel.total_area,
        price_per_sqft=parcel.price_per_sqft_value,
    )


def evaluate_parcel(parcel: LandParcel,
                    radii: Optional[Dict[str, Any]] = None,
                    store: Optional[ParcelStore] = None) -> ParcelEvaluation:
    """Run the full analysis for one parcel.

    The four place categories and the residential-project lookup run
    concurrently once coordinates are validated. Each is independent: a
    failing stage is logged and leaves an empty list. Scores, pricing
    and risk analysis follow sequentially.

    Raises:
        ValueError: for out-of-range coordinates or an invalid radius.
    """
    radii = normalize_radii(radii)
    store = store or get_store()

    result = ParcelEvaluation(
        parcel=parcel,
        radii=radii,
        model_version=SCORING_MODEL.version,
    )
    parent_trace = get_trace()
    if parent_trace:
        parent_trace.model_version = SCORING_MODEL.version

    if parcel.has_coordinates:
        coords = Coordinates(lat=parcel.latitude, lng=parcel.longitude)

        futures: Dict[str, Any] = {}
        with ThreadPoolExecutor(max_workers=len(CATEGORIES) + 1) as pool:
            futures["residential"] = pool.submit(
                _timed_stage_in_thread, parent_trace,
                "residential", store.fetch_residential_projects, coords.lat, coords.lng,
            )
            for category in CATEGORIES:
                futures[category] = pool.submit(
                    _timed_stage_in_thread, parent_trace,
                    category, fetch_category, coords.lat, coords.lng, category,
                )

            for stage_name, future in futures.items():
                try:
                    stage_result = future.result()
                except Exception:
                    logger.warning("Stage %s failed; continuing without it", stage_name,
                                   exc_info=True)
                    result.notes.append(f"{stage_name.capitalize()} data unavailable.")
                    stage_result = []
                if stage_name == "residential":
                    result.residential_projects = stage_result
                else:
                    result.places[stage_name] = stage_result
    else:
        result.places = {c: [] for c in CATEGORIES}
        result.notes.append("Parcel has no coordinates; nearby-place assessment skipped.")

    narrowed = {c: result.places_within_radius(c) for c in CATEGORIES}
    result.assessment_scores = _timed_stage(
        "assessment_scores", calculate_assessment_scores,
        narrowed, result.residential_projects,
    )
    result.parcel_score = calculate_parcel_score(parcel)
    result.pricing = calculate_pricing(parcel)

    try:
        result.risk_analysis = _timed_stage(
            "risk_analysis", analyze_land_parcel, _risk_location(parcel),
        )
    except ValueError as e:
        result.risk_error = str(e) or "Failed to analyze land parcel"

    table_key = location_table_key(parcel)
    result.distances = DISTANCE_TABLES[table_key]
    result.amenities = AMENITY_TABLES[table_key]
    result.infrastructure = INFRASTRUCTURE_STATUS
    return result


def evaluation_to_dict(result: ParcelEvaluation) -> Dict[str, Any]:
    """JSON-ready view; place lists are narrowed to the chosen radii."""
    scores = result.assessment_scores
    return {
        "parcel": result.parcel.to_dict(),
        "radii": dict(result.radii),
        "places": {
            c: [p.to_dict() for p in result.places_within_radius(c)]
            for c in CATEGORIES
        },
        "place_totals": {c: len(result.places.get(c, [])) for c in CATEGORIES},
        "residential_projects": [p.to_dict() for p in result.residential_projects],
        "assessment_scores": scores.to_dict(),
        "badges": {
            name: score_badge(value).css_class
            for name, value in scores.to_dict().items()
        },
        "parcel_score": result.parcel_score.to_dict() if result.parcel_score else None,
        "pricing": result.pricing.to_dict() if result.pricing else None,
        "risk_analysis": result.risk_analysis.to_dict() if result.risk_analysis else None,
        "risk_error": result.risk_error,
        "distances": result.distances,
        "amenities": result.amenities,
        "infrastructure": result.infrastructure,
        "model_version": result.model_version,
        "notes": list(result.notes),
    }


# =============================================================================
# Text report
# =============================================================================

def format_result(result: ParcelEvaluation) -> str:
    """Format an evaluation as a readable report"""
    parcel = result.parcel
    lines = []

    lines.append("=" * 70)
    lines.append(f"PARCEL: {parcel.property_name}")
    if parcel.location:
        lines.append(f"LOCATION: {parcel.location}")
    if parcel.url:
        lines.append(f"LINK: {parcel.url}")
    if parcel.has_coordinates:
        lines.append(f"COORDINATES: {parcel.latitude:.6f}, {parcel.longitude:.6f}")
    lines.append("=" * 70)

    if result.parcel_score:
        ps = result.parcel_score
        lines.append(
            f"\nPARCEL SCORE: {ps.overall}/10 ({ps.label}) "
            f"infrastructure {ps.infrastructure_rating}/5"
        )

    if result.pricing:
        pr = result.pricing
        lines.append("\nPRICING:")
        lines.append(
            f"  ₹{pr.cost_per_sqft:,}/sq ft "
            f"({'Below Market' if pr.below_market else 'Market Rate'}), "
            f"market estimate ₹{pr.market_estimate_per_sqft:,}/sq ft"
        )
        lines.append(
            f"  Land {format_lakhs(pr.total_cost)} + registration "
            f"{format_lakhs(pr.registration)} = {format_lakhs(pr.total_investment)}"
        )

    scores = result.assessment_scores
    lines.append(f"\nASSESSMENT: {scores.overall}/10")
    for category in CATEGORIES:
        places = result.places_within_radius(category)
        lines.append(
            f"  - {category.capitalize()}: {getattr(scores, category)} "
            f"({len(places)} within {result.radii.get(category, DEFAULT_RADIUS_KM)} km)"
        )
        for place in places[:3]:
            lines.append(f"      {place.name} ({place.category}) {place.distance_km} km")
    lines.append(
        f"  - Residential: {scores.residential} "
        f"({len(result.residential_projects)} projects within 5 km)"
    )
    lines.append(f"  - Infrastructure: {scores.infrastructure}")

    risk = result.risk_analysis
    if risk:
        lines.append(f"\n{'=' * 70}")
        lines.append(f"RISK: {risk.risk_level} (confidence {risk.confidence}%)")
        lines.append("=" * 70)
        for title, items in (("PROS", risk.pros), ("CONS", risk.cons),
                             ("RECOMMENDATIONS", risk.recommendations)):
            lines.append(f"\n{title}:")
            for item in items:
                lines.append(f"  • {item}")
    elif result.risk_error:
        lines.append(f"\nRISK: unavailable ({result.risk_error})")

    if result.notes:
        lines.append("\nNOTES:")
        for note in result.notes:
            lines.append(f"  • {note}")

    return "\n".join(lines)


# =============================================================================
# CLI
# =============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Analyse a land parcel: nearby amenities, pricing and risk"
    )
    parser.add_argument("--lat", type=float, help="Latitude of a user-picked point")
    parser.add_argument("--lng", type=float, help="Longitude of a user-picked point")
    parser.add_argument("--link", help="Google Maps link (full or goo.gl short link)")
    parser.add_argument("--parcel-id", help="Stored parcel id or property name")
    for category in CATEGORIES:
        parser.add_argument(
            f"--{category}-radius",
            type=float,
            default=DEFAULT_RADIUS_KM,
            choices=RADIUS_OPTIONS,
            help=f"Radius in km for {category} places",
        )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON instead of formatted text"
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.parcel_id:
        parcel = get_store().find_parcel(args.parcel_id)
    elif args.link:
        coords = parse_google_maps_link(args.link)
        if coords is None:
            print(f"Error: {LINK_PARSE_ERROR}")
            sys.exit(1)
        parcel = manual_parcel(coords.lat, coords.lng, args.link)
    elif args.lat is not None and args.lng is not None:
        parcel = manual_parcel(args.lat, args.lng)
    else:
        parser.print_help()
        sys.exit(1)

    radii = {c: getattr(args, f"{c}_radius") for c in CATEGORIES}
    result = evaluate_parcel(parcel, radii)

    if args.json:
        print(json.dumps(evaluation_to_dict(result), indent=2, ensure_ascii=False))
    else:
        print(format_result(result))


if __name__ == "__main__":
    main()
