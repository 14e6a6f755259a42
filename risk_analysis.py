"""
Rule-based land risk analysis for Bangalore parcels.

No external service is called. The parcel is placed in a zone by
location-name keywords and its distance from the city centre and the
airport; each zone has canned pros, cons and recommendations (a few
lines vary with price or distance), a risk level and a confidence
percentage.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from geo import haversine_km

logger = logging.getLogger(__name__)

CITY_CENTER = (12.9716, 77.5946)
AIRPORT = (13.1986, 77.7101)
IT_HUBS: Tuple[Tuple[str, float, float], ...] = (
    ("Whitefield", 12.9698, 77.7499),
    ("Electronic City", 12.8456, 77.6603),
    ("Outer Ring Road", 12.9352, 77.6245),
    ("Sarjapur", 12.8988, 77.7388),
)

# Defaults used when a parcel has no coordinates or location text
DEFAULT_LATITUDE, DEFAULT_LONGITUDE = AIRPORT
DEFAULT_LOCATION_NAME = "Bangalore"

AIRPORT_ZONE = "AIRPORT_ZONE"
WHITEFIELD_CORRIDOR = "WHITEFIELD_CORRIDOR"
ELECTRONIC_CITY = "ELECTRONIC_CITY"
SARJAPUR_CORRIDOR = "SARJAPUR_CORRIDOR"
NORTH_BANGALORE = "NORTH_BANGALORE"
WEST_BANGALORE = "WEST_BANGALORE"
CENTRAL_BANGALORE = "CENTRAL_BANGALORE"
SUBURBAN_BANGALORE = "SUBURBAN_BANGALORE"
PERIPHERAL_BANGALORE = "PERIPHERAL_BANGALORE"

# Checked in order after the airport rule
_KEYWORD_ZONES = (
    (WHITEFIELD_CORRIDOR, ("whitefield", "varthur", "marathahalli")),
    (ELECTRONIC_CITY, ("electronic city", "hosur", "bommanahalli")),
    (SARJAPUR_CORRIDOR, ("sarjapur", "hsr", "bellandur")),
    (NORTH_BANGALORE, ("hennur", "hebbal", "nagawara")),
    (WEST_BANGALORE, ("kengeri", "mysore road", "rajarajeshwari")),
)

AIRPORT_ZONE_KM = 15.0
CENTRAL_KM = 15.0
SUBURBAN_KM = 30.0
VERY_FAR_KM = 40.0
AIRPORT_NOISE_KM = 10.0


@dataclass
class LocationData:
    latitude: float
    longitude: float
    location_name: str
    area: Optional[float] = None
    price_per_sqft: Optional[float] = None


@dataclass
class LandAnalysisResult:
    pros: List[str]
    cons: List[str]
    risk_level: str          # "Low" | "Medium" | "High"
    recommendations: List[str]
    confidence: int          # percent
    location_type: str = ""
    analysis_date: str = ""

    def to_dict(self):
        return asdict(self)


@dataclass
class _Context:
    dist_city: float
    dist_airport: float
    hub_name: str
    hub_distance: float
    price: Optional[float]

    def price_below(self, limit: float) -> bool:
        return bool(self.price) and self.price < limit

    def price_above(self, limit: float) -> bool:
        return bool(self.price) and self.price > limit

    @property
    def price_text(self) -> str:
        p = self.price or 0
        return str(int(p)) if float(p).is_integer() else str(p)


def nearest_it_hub(lat: float, lng: float) -> Tuple[str, float]:
    return min(
        ((name, haversine_km(lat, lng, h_lat, h_lng)) for name, h_lat, h_lng in IT_HUBS),
        key=lambda item: item[1],
    )


def detect_location_type(location_name: str, dist_city: float,
                         dist_airport: float) -> str:
    name = (location_name or "").lower()
    if "devanahalli" in name or "airport" in name or dist_airport < AIRPORT_ZONE_KM:
        return AIRPORT_ZONE
    for zone, keywords in _KEYWORD_ZONES:
        if any(k in name for k in keywords):
            return zone
    if dist_city < CENTRAL_KM:
        return CENTRAL_BANGALORE
    if dist_city < SUBURBAN_KM:
        return SUBURBAN_BANGALORE
    return PERIPHERAL_BANGALORE


# =============================================================================
# Zone analyses
# =============================================================================

def _airport_zone(c: _Context) -> LandAnalysisResult:
    very_close = c.dist_airport < AIRPORT_NOISE_KM
    return LandAnalysisResult(
        pros=[
            f"Excellent proximity to Kempegowda International Airport ({c.dist_airport:.1f} km)",
            "Rapidly developing aerospace and logistics hub with strong growth potential",
            "Upcoming Namma Metro Phase 2 extension will enhance connectivity significantly",
            "STRR (Satellite Town Ring Road) and PRR improving regional accessibility",
            f"Attractive pricing at ₹{c.price_text}/sqft - below market average for airport zone"
            if c.price_below(5000)
            else "Lower land prices compared to established IT corridors with high appreciation potential",
        ],
        cons=[
            f"Significant distance from city center ({c.dist_city:.1f} km) - impacts daily commute",
            "Limited social infrastructure - schools, hospitals, and shopping centers are developing",
            "Heavy dependence on airport and aerospace sector for economic growth",
            "Potential aircraft noise pollution - check if property falls in noise impact zone"
            if very_close
            else "Water scarcity concerns in certain pockets - verify BWSSB connection",
            "Current traffic congestion on airport road during peak morning/evening hours",
        ],
        risk_level="Low",
        recommendations=[
            "Verify RERA registration and clear title - check for any land acquisition disputes",
            "Confirm BWSSB water connection or reliable borwell/tanker water availability",
            "Check Airports Authority noise zone maps - avoid properties in high-impact zones"
            if very_close
            else "Investigate upcoming infrastructure projects - metro stations, business parks",
            "Plan for 3-5 year investment horizon for optimal capital appreciation",
            "Visit during peak hours to assess actual traffic conditions on approach roads",
        ],
        confidence=88,
    )


def _whitefield(c: _Context) -> LandAnalysisResult:
    return LandAnalysisResult(
        pros=[
            "Established IT corridor with presence of major tech companies (Infosys, Wipro, TCS)",
            "Excellent social infrastructure including premium schools, hospitals, and malls",
            "Strong rental demand from IT professionals ensures 3-4% rental yields",
            "Well-connected via Outer Ring Road and upcoming Whitefield Metro connectivity",
            "Proven track record of 8-12% annual appreciation over past decade",
        ],
        cons=[
            f"High land acquisition cost at ₹{c.price_text}/sqft - premium pricing for the area"
            if c.price_above(8000)
            else "Premium pricing compared to emerging corridors - higher entry barrier",
            "Severe traffic congestion during peak hours especially on ORR and Whitefield Road",
            "Limited availability of large contiguous land parcels for development",
            f"Distance from airport ({c.dist_airport:.1f} km) may be consideration for frequent travelers",
            "Market saturation in certain micro-markets - slower appreciation in developed pockets",
        ],
        risk_level="Low",
        recommendations=[
            "Prioritize locations within 1-2 km of upcoming metro stations for maximum appreciation",
            "Verify zoning regulations carefully - residential/commercial/mixed-use permissions",
            "Conduct thorough soil testing and check historical monsoon flooding data",
            "Compare pricing with recent 3-6 month transactions in the specific micro-market",
            "Evaluate mixed-use development potential for commercial ground floor + residential",
        ],
        confidence=92,
    )


def _electronic_city(c: _Context) -> LandAnalysisResult:
    return LandAnalysisResult(
        pros=[
            "Established IT/manufacturing hub with strong employment base (Infosys, Wipro, Biocon)",
            "Excellent connectivity via Elevated Expressway and upcoming Metro Yellow Line",
            "Mature infrastructure with schools, hospitals, shopping centers, and entertainment",
            "Proximity to Tamil Nadu border enables inter-state business opportunities",
            f"Competitive pricing at ₹{c.price_text}/sqft compared to Whitefield/Sarjapur"
            if c.price_below(6000)
            else "More affordable than Whitefield/Sarjapur with steady 7-10% appreciation",
        ],
        cons=[
            "Industrial character limits premium residential appeal for some buyer segments",
            "Air quality concerns due to industrial activities and traffic on Hosur Road",
            "Distance from north Bangalore and airport (40+ km) affects connectivity",
            "Limited ultra-premium residential projects compared to other corridors",
            "Strong dependence on IT sector employment trends and economic cycles",
        ],
        risk_level="Low",
        recommendations=[
            "Focus on areas within 1 km of metro stations for residential developments",
            "Verify air quality index and industrial emissions in immediate vicinity",
            "Check for any industrial waste disposal or pollution concerns nearby",
            "Consider mixed residential-commercial models leveraging employment base",
            "Ensure property has good connectivity to Elevated Expressway toll plaza",
        ],
        confidence=85,
    )


def _sarjapur(c: _Context) -> LandAnalysisResult:
    return LandAnalysisResult(
        pros=[
            "Rapidly developing corridor with major IT parks (Embassy, RMZ, Prestige)",
            "Upcoming Peripheral Ring Road (PRR) will dramatically improve connectivity",
            "Strong infrastructure development with wide roads and planned utilities",
            "Mix of IT employment and residential demand creates balanced market",
            f"Good value at ₹{c.price_text}/sqft with high growth trajectory"
            if c.price_below(7000)
            else "More affordable than Whitefield with similar growth potential",
        ],
        cons=[
            "Current traffic congestion on Sarjapur Road during peak hours",
            "Dependency on PRR completion for improved connectivity (timeline risks)",
            "Water scarcity issues in some areas - not all areas have BWSSB connection",
            "Social infrastructure still developing - limited premium schools/hospitals",
            "Distance from both city center and airport affects accessibility",
        ],
        risk_level="Medium",
        recommendations=[
            "Verify proximity to upcoming PRR alignment for maximum future value",
            "Confirm water source - BWSSB connection strongly preferred over borewells",
            "Check quality of road access - avoid areas with narrow internal roads",
            "Plan for 4-6 year holding period to benefit from infrastructure development",
            "Research upcoming IT park announcements in the specific micro-location",
        ],
        confidence=82,
    )


def _north(c: _Context) -> LandAnalysisResult:
    return LandAnalysisResult(
        pros=[
            f"Excellent connectivity to airport ({c.dist_airport:.1f} km) via Bellary Road",
            "Developing IT corridor with Manyata Tech Park and upcoming projects",
            "Metro connectivity (Green Line) already operational - enhances accessibility",
            "Relatively affordable compared to established corridors",
            "Growing residential demand from IT professionals working in north zone",
        ],
        cons=[
            "Limited premium social infrastructure compared to Whitefield/Sarjapur",
            "Industrial pockets in Peenya area may affect residential appeal",
            "Flood-prone areas near Hebbal Lake - requires careful location selection",
            "Traffic congestion on Outer Ring Road and Bellary Road",
            "Uneven development - some pockets well-developed, others still emerging",
        ],
        risk_level="Medium",
        recommendations=[
            "Prioritize locations near operational metro stations",
            "Check flood history and drainage systems - avoid low-lying areas",
            "Verify distance from industrial areas and warehouses",
            "Research upcoming IT park projects in the specific area",
            "Ensure good connectivity to both ORR and airport road",
        ],
        confidence=78,
    )


def _west(c: _Context) -> LandAnalysisResult:
    return LandAnalysisResult(
        pros=[
            "Proximity to Mysore Road and NICE corridor - good connectivity",
            "More affordable land prices - attractive entry point for investors",
            "Developing manufacturing and logistics hubs create employment",
            "Upcoming Namma Metro Purple Line extension improves accessibility",
            "Large land parcels still available for development projects",
        ],
        cons=[
            "Relatively underdeveloped social infrastructure",
            "Distance from major IT employment hubs (Whitefield, Electronic City)",
            "Limited premium residential projects in the area",
            "Industrial character in some pockets affects residential appeal",
            "Longer commute times to central business districts",
        ],
        risk_level="Medium",
        recommendations=[
            "Focus on areas along planned metro alignment",
            "Verify road width and infrastructure quality",
            "Check for upcoming industrial or commercial projects nearby",
            "Plan for longer 5-7 year investment horizon",
            "Ensure clear title and RERA registration",
        ],
        confidence=72,
    )


def _central(c: _Context) -> LandAnalysisResult:
    return LandAnalysisResult(
        pros=[
            "Prime central location with excellent connectivity to all parts of city",
            "Mature infrastructure with premium schools, hospitals, and shopping",
            "High rental demand for both residential and commercial properties",
            "Metro connectivity to most major destinations",
            "Limited supply ensures steady value appreciation",
        ],
        cons=[
            f"Very high land cost at ₹{c.price_text}/sqft - premium central location pricing"
            if c.price_above(10000)
            else "Extremely high land acquisition costs - prohibitive for many investors",
            "Very limited availability of developable land parcels",
            "Traffic congestion and parking challenges in most areas",
            "Older buildings and infrastructure requiring renovation",
            "Lower appreciation percentage compared to emerging corridors",
        ],
        risk_level="Low",
        recommendations=[
            "Verify clear title - central properties often have complex ownership histories",
            "Check FSI (Floor Space Index) and development permissions carefully",
            "Consider renovation/redevelopment potential in older areas",
            "Evaluate commercial potential - may offer better ROI than residential",
            "Compare with recent transactions - prices vary significantly by micro-location",
        ],
        confidence=90,
    )


def _suburban(c: _Context) -> LandAnalysisResult:
    return LandAnalysisResult(
        pros=[
            f"Balanced location - {c.dist_city:.1f} km from city center",
            f"Proximity to {c.hub_name} IT hub ({c.hub_distance:.1f} km)",
            f"Attractive entry price at ₹{c.price_text}/sqft"
            if c.price_below(5000)
            else "More affordable than prime corridors with growth potential",
            "Developing infrastructure with improving road connectivity",
            "Lower competition from institutional buyers in suburban zones",
        ],
        cons=[
            "Infrastructure development pace uncertain - depends on government plans",
            "Limited immediate social amenities - schools, hospitals still developing",
            "Public transport connectivity may be limited",
            "Resale liquidity could be moderate in near term (2-3 years)",
            "Value appreciation depends on nearby infrastructure projects",
        ],
        risk_level="Medium",
        recommendations=[
            "Thoroughly verify title documents and check for legal disputes",
            "Research BDA/BMRDA master plans for upcoming infrastructure",
            "Plan for minimum 4-6 year investment horizon",
            "Verify availability of basic utilities (electricity, water, drainage)",
            "Visit the area multiple times at different hours to assess ground reality",
        ],
        confidence=75,
    )


def _peripheral(c: _Context) -> LandAnalysisResult:
    very_far = c.dist_city > VERY_FAR_KM
    return LandAnalysisResult(
        pros=[
            f"Very low entry price at ₹{c.price_text}/sqft - affordable investment"
            if c.price_below(3000)
            else "Significantly lower land prices - accessible to more investors",
            "Large land parcels available for development projects",
            "Lower competition from established developers",
            "Potential for high percentage returns if area develops",
            "Opportunity for early-mover advantage in emerging zones",
        ],
        cons=[
            f"Considerable distance from city ({c.dist_city:.1f} km) - long commute",
            f"Far from nearest IT hub {c.hub_name} ({c.hub_distance:.1f} km)",
            "Minimal infrastructure and social amenities currently available",
            "High uncertainty about development timeline - could take 7-10 years",
            "Very limited resale liquidity - may be difficult to exit investment"
            if very_far
            else "Limited resale liquidity in short to medium term",
        ],
        risk_level="High" if very_far else "Medium",
        recommendations=[
            "Conduct exhaustive legal due diligence - verify ownership chain thoroughly",
            "Research government master plans (BDA/BMRDA/BBMP) for future development",
            "Plan for very long 7-10 year investment horizon - not for short-term gains",
            "Verify land use classification and conversion possibilities",
            "Consider only if aligned with long-term wealth creation goals and risk tolerance",
        ],
        confidence=60 if very_far else 70,
    )


_ZONE_ANALYSES: Dict[str, Callable[[_Context], LandAnalysisResult]] = {
    AIRPORT_ZONE: _airport_zone,
    WHITEFIELD_CORRIDOR: _whitefield,
    ELECTRONIC_CITY: _electronic_city,
    SARJAPUR_CORRIDOR: _sarjapur,
    NORTH_BANGALORE: _north,
    WEST_BANGALORE: _west,
    CENTRAL_BANGALORE: _central,
    SUBURBAN_BANGALORE: _suburban,
    PERIPHERAL_BANGALORE: _peripheral,
}


def analyze_land_parcel(location: LocationData) -> LandAnalysisResult:
    """Zone-based pros/cons/recommendations for a location."""
    lat, lng = location.latitude, location.longitude
    dist_city = haversine_km(lat, lng, *CITY_CENTER)
    dist_airport = haversine_km(lat, lng, *AIRPORT)
    hub_name, hub_distance = nearest_it_hub(lat, lng)

    zone = detect_location_type(location.location_name, dist_city, dist_airport)
    context = _Context(
        dist_city=dist_city,
        dist_airport=dist_airport,
        hub_name=hub_name,
        hub_distance=hub_distance,
        price=location.price_per_sqft,
    )
    result = _ZONE_ANALYSES[zone](context)
    result.location_type = zone
    result.analysis_date = datetime.now(timezone.utc).isoformat()
    logger.info(
        "Risk analysis for %r: zone=%s risk=%s confidence=%d",
        location.location_name, zone, result.risk_level, result.confidence,
    )
    return result
