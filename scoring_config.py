"""
Scoring model configuration for ParcelCheck.

Owns every numeric constant that affects a parcel's scores: the filtered
list's LAS/VAS ranking, the nearby-place category scores, the detailed
parcel score, pricing ratios and score-badge bands. Risk-analysis zone
tables live in risk_analysis.py.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

from dataclasses import dataclass
from typing import Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class LocationScoreConfig:
    """Land Assessment Score (LAS) parameters for the filtered list."""
    base: float = 7.0
    township_floor: float = 6.0
    township_divisor: float = 2.0      # 10 - min_km / divisor
    place_floor: float = 5.0
    place_divisor: float = 5.0         # 10 - km / divisor
    infrastructure_bonus: float = 0.5  # any infrastructure selected
    ceiling: float = 10.0


@dataclass(frozen=True)
class ValueScoreConfig:
    """Value Assessment Score (VAS): base plus bounded random jitter."""
    cheap_below: float = 4000.0        # ₹/sq ft, exclusive
    cheap_base: float = 8.0
    cheap_jitter: float = 1.5
    standard_base: float = 7.0
    standard_jitter: float = 1.0


@dataclass(frozen=True)
class PlaceScoreConfig:
    """Per-category nearby-place score (education, commercial, ...)."""
    per_place: float = 1.5
    count_cap: float = 5.0
    very_close_km: float = 1.0
    per_very_close: float = 0.5
    very_close_cap: float = 3.0
    proximity_km: float = 2.0          # bonus = max(0, proximity_km - nearest)
    ceiling: float = 10.0


@dataclass(frozen=True)
class KeywordBoost:
    """Score boost applied when any keyword appears in the parcel location."""
    keywords: Tuple[str, ...]
    boost: float


@dataclass(frozen=True)
class ParcelScoreConfig:
    """Detailed-analysis parcel score."""
    base: float = 7.0
    keyword_boosts: Tuple[KeywordBoost, ...] = ()
    price_tiers: Tuple[Tuple[float, float], ...] = ()  # (below ₹/sq ft, boost), first match
    large_area_sqft: float = 2000.0
    large_area_boost: float = 0.3
    ceiling: float = 9.5
    infrastructure_divisor: float = 2.0


@dataclass(frozen=True)
class PricingConfig:
    registration_rate: float = 0.07
    market_multiplier: float = 1.35
    below_market_sqft: float = 5000.0


@dataclass(frozen=True)
class AssessmentConfig:
    """Six-way assessment dashboard."""
    per_residential_project: float = 2.0
    residential_cap: float = 10.0
    infrastructure_score: float = 8.8


@dataclass(frozen=True)
class ScoreBand:
    """Maps a minimum percentage of max score to a badge label."""
    threshold: int
    label: str
    css_class: str = ""


@dataclass(frozen=True)
class RatingLabel:
    """Maps a minimum parcel score to the headline rating word."""
    threshold: float
    label: str


@dataclass(frozen=True)
class ScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SCORING_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    location: LocationScoreConfig
    value: ValueScoreConfig
    places: PlaceScoreConfig
    parcel: ParcelScoreConfig
    pricing: PricingConfig
    assessment: AssessmentConfig
    score_bands: Tuple[ScoreBand, ...]
    rating_labels: Tuple[RatingLabel, ...]


# =============================================================================
# Pure helpers
# =============================================================================

def clamp(value: float, low: float = 0.0, high: float = 10.0) -> float:
    return max(low, min(high, value))


def round1(value: float) -> float:
    """Round to one decimal place, half away from zero."""
    sign = -1.0 if value < 0 else 1.0
    return sign * int(abs(value) * 10 + 0.5) / 10


def score_badge(score: float, max_score: float = 10.0) -> ScoreBand:
    """Return the badge band for *score* out of *max_score*."""
    percentage = (score / max_score) * 100 if max_score else 0.0
    for band in SCORING_MODEL.score_bands:
        if percentage >= band.threshold:
            return band
    return SCORING_MODEL.score_bands[-1]


def rating_label(score: float) -> str:
    for rating in SCORING_MODEL.rating_labels:
        if score >= rating.threshold:
            return rating.label
    return SCORING_MODEL.rating_labels[-1].label


# =============================================================================
# The model
# =============================================================================

SCORING_MODEL = ScoringModel(
    version="1.0.0",

    location=LocationScoreConfig(),

    value=ValueScoreConfig(),

    places=PlaceScoreConfig(),

    parcel=ParcelScoreConfig(
        base=7.0,
        keyword_boosts=(
            KeywordBoost(("devanahalli", "airport"), 2.0),
            KeywordBoost(("whitefield", "sarjapur"), 1.5),
            KeywordBoost(("electronic city",), 1.2),
        ),
        price_tiers=(
            (5000.0, 1.0),
            (8000.0, 0.5),
        ),
        large_area_sqft=2000.0,
        large_area_boost=0.3,
        ceiling=9.5,
    ),

    pricing=PricingConfig(),

    assessment=AssessmentConfig(),

    score_bands=(
        ScoreBand(80, "Excellent", "score-excellent"),
        ScoreBand(60, "Good", "score-good"),
        ScoreBand(40, "Average", "score-average"),
        ScoreBand(0, "Poor", "score-poor"),
    ),

    rating_labels=(
        RatingLabel(8.0, "Excellent"),
        RatingLabel(7.0, "Good"),
        RatingLabel(0.0, "Fair"),
    ),
)


# Validate at import time (ValueError, not assert, so validation is never
# stripped by python -O).
_thresholds = [b.threshold for b in SCORING_MODEL.score_bands]
if _thresholds != sorted(_thresholds, reverse=True) or _thresholds[-1] != 0:
    raise ValueError(f"score_bands must descend to 0, got {_thresholds}")
_tiers = [t[0] for t in SCORING_MODEL.parcel.price_tiers]
if _tiers != sorted(_tiers):
    raise ValueError(f"parcel price_tiers must ascend, got {_tiers}")
if SCORING_MODEL.parcel.ceiling > 10.0:
    raise ValueError("parcel score ceiling must not exceed 10")
