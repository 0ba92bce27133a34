"""
AmbuSync Capacity Matcher
=========================

Scores hospitals by bed availability and picks the best destination for an
emergency by combining distance with free capacity.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .errors import NoSuitableHospital
from .geo import distance_km
from .models import Coordinate, EmergencyType, HospitalCapacity, utcnow

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Scoring weights
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScoringWeights:
    """Weights of the composite hospital score (lower composite is better).

    ``composite = distance * distance_km + capacity * (100 - capacity_score)``
    """
    distance: float = 0.7
    capacity: float = 0.3

    def __post_init__(self) -> None:
        if self.distance < 0 or self.capacity < 0:
            raise ValueError("scoring weights must be non-negative")
        if self.distance == 0 and self.capacity == 0:
            raise ValueError("at least one scoring weight must be positive")


DEFAULT_WEIGHTS = ScoringWeights()


# ---------------------------------------------------------------------------
# Capacity metrics
# ---------------------------------------------------------------------------

def capacity_score(hospital: HospitalCapacity) -> float:
    """Free beds as a percentage of all beds (0 when the hospital has none)."""
    total = hospital.total_beds
    if total == 0:
        return 0.0
    return hospital.available_beds / total * 100.0


def occupancy_rate(hospital: HospitalCapacity) -> float:
    total = hospital.total_beds
    if total == 0:
        return 0.0
    return (total - hospital.available_beds) / total * 100.0


def capacity_status(hospital: HospitalCapacity) -> str:
    rate = occupancy_rate(hospital)
    if rate >= 90:
        return "critical"
    if rate >= 75:
        return "high"
    if rate >= 50:
        return "moderate"
    return "low"


def update_capacity(
    hospital: HospitalCapacity,
    emergency_beds_available: Optional[int] = None,
    icu_beds_available: Optional[int] = None,
    at: Optional[datetime] = None,
) -> HospitalCapacity:
    """Return a new snapshot with updated availability.

    Raises ``ValueError`` if the new counts break ``0 <= available <= total``.
    """
    changes: Dict[str, object] = {"last_updated": at or utcnow()}
    if emergency_beds_available is not None:
        changes["emergency_beds_available"] = emergency_beds_available
    if icu_beds_available is not None:
        changes["icu_beds_available"] = icu_beds_available
    updated = replace(hospital, **changes)
    if capacity_status(updated) == "critical":
        logger.warning(
            "Hospital %s at %.1f%% occupancy",
            hospital.hospital_id, occupancy_rate(updated),
        )
    return updated


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------

def _trauma(h: HospitalCapacity) -> bool:
    return h.capabilities.trauma and h.emergency_beds_available > 0


def _cardiac(h: HospitalCapacity) -> bool:
    return h.capabilities.cardiac and (
        h.icu_beds_available > 0 or h.emergency_beds_available > 0
    )


def _stroke(h: HospitalCapacity) -> bool:
    return h.capabilities.stroke and h.icu_beds_available > 0


def _pediatric(h: HospitalCapacity) -> bool:
    return h.capabilities.pediatric and h.emergency_beds_available > 0


def _general(h: HospitalCapacity) -> bool:
    return h.emergency_beds_available > 0


ELIGIBILITY_RULES: Dict[EmergencyType, Callable[[HospitalCapacity], bool]] = {
    EmergencyType.TRAUMA: _trauma,
    EmergencyType.CARDIAC: _cardiac,
    EmergencyType.STROKE: _stroke,
    EmergencyType.PEDIATRIC: _pediatric,
    EmergencyType.GENERAL: _general,
}


def is_eligible(hospital: HospitalCapacity, emergency_type: Union[EmergencyType, str]) -> bool:
    """True when the hospital has the capability flag and a free bed of the right class."""
    return ELIGIBILITY_RULES[EmergencyType(emergency_type)](hospital)


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

def composite_score(
    distance: float,
    score: float,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> float:
    return weights.distance * distance + weights.capacity * (100.0 - score)


def rank_hospitals(
    target: Coordinate,
    emergency_type: Union[EmergencyType, str],
    hospitals: Iterable[HospitalCapacity],
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> List[Tuple[HospitalCapacity, float, float]]:
    """Eligible hospitals as ``(hospital, distance_km, composite)``, best first."""
    kind = EmergencyType(emergency_type)
    ranked: List[Tuple[HospitalCapacity, float, float]] = []
    for hospital in hospitals:
        if not is_eligible(hospital, kind):
            continue
        distance = distance_km(target, hospital.coordinate)
        ranked.append(
            (hospital, distance, composite_score(distance, capacity_score(hospital), weights))
        )
    ranked.sort(key=lambda entry: (entry[2], entry[0].hospital_id))
    return ranked


def find_best(
    target: Coordinate,
    emergency_type: Union[EmergencyType, str],
    hospitals: Iterable[HospitalCapacity],
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> Optional[HospitalCapacity]:
    """Best-fit hospital, or ``None`` when no hospital qualifies."""
    ranked = rank_hospitals(target, emergency_type, hospitals, weights)
    if not ranked:
        return None
    return ranked[0][0]


def require_best(
    target: Coordinate,
    emergency_type: Union[EmergencyType, str],
    hospitals: Iterable[HospitalCapacity],
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> Tuple[HospitalCapacity, float]:
    """Like :func:`find_best` but raises ``NoSuitableHospital``.

    Returns the hospital and its distance from ``target``.
    """
    pool = list(hospitals)
    ranked = rank_hospitals(target, emergency_type, pool, weights)
    if not ranked:
        kind = EmergencyType(emergency_type).value
        logger.warning("No hospital eligible for %s emergency", kind)
        raise NoSuitableHospital(kind, considered=len(pool))
    hospital, distance, _ = ranked[0]
    return hospital, distance
