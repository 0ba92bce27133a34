"""
AmbuSync Geospatial Module
==========================

Great-circle distance and travel-time estimation.  Distances are a proxy for
road travel; no routing network is consulted.
"""
from __future__ import annotations

import math
from typing import Any, Dict, Mapping, Optional

from .models import Coordinate

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM = 6371.0
DEFAULT_SPEED_KMH = 40.0

TRAVEL_SPEEDS_KMH: Dict[str, float] = {
    "walking": 5.0,
    "driving": 50.0,
    "emergency": 80.0,  # sirens on
}


# ---------------------------------------------------------------------------
# Haversine distance
# ---------------------------------------------------------------------------

def haversine(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Calculate great-circle distance between two points using Haversine.

    Parameters
    ----------
    lat1, lng1 : float
        Latitude and longitude of the first point (degrees).
    lat2, lng2 : float
        Latitude and longitude of the second point (degrees).

    Returns
    -------
    float
        Distance in kilometres.
    """
    rlat1 = math.radians(lat1)
    rlat2 = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlng / 2) ** 2
    )
    # rounding can push a a hair above 1.0 for antipodal points
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two coordinates in kilometres."""
    return haversine(a.latitude, a.longitude, b.latitude, b.longitude)


# ---------------------------------------------------------------------------
# Travel time
# ---------------------------------------------------------------------------

def eta_minutes(distance: float, assumed_speed_kmh: float = DEFAULT_SPEED_KMH) -> float:
    """Linear ETA for ``distance`` km at a constant assumed speed."""
    if assumed_speed_kmh <= 0:
        return math.inf
    return distance / assumed_speed_kmh * 60.0


def travel_time_minutes(
    distance: float,
    mode: str = "driving",
    speeds: Optional[Mapping[str, float]] = None,
) -> int:
    """Rounded travel time for a named travel mode."""
    table = speeds or TRAVEL_SPEEDS_KMH
    if mode not in table:
        raise ValueError(f"Unknown travel mode: {mode}")
    return int(round(eta_minutes(distance, table[mode])))


def travel_speeds_from_config(cfg: Any) -> Dict[str, float]:
    """``TRAVEL_SPEEDS_KMH`` with the modes set under ``geo.travel_speeds_kmh``."""
    speeds = dict(TRAVEL_SPEEDS_KMH)
    for mode, kmh in (cfg.get("geo.travel_speeds_kmh") or {}).items():
        speeds[mode] = float(kmh)
    return speeds


def format_distance(distance: float) -> str:
    if distance < 1:
        return f"{round(distance * 1000)}m"
    if distance < 10:
        return f"{distance:.1f}km"
    return f"{round(distance)}km"


def format_travel_time(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes} min"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


# ---------------------------------------------------------------------------
# Bounding box utilities
# ---------------------------------------------------------------------------

def bounding_box(center: Coordinate, radius_km: float) -> Dict[str, float]:
    """Min/max lat/lng enclosing a circle of ``radius_km`` around ``center``.

    Used only as a cheap pre-filter before the exact haversine check, so the
    box errs on the side of being too large.
    """
    angular = radius_km / EARTH_RADIUS_KM
    lat_delta = math.degrees(angular)

    cos_lat = math.cos(math.radians(center.latitude))
    touches_pole = abs(center.latitude) + lat_delta >= 90.0
    if touches_pole or cos_lat <= 0.0 or math.sin(angular) >= cos_lat or angular >= math.pi / 2:
        lng_delta = 360.0
    else:
        lng_delta = math.degrees(math.asin(math.sin(angular) / cos_lat))

    margin = 1e-6
    return {
        "min_lat": center.latitude - lat_delta - margin,
        "max_lat": center.latitude + lat_delta + margin,
        "min_lng": center.longitude - lng_delta - margin,
        "max_lng": center.longitude + lng_delta + margin,
    }


def is_within_bounds(point: Coordinate, bounds: Dict[str, float]) -> bool:
    """Check if a point falls within a bounding box."""
    if not bounds["min_lat"] <= point.latitude <= bounds["max_lat"]:
        return False
    if bounds["max_lng"] - bounds["min_lng"] >= 360.0:
        return True
    lng = point.longitude
    # boxes crossing the antimeridian
    for shift in (0.0, 360.0, -360.0):
        if bounds["min_lng"] <= lng + shift <= bounds["max_lng"]:
            return True
    return False
