"""
AmbuSync Proximity Matcher
==========================

Ranks live ambulance positions by great-circle distance to an incident and
selects the nearest eligible unit.  All functions are pure over the snapshot
they receive, so a caller can abandon a search at any point.
"""
from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta
from typing import Collection, Dict, Iterable, List, Optional, Tuple

from .errors import NoAvailableUnit
from .geo import bounding_box, distance_km, is_within_bounds
from .models import AmbulancePosition, Coordinate, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_DISTANCE_KM = 100.0
TIE_EPSILON_KM = 1e-9

RankedUnit = Tuple[AmbulancePosition, float]


# ---------------------------------------------------------------------------
# Feed handling
# ---------------------------------------------------------------------------

def latest_positions(positions: Iterable[AmbulancePosition]) -> List[AmbulancePosition]:
    """Collapse a position feed to the newest report per ambulance.

    The feed is at-least-once and may arrive out of order; the record with
    the latest ``captured_at`` wins.
    """
    newest: Dict[str, AmbulancePosition] = {}
    for position in positions:
        current = newest.get(position.ambulance_id)
        if current is None or position.captured_at > current.captured_at:
            newest[position.ambulance_id] = position
    return list(newest.values())


def _is_fresh(position: AmbulancePosition, now: datetime, max_age: Optional[timedelta]) -> bool:
    if max_age is None:
        return True
    return now - position.captured_at <= max_age


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

def _compare(a: RankedUnit, b: RankedUnit) -> int:
    if abs(a[1] - b[1]) > TIE_EPSILON_KM:
        return -1 if a[1] < b[1] else 1
    if a[0].ambulance_id == b[0].ambulance_id:
        return 0
    return -1 if a[0].ambulance_id < b[0].ambulance_id else 1


def rank(
    target: Coordinate,
    candidates: Iterable[AmbulancePosition],
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
    *,
    exclude: Collection[str] = (),
    max_age: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> List[RankedUnit]:
    """Rank ambulances within ``max_distance_km`` of ``target``.

    Parameters
    ----------
    target : Coordinate
        Incident location.
    candidates : iterable of AmbulancePosition
        Position snapshot.  Several reports for one ambulance are collapsed
        to the newest.
    max_distance_km : float
        Inclusive search radius.
    exclude : collection of str
        Ambulance ids that are not eligible (e.g. already on a call).
    max_age : timedelta, optional
        Positions older than this are treated as stale and skipped.
    now : datetime, optional
        Reference time for the staleness check.

    Returns
    -------
    list of (AmbulancePosition, float)
        Ascending by distance; equal distances ordered by ambulance id.
    """
    if max_distance_km < 0:
        return []
    now = now or utcnow()
    bounds = bounding_box(target, max_distance_km)
    excluded = set(exclude)

    ranked: List[RankedUnit] = []
    for position in latest_positions(candidates):
        if position.ambulance_id in excluded:
            continue
        if not _is_fresh(position, now, max_age):
            continue
        if not is_within_bounds(position.coordinate, bounds):
            continue
        distance = distance_km(target, position.coordinate)
        if distance <= max_distance_km:
            ranked.append((position, distance))

    ranked.sort(key=functools.cmp_to_key(_compare))
    return ranked


def select_nearest(
    target: Coordinate,
    candidates: Iterable[AmbulancePosition],
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
    **kwargs,
) -> Optional[AmbulancePosition]:
    """Nearest eligible ambulance, or ``None`` when nothing is in range."""
    ranked = rank(target, candidates, max_distance_km, **kwargs)
    if not ranked:
        return None
    return ranked[0][0]


def require_nearest(
    target: Coordinate,
    candidates: Iterable[AmbulancePosition],
    max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
    **kwargs,
) -> RankedUnit:
    """Like :func:`select_nearest` but raises ``NoAvailableUnit``.

    Returns the position together with its distance.
    """
    pool = list(candidates)
    ranked = rank(target, pool, max_distance_km, **kwargs)
    if not ranked:
        logger.warning(
            "No ambulance within %.1f km of (%.5f, %.5f)",
            max_distance_km, target.latitude, target.longitude,
        )
        raise NoAvailableUnit(max_distance_km, considered=len(pool))
    return ranked[0]
