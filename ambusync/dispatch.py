"""
AmbuSync Dispatch Coordinator
=============================

Runs the dispatch flow for one emergency report: open the call, pick the
nearest free ambulance and the best-fit hospital, move the call to
``dispatched``, and hand the resulting mutations to the sync queue, which
applies them directly when online and holds them otherwise.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .capacity import DEFAULT_WEIGHTS, ScoringWeights, require_best
from .errors import InvalidTransition, MatchError, NoAvailableUnit, NoSuitableHospital
from .geo import (
    DEFAULT_SPEED_KMH,
    TRAVEL_SPEEDS_KMH,
    eta_minutes,
    travel_speeds_from_config,
    travel_time_minutes,
)
from .models import (
    ActionType,
    AmbulancePosition,
    CallStatus,
    EmergencyCall,
    EmergencyReport,
    EmergencyReportPayload,
    HospitalCapacity,
    LocationUpdatePayload,
    StatusUpdatePayload,
    SyncQueueItem,
    utcnow,
)
from .proximity import DEFAULT_MAX_DISTANCE_KM, require_nearest
from .queue import SyncQueue
from .workflow import ArrivalEvidence, CallBoard

logger = logging.getLogger(__name__)

DEFAULT_POSITION_MAX_AGE = timedelta(minutes=5)


@dataclass(frozen=True)
class DispatchDecision:
    """Outcome of a successful dispatch."""
    call: EmergencyCall
    ambulance_id: str
    distance_km: float
    eta_minutes: float
    hospital_id: Optional[str] = None
    hospital_distance_km: Optional[float] = None
    hospital_travel_minutes: Optional[int] = None


@dataclass(frozen=True)
class UnmatchedReport:
    """A report that could not be given an ambulance."""
    report_id: str
    call_id: str
    reason: str
    at: datetime


class DispatchCoordinator:
    """Glue between the matchers, the call board and the sync queue."""

    def __init__(
        self,
        board: CallBoard,
        queue: SyncQueue,
        *,
        max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
        position_max_age: Optional[timedelta] = DEFAULT_POSITION_MAX_AGE,
        assumed_speed_kmh: float = DEFAULT_SPEED_KMH,
        weights: ScoringWeights = DEFAULT_WEIGHTS,
        travel_speeds_kmh: Optional[Dict[str, float]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.board = board
        self.queue = queue
        self.max_distance_km = max_distance_km
        self.position_max_age = position_max_age
        self.assumed_speed_kmh = assumed_speed_kmh
        self.weights = weights
        self.travel_speeds_kmh = dict(travel_speeds_kmh or TRAVEL_SPEEDS_KMH)
        self._clock = clock
        self._positions: Dict[str, AmbulancePosition] = {}
        self._unmatched: Dict[str, UnmatchedReport] = {}

    @classmethod
    def from_config(cls, cfg: Any, board: CallBoard, queue: SyncQueue, **kwargs: Any) -> "DispatchCoordinator":
        kwargs.setdefault("max_distance_km", float(cfg.get("dispatch.max_distance_km", DEFAULT_MAX_DISTANCE_KM)))
        kwargs.setdefault(
            "position_max_age",
            timedelta(seconds=float(cfg.get("dispatch.position_max_age_seconds", 300))),
        )
        kwargs.setdefault("assumed_speed_kmh", float(cfg.get("geo.assumed_speed_kmh", DEFAULT_SPEED_KMH)))
        kwargs.setdefault(
            "weights",
            ScoringWeights(
                distance=float(cfg.get("capacity.distance_weight", 0.7)),
                capacity=float(cfg.get("capacity.capacity_weight", 0.3)),
            ),
        )
        kwargs.setdefault("travel_speeds_kmh", travel_speeds_from_config(cfg))
        return cls(board, queue, **kwargs)

    # -- persistence ---------------------------------------------------------

    async def _persist(self, action: ActionType, payload: Any) -> Optional[SyncQueueItem]:
        item = await self.queue.submit(action, payload)
        if item is not None:
            logger.info("%s held in sync queue as %s", action.value, item.id)
        return item

    # -- positions -----------------------------------------------------------

    async def report_position(self, position: AmbulancePosition) -> Optional[SyncQueueItem]:
        """Record a position ping locally and forward it to the backend."""
        current = self._positions.get(position.ambulance_id)
        if current is None or position.captured_at > current.captured_at:
            self._positions[position.ambulance_id] = position
        return await self._persist(
            ActionType.LOCATION_UPDATE, LocationUpdatePayload.from_position(position)
        )

    def known_positions(self) -> List[AmbulancePosition]:
        return list(self._positions.values())

    # -- dispatch ------------------------------------------------------------

    def _record_unmatched(self, report: EmergencyReport, call: EmergencyCall, reason: str) -> None:
        self._unmatched[report.id] = UnmatchedReport(
            report_id=report.id, call_id=call.id, reason=reason, at=self._clock(),
        )

    async def handle_report(
        self,
        report: EmergencyReport,
        positions: Optional[Iterable[AmbulancePosition]] = None,
        hospitals: Iterable[HospitalCapacity] = (),
    ) -> DispatchDecision:
        """Dispatch an ambulance for ``report``.

        ``positions`` defaults to the pings received through
        :meth:`report_position`.  A missing hospital match does not hold up
        the ambulance; the decision then carries no hospital.

        Raises
        ------
        NoAvailableUnit
            No free, fresh ambulance position within range.  The report is
            listed by :meth:`unmatched` until a later attempt succeeds.
        MatchError
            The report carries no coordinate.
        InvalidTransition
            The report's call is already past ``received``.
        """
        call, created = self.board.ensure_call(report)
        if created:
            await self._persist(ActionType.EMERGENCY_REPORT, EmergencyReportPayload(report.to_dict()))

        if call.status != CallStatus.RECEIVED:
            raise InvalidTransition(
                call.id, call.status.value, CallStatus.DISPATCHED.value, "already dispatched",
            )

        if report.coordinate is None:
            reason = "report has no coordinate"
            self._record_unmatched(report, call, reason)
            logger.warning("Report %s cannot be matched: %s", report.id, reason)
            raise MatchError(reason)

        pool = list(positions) if positions is not None else self.known_positions()
        try:
            unit, unit_distance = require_nearest(
                report.coordinate,
                pool,
                self.max_distance_km,
                exclude=self.board.busy_ambulances(),
                max_age=self.position_max_age,
                now=self._clock(),
            )
        except NoAvailableUnit as exc:
            self._record_unmatched(report, call, str(exc))
            raise

        hospital_id: Optional[str] = None
        hospital_distance: Optional[float] = None
        hospital_pool = list(hospitals)
        if hospital_pool:
            try:
                hospital, hospital_distance = require_best(
                    report.coordinate, report.emergency_type, hospital_pool, self.weights,
                )
                hospital_id = hospital.hospital_id
            except NoSuitableHospital as exc:
                logger.warning("Dispatching %s without a destination: %s", report.id, exc)

        updated = self.board.transition(
            call,
            CallStatus.DISPATCHED,
            actor="dispatcher",
            ambulance_id=unit.ambulance_id,
            hospital_id=hospital_id,
        )
        self._unmatched.pop(report.id, None)

        decision = DispatchDecision(
            call=updated,
            ambulance_id=unit.ambulance_id,
            distance_km=unit_distance,
            eta_minutes=eta_minutes(unit_distance, self.assumed_speed_kmh),
            hospital_id=hospital_id,
            hospital_distance_km=hospital_distance,
            hospital_travel_minutes=(
                None if hospital_distance is None
                else travel_time_minutes(hospital_distance, "emergency", self.travel_speeds_kmh)
            ),
        )
        logger.info(
            "Dispatched %s to call %s (%.2f km, eta %.1f min, hospital=%s)",
            unit.ambulance_id, updated.id, unit_distance, decision.eta_minutes, hospital_id,
        )

        await self._persist(ActionType.STATUS_UPDATE, StatusUpdatePayload.from_call(updated))
        return decision

    async def update_status(
        self,
        call: Union[EmergencyCall, str],
        next_status: Union[CallStatus, str],
        evidence: Optional[ArrivalEvidence] = None,
        *,
        actor: str = "crew",
        notes: Optional[str] = None,
    ) -> EmergencyCall:
        """Advance a call and forward the change to the backend."""
        updated = self.board.transition(call, next_status, evidence, actor=actor, notes=notes)
        if updated.is_terminal:
            self._unmatched.pop(updated.report_id, None)
        await self._persist(ActionType.STATUS_UPDATE, StatusUpdatePayload.from_call(updated))
        return updated

    # -- inspection ----------------------------------------------------------

    def unmatched(self) -> List[UnmatchedReport]:
        """Reports still waiting for an ambulance, oldest first."""
        return sorted(self._unmatched.values(), key=lambda u: u.at)
