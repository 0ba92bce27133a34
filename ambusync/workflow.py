"""
AmbuSync Workflow Module
========================

Emergency call lifecycle state machine with arrival validation, transition
hooks, and a call board that serialises transitions per call.

Lifecycle::

    received -> dispatched -> en_route -> arrived -> completed
        \\___________\\___________\\__________\\----> cancelled

The state machine is persistence-agnostic: every successful transition
returns a new ``EmergencyCall`` carrying an audit ``TransitionRecord``;
durability is the caller's job (see ``ambusync.dispatch``).
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from .errors import ConcurrentTransition, InvalidTransition, UnknownCall
from .geo import distance_km
from .models import (
    CallPriority,
    CallStatus,
    Coordinate,
    EmergencyCall,
    EmergencyReport,
    ReportStatus,
    TransitionRecord,
    new_id,
    priority_for_severity,
    utcnow,
)

logger = logging.getLogger(__name__)

ARRIVAL_RADIUS_KM = 0.1

# ---------------------------------------------------------------------------
# State transition graph
# ---------------------------------------------------------------------------

NEXT_STATUS: Dict[CallStatus, CallStatus] = {
    CallStatus.RECEIVED: CallStatus.DISPATCHED,
    CallStatus.DISPATCHED: CallStatus.EN_ROUTE,
    CallStatus.EN_ROUTE: CallStatus.ARRIVED,
    CallStatus.ARRIVED: CallStatus.COMPLETED,
}

TERMINAL_STATUSES: Set[CallStatus] = {CallStatus.COMPLETED, CallStatus.CANCELLED}

ACTIVE_UNIT_STATUSES: Set[CallStatus] = {
    CallStatus.DISPATCHED,
    CallStatus.EN_ROUTE,
    CallStatus.ARRIVED,
}


def can_transition(from_status: Union[CallStatus, str], to_status: Union[CallStatus, str]) -> bool:
    """Check whether a status change is allowed.

    Only the immediate successor is reachable; ``cancelled`` is reachable
    from every non-terminal status.
    """
    try:
        src = CallStatus(from_status)
        dst = CallStatus(to_status)
    except ValueError:
        return False
    if src in TERMINAL_STATUSES:
        return False
    if dst == CallStatus.CANCELLED:
        return True
    return NEXT_STATUS.get(src) == dst


# ---------------------------------------------------------------------------
# Arrival validation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ArrivalEvidence:
    """What the crew reports when confirming arrival."""
    coordinate: Optional[Coordinate] = None
    notes: Optional[str] = None


def validate_arrival(
    target: Coordinate,
    reported: Coordinate,
    radius_km: float = ARRIVAL_RADIUS_KM,
) -> str:
    """Advisory note comparing the reported arrival point with the target.

    Returns ``"confirmed"`` within ``radius_km`` and ``"discrepancy: <n>m"``
    otherwise.  Never raises.
    """
    distance = distance_km(target, reported)
    if distance <= radius_km:
        return "confirmed"
    return f"discrepancy: {round(distance * 1000)}m"


def _join_notes(*parts: Optional[str]) -> Optional[str]:
    text = " ".join(p.strip() for p in parts if p and p.strip())
    return text or None


# ---------------------------------------------------------------------------
# Dispatch state machine
# ---------------------------------------------------------------------------

TransitionHook = Callable[[EmergencyCall, TransitionRecord], None]


class DispatchStateMachine:
    """Creates calls and advances them through the dispatch lifecycle.

    Supports registering callbacks fired after a call enters a status.
    """

    def __init__(
        self,
        arrival_radius_km: float = ARRIVAL_RADIUS_KM,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.arrival_radius_km = arrival_radius_km
        self._clock = clock
        self._hooks: Dict[CallStatus, List[TransitionHook]] = {}

    @classmethod
    def from_config(cls, cfg: Any, **kwargs: Any) -> "DispatchStateMachine":
        kwargs.setdefault(
            "arrival_radius_km", float(cfg.get("workflow.arrival_radius_km", ARRIVAL_RADIUS_KM))
        )
        return cls(**kwargs)

    def on_enter(self, status: Union[CallStatus, str], callback: TransitionHook) -> None:
        """Register a callback to fire when a call enters ``status``."""
        self._hooks.setdefault(CallStatus(status), []).append(callback)

    # -- creation ------------------------------------------------------------

    def create(self, report: EmergencyReport, call_id: Optional[str] = None) -> EmergencyCall:
        """Open a call in ``received`` for a report.

        Priority follows the report severity (berat -> critical,
        sedang -> high, anything else -> medium).
        """
        now = self._clock()
        call = EmergencyCall(
            id=call_id or new_id("call"),
            report_id=report.id,
            priority=priority_for_severity(report.severity),
            status=CallStatus.RECEIVED,
            target_coordinate=report.coordinate,
            created_at=now,
            updated_at=now,
        )
        logger.info(
            "Call %s opened for report %s (priority=%s)",
            call.id, report.id, call.priority.value,
        )
        return call

    # -- transitions ---------------------------------------------------------

    def advance(
        self,
        call: EmergencyCall,
        next_status: Union[CallStatus, str],
        evidence: Optional[ArrivalEvidence] = None,
        *,
        actor: str = "system",
        ambulance_id: Optional[str] = None,
        hospital_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> EmergencyCall:
        """Move ``call`` to ``next_status``, fire its hooks and return the updated call.

        The input call is never modified; on ``InvalidTransition`` nothing
        changes.

        Raises
        ------
        InvalidTransition
            If ``next_status`` is not the immediate successor of the current
            status (``cancelled`` excepted while the call is not terminal).
        """
        updated = self.transition(
            call, next_status, evidence,
            actor=actor, ambulance_id=ambulance_id, hospital_id=hospital_id, notes=notes,
        )
        self.notify(updated)
        return updated

    def transition(
        self,
        call: EmergencyCall,
        next_status: Union[CallStatus, str],
        evidence: Optional[ArrivalEvidence] = None,
        *,
        actor: str = "system",
        ambulance_id: Optional[str] = None,
        hospital_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> EmergencyCall:
        """Like :meth:`advance` but without running hooks; see :meth:`notify`."""
        try:
            target = CallStatus(next_status)
        except ValueError:
            raise InvalidTransition(call.id, call.status.value, str(next_status), "unknown status")

        if not can_transition(call.status, target):
            reason = "call is closed" if call.is_terminal else "not the next step"
            raise InvalidTransition(call.id, call.status.value, target.value, reason)

        now = self._clock()
        changes = {
            "status": target,
            "updated_at": now,
            "revision": call.revision + 1,
        }
        if ambulance_id is not None:
            changes["ambulance_id"] = ambulance_id
        if hospital_id is not None:
            changes["hospital_id"] = hospital_id

        evidence_notes = evidence.notes if evidence else None
        validation: Optional[str] = None
        if target == CallStatus.ARRIVED:
            changes["arrived_at"] = now
            if evidence and evidence.coordinate and call.target_coordinate:
                validation = validate_arrival(
                    call.target_coordinate, evidence.coordinate, self.arrival_radius_km,
                )
                changes["arrival_validation"] = validation
        elif target == CallStatus.COMPLETED:
            changes["completed_at"] = now

        if notes or evidence_notes:
            changes["notes"] = _join_notes(call.notes, notes, evidence_notes)

        record = TransitionRecord(
            call_id=call.id,
            from_status=call.status,
            to_status=target,
            at=now,
            actor=actor,
            note=validation or notes,
        )
        changes["history"] = call.history + (record,)
        updated = replace(call, **changes)

        logger.info(
            "Call %s transitioned %s -> %s by %s",
            call.id, call.status.value, target.value, actor,
        )
        if validation and validation != "confirmed":
            logger.warning("Call %s arrival %s", call.id, validation)
        return updated

    def notify(self, call: EmergencyCall) -> None:
        """Run the ``on_enter`` hooks for the transition that produced ``call``.

        Hook failures are logged and never undo the transition.
        """
        if not call.history:
            return
        record = call.history[-1]
        for hook in self._hooks.get(record.to_status, []):
            try:
                hook(call, record)
            except Exception:
                logger.exception("Hook for %s failed on call %s", record.to_status.value, call.id)

    def complete(self, call: EmergencyCall, *, actor: str = "system", notes: Optional[str] = None) -> EmergencyCall:
        """Close an ``arrived`` call and stamp ``completed_at``."""
        return self.advance(call, CallStatus.COMPLETED, actor=actor, notes=notes)

    def cancel(self, call: EmergencyCall, *, actor: str = "system", reason: Optional[str] = None) -> EmergencyCall:
        return self.advance(call, CallStatus.CANCELLED, actor=actor, notes=reason)


# ---------------------------------------------------------------------------
# Call board
# ---------------------------------------------------------------------------

class CallBoard:
    """In-process registry of calls keyed by id and by report.

    Transitions on the same call are serialised by a per-call lock and
    checked against the call's revision, so a caller holding an outdated
    copy is rejected with ``ConcurrentTransition`` instead of overwriting a
    newer state.
    """

    def __init__(self, machine: Optional[DispatchStateMachine] = None) -> None:
        self.machine = machine or DispatchStateMachine()
        self._calls: Dict[str, EmergencyCall] = {}
        self._by_report: Dict[str, str] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._board_lock = threading.Lock()
        self._audit: List[TransitionRecord] = []

    # -- creation ------------------------------------------------------------

    def ensure_call(self, report: EmergencyReport) -> Tuple[EmergencyCall, bool]:
        """Return the call for ``report``, creating it on first sight.

        Returns ``(call, created)``.
        """
        with self._board_lock:
            existing = self._by_report.get(report.id)
            if existing is not None:
                return self._calls[existing], False
            call = self.machine.create(report)
            self._calls[call.id] = call
            self._by_report[report.id] = call.id
            self._locks[call.id] = threading.Lock()
            return call, True

    def observe_reports(self, reports: Iterable[EmergencyReport]) -> List[EmergencyCall]:
        """Open calls for pending reports that do not have one yet."""
        created: List[EmergencyCall] = []
        for report in reports:
            if report.status != ReportStatus.PENDING:
                continue
            call, is_new = self.ensure_call(report)
            if is_new:
                created.append(call)
        return created

    # -- transitions ---------------------------------------------------------

    def transition(
        self,
        call: Union[EmergencyCall, str],
        next_status: Union[CallStatus, str],
        evidence: Optional[ArrivalEvidence] = None,
        **kwargs,
    ) -> EmergencyCall:
        """Apply a transition to the stored call.

        Passing an ``EmergencyCall`` asserts the caller saw its latest
        revision; passing an id applies to whatever is current.
        """
        call_id = call if isinstance(call, str) else call.id
        with self._board_lock:
            lock = self._locks.get(call_id)
        if lock is None:
            raise UnknownCall(call_id)

        with lock:
            current = self.get(call_id)
            if isinstance(call, EmergencyCall) and call.revision != current.revision:
                raise ConcurrentTransition(
                    call_id,
                    call.status.value,
                    str(getattr(next_status, "value", next_status)),
                    f"stale revision {call.revision}, current is {current.revision}",
                )
            updated = self.machine.transition(current, next_status, evidence, **kwargs)
            with self._board_lock:
                self._calls[call_id] = updated
                self._audit.append(updated.history[-1])

        # Hooks see the stored state and may transition the call again.
        self.machine.notify(updated)
        return updated

    # -- queries -------------------------------------------------------------

    def get(self, call_id: str) -> Optional[EmergencyCall]:
        with self._board_lock:
            return self._calls.get(call_id)

    def for_report(self, report_id: str) -> Optional[EmergencyCall]:
        with self._board_lock:
            call_id = self._by_report.get(report_id)
            return self._calls.get(call_id) if call_id else None

    def all_calls(self) -> List[EmergencyCall]:
        with self._board_lock:
            return sorted(self._calls.values(), key=lambda c: c.created_at)

    def calls_by_status(self, status: Union[CallStatus, str]) -> List[EmergencyCall]:
        wanted = CallStatus(status)
        return [c for c in self.all_calls() if c.status == wanted]

    def critical_calls(self) -> List[EmergencyCall]:
        return [
            c for c in self.all_calls()
            if c.priority == CallPriority.CRITICAL and not c.is_terminal
        ]

    def busy_ambulances(self) -> Set[str]:
        """Ambulances currently committed to a call."""
        return {
            c.ambulance_id for c in self.all_calls()
            if c.ambulance_id and c.status in ACTIVE_UNIT_STATUSES
        }

    def audit_log(self) -> List[TransitionRecord]:
        with self._board_lock:
            return list(self._audit)
