"""
AmbuSync Domain Models
======================

Core data models for the ambulance dispatch and offline synchronisation
library.  Immutable value types (coordinates, position pings, capacity
snapshots, queue payloads) are frozen dataclasses; records that move through
a lifecycle (emergency calls, sync queue items) are mutable containers that
are replaced, not edited, by the modules that own them.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Severity(Enum):
    RINGAN = "ringan"    # minor
    SEDANG = "sedang"    # moderate
    BERAT = "berat"      # severe


class CallPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CallStatus(Enum):
    RECEIVED = "received"
    DISPATCHED = "dispatched"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReportStatus(Enum):
    PENDING = "pending"
    IN_HANDLING = "dalam_penanganan"
    DONE = "selesai"


class EmergencyType(Enum):
    TRAUMA = "trauma"
    CARDIAC = "cardiac"
    STROKE = "stroke"
    PEDIATRIC = "pediatric"
    GENERAL = "general"


class ActionType(Enum):
    EMERGENCY_REPORT = "emergency_report"
    LOCATION_UPDATE = "location_update"
    STATUS_UPDATE = "status_update"


class SyncStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


SEVERITY_TO_PRIORITY: Dict[Severity, CallPriority] = {
    Severity.BERAT: CallPriority.CRITICAL,
    Severity.SEDANG: CallPriority.HIGH,
}

# Report "type" values used by the intake forms.
REPORT_TYPE_ALIASES: Dict[str, EmergencyType] = {
    "heart": EmergencyType.CARDIAC,
    "cardiac": EmergencyType.CARDIAC,
    "trauma": EmergencyType.TRAUMA,
    "stroke": EmergencyType.STROKE,
    "pediatric": EmergencyType.PEDIATRIC,
}


def priority_for_severity(severity: Union[Severity, str]) -> CallPriority:
    """Map report severity to call priority (berat -> critical, sedang -> high)."""
    try:
        severity = Severity(severity)
    except ValueError:
        return CallPriority.MEDIUM
    return SEVERITY_TO_PRIORITY.get(severity, CallPriority.MEDIUM)


def emergency_type_for(report_type: str) -> EmergencyType:
    return REPORT_TYPE_ALIASES.get(str(report_type).lower(), EmergencyType.GENERAL)


# ---------------------------------------------------------------------------
# Coordinate
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """WGS84 latitude/longitude pair in degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.latitude, "lng": self.longitude}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Coordinate:
        lat = data.get("lat", data.get("latitude"))
        lng = data.get("lng", data.get("longitude"))
        return cls(float(lat), float(lng))


# ---------------------------------------------------------------------------
# Position and capacity snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AmbulancePosition:
    """One position ping reported by an ambulance client."""
    ambulance_id: str
    coordinate: Coordinate
    accuracy_meters: float
    captured_at: datetime
    speed_mps: Optional[float] = None
    heading_degrees: Optional[float] = None

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.captured_at).total_seconds()


@dataclass(frozen=True)
class CapabilityFlags:
    trauma: bool = False
    cardiac: bool = False
    stroke: bool = False
    pediatric: bool = False


@dataclass(frozen=True)
class HospitalCapacity:
    """Bed capacity snapshot for one hospital.

    Available counts must satisfy ``0 <= available <= total`` for both the
    emergency and the ICU bed class.
    """
    hospital_id: str
    coordinate: Coordinate
    emergency_beds_total: int
    emergency_beds_available: int
    icu_beds_total: int
    icu_beds_available: int
    capabilities: CapabilityFlags = field(default_factory=CapabilityFlags)
    last_updated: datetime = field(default_factory=utcnow)
    name: str = ""

    def __post_init__(self) -> None:
        for label, available, total in (
            ("emergency", self.emergency_beds_available, self.emergency_beds_total),
            ("icu", self.icu_beds_available, self.icu_beds_total),
        ):
            if total < 0:
                raise ValueError(f"{label} bed total must be non-negative, got {total}")
            if not 0 <= available <= total:
                raise ValueError(
                    f"{label} beds available ({available}) outside 0..{total}"
                )

    @property
    def total_beds(self) -> int:
        return self.emergency_beds_total + self.icu_beds_total

    @property
    def available_beds(self) -> int:
        return self.emergency_beds_available + self.icu_beds_available


# ---------------------------------------------------------------------------
# Emergency report and call
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmergencyReport:
    """An emergency report as filed by citizens or personnel."""
    id: str
    type: str                               # "trauma" | "heart" | ...
    severity: Severity
    status: ReportStatus = ReportStatus.PENDING
    location: str = ""
    coordinate: Optional[Coordinate] = None
    description: str = ""
    reporter_name: str = ""
    patient_name: str = ""
    created_at: datetime = field(default_factory=utcnow)

    @property
    def emergency_type(self) -> EmergencyType:
        return emergency_type_for(self.type)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "status": self.status.value,
            "location": self.location,
            "description": self.description,
            "reporter_name": self.reporter_name,
            "patient_name": self.patient_name,
            "created_at": _iso(self.created_at),
        }
        if self.coordinate is not None:
            data["latitude"] = self.coordinate.latitude
            data["longitude"] = self.coordinate.longitude
        return data


@dataclass(frozen=True)
class TransitionRecord:
    """Audit entry produced by every successful call transition."""
    call_id: str
    from_status: CallStatus
    to_status: CallStatus
    at: datetime
    actor: str = "system"
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "from": self.from_status.value,
            "to": self.to_status.value,
            "at": _iso(self.at),
            "actor": self.actor,
            "note": self.note,
        }


@dataclass
class EmergencyCall:
    """One emergency tracked from report through dispatch to completion."""
    id: str
    report_id: str
    priority: CallPriority
    status: CallStatus = CallStatus.RECEIVED
    ambulance_id: Optional[str] = None
    hospital_id: Optional[str] = None
    target_coordinate: Optional[Coordinate] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    arrived_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None
    arrival_validation: Optional[str] = None
    revision: int = 0
    history: Tuple[TransitionRecord, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in (CallStatus.COMPLETED, CallStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "report_id": self.report_id,
            "priority": self.priority.value,
            "status": self.status.value,
            "ambulance_id": self.ambulance_id,
            "hospital_id": self.hospital_id,
            "target": self.target_coordinate.to_dict() if self.target_coordinate else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "arrived_at": _iso(self.arrived_at),
            "completed_at": _iso(self.completed_at),
            "notes": self.notes,
            "arrival_validation": self.arrival_validation,
            "revision": self.revision,
        }


# ---------------------------------------------------------------------------
# Sync queue payloads (tagged by action type)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmergencyReportPayload:
    report: Dict[str, Any]

    action_type = ActionType.EMERGENCY_REPORT

    @property
    def sync_key(self) -> str:
        return f"report:{self.report['id']}"

    @property
    def sync_version(self) -> None:
        return None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.report)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EmergencyReportPayload:
        if "id" not in data:
            raise ValueError("emergency_report payload requires an 'id'")
        return cls(report=dict(data))


@dataclass(frozen=True)
class LocationUpdatePayload:
    ambulance_id: str
    latitude: float
    longitude: float
    accuracy: float
    timestamp: str
    speed: Optional[float] = None
    heading: Optional[float] = None

    action_type = ActionType.LOCATION_UPDATE

    @property
    def sync_key(self) -> str:
        return f"ambulance:{self.ambulance_id}"

    @property
    def sync_version(self) -> Optional[datetime]:
        """Capture time; ``None`` when the timestamp cannot be parsed."""
        try:
            captured = _parse_ts(self.timestamp)
        except ValueError:
            return None
        if captured is not None and captured.tzinfo is None:
            captured = captured.replace(tzinfo=timezone.utc)
        return captured

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ambulance_id": self.ambulance_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "speed": self.speed,
            "heading": self.heading,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> LocationUpdatePayload:
        return cls(
            ambulance_id=str(data["ambulance_id"]),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy=float(data.get("accuracy", 0.0)),
            timestamp=str(data["timestamp"]),
            speed=data.get("speed"),
            heading=data.get("heading"),
        )

    @classmethod
    def from_position(cls, position: AmbulancePosition) -> LocationUpdatePayload:
        return cls(
            ambulance_id=position.ambulance_id,
            latitude=position.coordinate.latitude,
            longitude=position.coordinate.longitude,
            accuracy=position.accuracy_meters,
            timestamp=position.captured_at.isoformat(),
            speed=position.speed_mps,
            heading=position.heading_degrees,
        )


@dataclass(frozen=True)
class StatusUpdatePayload:
    call_id: str
    report_id: str
    status: str
    revision: int = 0
    ambulance_id: Optional[str] = None
    notes: Optional[str] = None
    at: Optional[str] = None

    action_type = ActionType.STATUS_UPDATE

    # Shares the report's key so a status change never overtakes the report.
    @property
    def sync_key(self) -> str:
        return f"report:{self.report_id}"

    @property
    def sync_version(self) -> int:
        return self.revision

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "report_id": self.report_id,
            "status": self.status,
            "revision": self.revision,
            "ambulance_id": self.ambulance_id,
            "notes": self.notes,
            "at": self.at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StatusUpdatePayload:
        return cls(
            call_id=str(data["call_id"]),
            report_id=str(data["report_id"]),
            status=str(data["status"]),
            revision=int(data.get("revision", 0)),
            ambulance_id=data.get("ambulance_id"),
            notes=data.get("notes"),
            at=data.get("at"),
        )

    @classmethod
    def from_call(cls, call: EmergencyCall) -> StatusUpdatePayload:
        return cls(
            call_id=call.id,
            report_id=call.report_id,
            status=call.status.value,
            revision=call.revision,
            ambulance_id=call.ambulance_id,
            notes=call.notes,
            at=call.updated_at.isoformat(),
        )


SyncPayload = Union[EmergencyReportPayload, LocationUpdatePayload, StatusUpdatePayload]

PAYLOAD_TYPES: Dict[ActionType, type] = {
    ActionType.EMERGENCY_REPORT: EmergencyReportPayload,
    ActionType.LOCATION_UPDATE: LocationUpdatePayload,
    ActionType.STATUS_UPDATE: StatusUpdatePayload,
}


def parse_payload(action_type: Union[ActionType, str], data: Dict[str, Any]) -> SyncPayload:
    """Build the payload variant registered for ``action_type``."""
    action = ActionType(action_type)
    return PAYLOAD_TYPES[action].from_dict(data)  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Sync queue item
# ---------------------------------------------------------------------------

@dataclass
class SyncQueueItem:
    """A mutation awaiting confirmed delivery to the remote store."""
    id: str
    owner_id: str
    action_type: ActionType
    payload: SyncPayload
    priority: int = 1
    status: SyncStatus = SyncStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    scheduled_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    durable: bool = True

    @property
    def is_terminal(self) -> bool:
        return self.status in (SyncStatus.COMPLETED, SyncStatus.FAILED)

    def sort_key(self) -> Tuple[int, datetime]:
        return (self.priority, self.created_at)

    def is_due(self, now: datetime) -> bool:
        return self.status == SyncStatus.PENDING and self.scheduled_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.owner_id,
            "action_type": self.action_type.value,
            "payload": self.payload.to_dict(),
            "priority": self.priority,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "scheduled_at": _iso(self.scheduled_at),
            "processed_at": _iso(self.processed_at),
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> SyncQueueItem:
        action = ActionType(row["action_type"])
        return cls(
            id=str(row["id"]),
            owner_id=str(row.get("user_id") or ""),
            action_type=action,
            payload=parse_payload(action, row["payload"]),
            priority=int(row.get("priority") if row.get("priority") is not None else 1),
            status=SyncStatus(row.get("status", "pending")),
            retry_count=int(row.get("retry_count") or 0),
            max_retries=int(row.get("max_retries") or 3),
            created_at=_parse_ts(row.get("created_at")) or utcnow(),
            updated_at=_parse_ts(row.get("updated_at")) or utcnow(),
            scheduled_at=_parse_ts(row.get("scheduled_at")) or utcnow(),
            processed_at=_parse_ts(row.get("processed_at")),
            error_message=row.get("error_message"),
        )


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------

def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def create_report(
    report_type: str,
    severity: Union[Severity, str],
    coordinate: Optional[Coordinate] = None,
    location: str = "",
    description: str = "",
    report_id: Optional[str] = None,
) -> EmergencyReport:
    return EmergencyReport(
        id=report_id or new_id("rpt"),
        type=report_type,
        severity=Severity(severity),
        coordinate=coordinate,
        location=location,
        description=description,
    )


def create_position(
    ambulance_id: str,
    latitude: float,
    longitude: float,
    accuracy_meters: float = 10.0,
    captured_at: Optional[datetime] = None,
    speed_mps: Optional[float] = None,
    heading_degrees: Optional[float] = None,
) -> AmbulancePosition:
    return AmbulancePosition(
        ambulance_id=ambulance_id,
        coordinate=Coordinate(latitude, longitude),
        accuracy_meters=accuracy_meters,
        captured_at=captured_at or utcnow(),
        speed_mps=speed_mps,
        heading_degrees=heading_degrees,
    )
