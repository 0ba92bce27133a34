"""
AmbuSync: Ambulance Dispatch Matching and Offline Sync
======================================================

Core library for matching emergency reports to the nearest free ambulance
and a suitable hospital, tracking each call through its dispatch lifecycle,
and delivering every resulting mutation to the backend through a durable
offline outbox.
"""

__version__ = "1.0.0"

from .geo import haversine, distance_km, eta_minutes, travel_time_minutes, bounding_box
from .proximity import rank, select_nearest, require_nearest, latest_positions
from .capacity import capacity_score, find_best, require_best, ScoringWeights
from .workflow import can_transition, validate_arrival, DispatchStateMachine, CallBoard
from .queue import SyncQueue, FlushReport, LinearBackoff, ExponentialBackoff
from .store import QueueStore, InMemoryQueueStore, PostgresQueueStore
from .connectivity import ConnectivityMonitor, ConnectivityEvent, HttpHealthProbe
from .appliers import RestApplier
from .dispatch import DispatchCoordinator, DispatchDecision
from .errors import (
    AmbuSyncError,
    NoAvailableUnit,
    NoSuitableHospital,
    InvalidTransition,
    ConcurrentTransition,
    UnknownCall,
    ApplyFailure,
    StoreUnavailable,
)
from .models import (
    Coordinate,
    AmbulancePosition,
    HospitalCapacity,
    CapabilityFlags,
    EmergencyReport,
    EmergencyCall,
    SyncQueueItem,
    create_report,
    create_position,
)

__all__ = [
    # geo
    "haversine",
    "distance_km",
    "eta_minutes",
    "travel_time_minutes",
    "bounding_box",
    # proximity
    "rank",
    "select_nearest",
    "require_nearest",
    "latest_positions",
    # capacity
    "capacity_score",
    "find_best",
    "require_best",
    "ScoringWeights",
    # workflow
    "can_transition",
    "validate_arrival",
    "DispatchStateMachine",
    "CallBoard",
    # queue
    "SyncQueue",
    "FlushReport",
    "LinearBackoff",
    "ExponentialBackoff",
    # store
    "QueueStore",
    "InMemoryQueueStore",
    "PostgresQueueStore",
    # connectivity
    "ConnectivityMonitor",
    "ConnectivityEvent",
    "HttpHealthProbe",
    # appliers
    "RestApplier",
    # dispatch
    "DispatchCoordinator",
    "DispatchDecision",
    # errors
    "AmbuSyncError",
    "NoAvailableUnit",
    "NoSuitableHospital",
    "InvalidTransition",
    "ConcurrentTransition",
    "UnknownCall",
    "ApplyFailure",
    "StoreUnavailable",
    # models
    "Coordinate",
    "AmbulancePosition",
    "HospitalCapacity",
    "CapabilityFlags",
    "EmergencyReport",
    "EmergencyCall",
    "SyncQueueItem",
    "create_report",
    "create_position",
]
