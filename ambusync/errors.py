"""
AmbuSync Errors
===============

Typed failures raised by the matching, workflow, and synchronisation layers.
Matcher and workflow errors are decision errors returned to the immediate
caller; ``ApplyFailure`` and ``StoreUnavailable`` are I/O errors that the
sync queue absorbs and records on the affected item.
"""
from __future__ import annotations

from typing import Optional


class AmbuSyncError(Exception):
    """Base class for all library errors."""


class MatchError(AmbuSyncError):
    """A matcher found no eligible candidate."""


class NoAvailableUnit(MatchError):
    """No ambulance within the search radius."""

    def __init__(self, max_distance_km: float, considered: int = 0) -> None:
        self.max_distance_km = max_distance_km
        self.considered = considered
        super().__init__(
            f"No ambulance available within {max_distance_km:g} km "
            f"({considered} positions considered)"
        )


class NoSuitableHospital(MatchError):
    """No hospital has the capability and beds the emergency needs."""

    def __init__(self, emergency_type: str, considered: int = 0) -> None:
        self.emergency_type = emergency_type
        self.considered = considered
        super().__init__(
            f"No hospital can take a {emergency_type} emergency "
            f"({considered} hospitals considered)"
        )


class InvalidTransition(AmbuSyncError):
    """A call was asked to move to a status that does not follow its current one."""

    def __init__(self, call_id: str, from_status: str, to_status: str, reason: str = "") -> None:
        self.call_id = call_id
        self.from_status = from_status
        self.to_status = to_status
        message = f"Invalid transition for call {call_id}: {from_status} -> {to_status}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ConcurrentTransition(InvalidTransition):
    """The call changed since the caller last read it."""


class UnknownCall(AmbuSyncError):
    """No call with this id is on the board."""

    def __init__(self, call_id: str) -> None:
        self.call_id = call_id
        super().__init__(f"Unknown call: {call_id}")


class ApplyFailure(AmbuSyncError):
    """A remote apply function did not confirm the mutation."""

    def __init__(self, action_type: str, item_id: Optional[str] = None, detail: str = "") -> None:
        self.action_type = action_type
        self.item_id = item_id
        self.detail = detail
        super().__init__(detail or f"{action_type} apply failed")


class StoreUnavailable(AmbuSyncError):
    """The durable queue store could not be reached."""
