import math
from datetime import datetime, timedelta, timezone

from ambusync.errors import StoreUnavailable
from ambusync.geo import EARTH_RADIUS_KM
from ambusync.models import (
    AmbulancePosition,
    CapabilityFlags,
    Coordinate,
    HospitalCapacity,
)
from ambusync.store import InMemoryQueueStore

JAKARTA = Coordinate(-6.20, 106.80)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FlakyStore(InMemoryQueueStore):
    """In-memory store that can be switched off to simulate an outage."""

    def __init__(self) -> None:
        super().__init__()
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise StoreUnavailable("store is down")

    def get(self, item_id):
        self._check()
        return super().get(item_id)

    def put(self, item):
        self._check()
        super().put(item)

    def list_by_status(self, *statuses):
        self._check()
        return super().list_by_status(*statuses)

    def delete(self, item_id):
        self._check()
        return super().delete(item_id)


def north_of(origin: Coordinate, km: float) -> Coordinate:
    """Point exactly ``km`` great-circle kilometres north of ``origin``."""
    return Coordinate(origin.latitude + math.degrees(km / EARTH_RADIUS_KM), origin.longitude)


def position(ambulance_id: str, coord: Coordinate, captured_at: datetime = None) -> AmbulancePosition:
    return AmbulancePosition(
        ambulance_id=ambulance_id,
        coordinate=coord,
        accuracy_meters=10.0,
        captured_at=captured_at or datetime.now(timezone.utc),
    )


def hospital(
    hospital_id: str,
    coord: Coordinate,
    emergency=(10, 5),
    icu=(4, 2),
    **capabilities,
) -> HospitalCapacity:
    return HospitalCapacity(
        hospital_id=hospital_id,
        coordinate=coord,
        emergency_beds_total=emergency[0],
        emergency_beds_available=emergency[1],
        icu_beds_total=icu[0],
        icu_beds_available=icu[1],
        capabilities=CapabilityFlags(**capabilities),
    )
