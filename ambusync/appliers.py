"""
AmbuSync Remote Appliers
========================

Apply functions that deliver queued mutations to the hosted REST backend
(PostgREST-style endpoints) through ``shared.clients.HttpClient``.

Every operation is an upsert or an absolute PATCH, so delivering the same
payload twice leaves the backend in the same state.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Dict, Optional

import requests

from shared.clients import CircuitOpenError, HttpClient

from .errors import ApplyFailure
from .models import (
    ActionType,
    CallStatus,
    EmergencyReportPayload,
    LocationUpdatePayload,
    ReportStatus,
    StatusUpdatePayload,
)
from .queue import ApplyFunction, SyncQueue

logger = logging.getLogger(__name__)

UPSERT_HEADERS = {"Prefer": "resolution=merge-duplicates,return=minimal"}
PATCH_HEADERS = {"Prefer": "return=minimal"}

# The backend tracks the report, not the call, so call statuses collapse
# onto the three report states.
REPORT_STATUS_FOR_CALL: Dict[CallStatus, ReportStatus] = {
    CallStatus.RECEIVED: ReportStatus.PENDING,
    CallStatus.DISPATCHED: ReportStatus.IN_HANDLING,
    CallStatus.EN_ROUTE: ReportStatus.IN_HANDLING,
    CallStatus.ARRIVED: ReportStatus.IN_HANDLING,
    CallStatus.COMPLETED: ReportStatus.DONE,
    CallStatus.CANCELLED: ReportStatus.DONE,
}


class RestApplier:
    """Async apply functions for the three queued action types.

    Each method returns ``True`` on a 2xx answer and raises
    ``ApplyFailure`` otherwise; the sync queue records either outcome on the
    item.
    """

    def __init__(
        self,
        client: HttpClient,
        *,
        reports_path: str = "/emergency_reports",
        tracking_path: str = "/ambulance_tracking",
    ) -> None:
        self.client = client
        self.reports_path = reports_path
        self.tracking_path = tracking_path

    # -- transport -----------------------------------------------------------

    def _send(self, action: ActionType, method: str, path: str, **kwargs: Any) -> bool:
        try:
            response = self.client.request(method, path, **kwargs)
        except (requests.RequestException, CircuitOpenError) as exc:
            raise ApplyFailure(action.value, detail=f"{method} {path}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            body = (response.text or "")[:200]
            raise ApplyFailure(
                action.value,
                detail=f"{method} {path} returned {response.status_code}: {body}",
            )
        return True

    async def _run(self, action: ActionType, method: str, path: str, **kwargs: Any) -> bool:
        loop = asyncio.get_running_loop()
        call = functools.partial(self._send, action, method, path, **kwargs)
        return await loop.run_in_executor(None, call)

    # -- apply functions -----------------------------------------------------

    async def apply_report(self, payload: EmergencyReportPayload) -> bool:
        """Upsert the report row keyed by its id."""
        return await self._run(
            ActionType.EMERGENCY_REPORT,
            "POST",
            self.reports_path,
            params={"on_conflict": "id"},
            json=payload.to_dict(),
            headers=UPSERT_HEADERS,
        )

    async def apply_location(self, payload: LocationUpdatePayload) -> bool:
        """Upsert the latest position of one ambulance."""
        return await self._run(
            ActionType.LOCATION_UPDATE,
            "POST",
            self.tracking_path,
            params={"on_conflict": "ambulance_id"},
            json=payload.to_dict(),
            headers=UPSERT_HEADERS,
        )

    async def apply_status(self, payload: StatusUpdatePayload) -> bool:
        status = report_status_for(payload.status)
        return await self._run(
            ActionType.STATUS_UPDATE,
            "PATCH",
            self.reports_path,
            params={"id": f"eq.{payload.report_id}"},
            json={"status": status.value},
            headers=PATCH_HEADERS,
        )

    # -- wiring --------------------------------------------------------------

    def as_appliers(self) -> Dict[ActionType, ApplyFunction]:
        return {
            ActionType.EMERGENCY_REPORT: self.apply_report,
            ActionType.LOCATION_UPDATE: self.apply_location,
            ActionType.STATUS_UPDATE: self.apply_status,
        }

    def register_with(self, queue: SyncQueue) -> SyncQueue:
        for action, fn in self.as_appliers().items():
            queue.register(action, fn)
        return queue


def report_status_for(call_status: str) -> ReportStatus:
    """Report state matching a call status; unknown values raise ``ValueError``."""
    return REPORT_STATUS_FOR_CALL[CallStatus(call_status)]


def build_applier(cfg: Any, client: Optional[HttpClient] = None) -> RestApplier:
    """Construct a ``RestApplier`` using the ``backend`` config section."""
    return RestApplier(client or HttpClient.from_config(cfg))
