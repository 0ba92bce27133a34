import unittest
from unittest import mock

import requests

from ambusync.appliers import (
    PATCH_HEADERS,
    UPSERT_HEADERS,
    RestApplier,
    build_applier,
    report_status_for,
)
from ambusync.errors import ApplyFailure
from ambusync.models import (
    ActionType,
    EmergencyReportPayload,
    LocationUpdatePayload,
    ReportStatus,
    StatusUpdatePayload,
    SyncStatus,
)
from ambusync.queue import SyncQueue
from shared.clients import CircuitOpenError


def ok(status: int = 201) -> mock.Mock:
    return mock.Mock(status_code=status, text="")


class RestApplierTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.client = mock.Mock()
        self.client.request.return_value = ok()
        self.applier = RestApplier(self.client)

    async def test_report_is_upserted_by_id(self) -> None:
        payload = EmergencyReportPayload({"id": "rpt-1", "type": "trauma", "severity": "berat"})
        self.assertTrue(await self.applier.apply_report(payload))
        self.client.request.assert_called_once_with(
            "POST",
            "/emergency_reports",
            params={"on_conflict": "id"},
            json={"id": "rpt-1", "type": "trauma", "severity": "berat"},
            headers=UPSERT_HEADERS,
        )

    async def test_location_is_upserted_by_ambulance(self) -> None:
        payload = LocationUpdatePayload(
            ambulance_id="amb-7", latitude=-6.2, longitude=106.8,
            accuracy=5.0, timestamp="2024-03-01T08:00:00+00:00",
        )
        await self.applier.apply_location(payload)
        method, path = self.client.request.call_args[0]
        kwargs = self.client.request.call_args[1]
        self.assertEqual((method, path), ("POST", "/ambulance_tracking"))
        self.assertEqual(kwargs["params"], {"on_conflict": "ambulance_id"})
        self.assertEqual(kwargs["json"]["ambulance_id"], "amb-7")

    async def test_status_patches_report_with_mapped_state(self) -> None:
        self.client.request.return_value = ok(204)
        payload = StatusUpdatePayload(call_id="call-1", report_id="rpt-1", status="en_route")
        await self.applier.apply_status(payload)
        self.client.request.assert_called_once_with(
            "PATCH",
            "/emergency_reports",
            params={"id": "eq.rpt-1"},
            json={"status": "dalam_penanganan"},
            headers=PATCH_HEADERS,
        )

    async def test_non_2xx_raises_apply_failure(self) -> None:
        self.client.request.return_value = mock.Mock(status_code=409, text="duplicate key")
        payload = StatusUpdatePayload(call_id="call-1", report_id="rpt-1", status="completed")
        with self.assertRaises(ApplyFailure) as ctx:
            await self.applier.apply_status(payload)
        self.assertEqual(ctx.exception.action_type, "status_update")
        self.assertIn("409", str(ctx.exception))
        self.assertIn("duplicate key", str(ctx.exception))

    async def test_transport_errors_raise_apply_failure(self) -> None:
        payload = EmergencyReportPayload({"id": "rpt-1"})
        for error in (requests.ConnectionError("refused"), CircuitOpenError("backend")):
            self.client.request.side_effect = error
            with self.assertRaises(ApplyFailure):
                await self.applier.apply_report(payload)

    async def test_registered_appliers_drive_queue(self) -> None:
        queue = self.applier.register_with(SyncQueue())
        item = queue.enqueue(
            ActionType.STATUS_UPDATE,
            StatusUpdatePayload(call_id="call-1", report_id="rpt-1", status="dispatched"),
        )
        report = await queue.flush()
        self.assertEqual(report.completed, 1)
        self.assertEqual(queue.get(item.id).status, SyncStatus.COMPLETED)

    async def test_rejected_apply_is_recorded_on_item(self) -> None:
        self.client.request.return_value = mock.Mock(status_code=500, text="boom")
        queue = self.applier.register_with(SyncQueue())
        item = queue.enqueue(ActionType.EMERGENCY_REPORT, {"id": "rpt-1"})
        await queue.flush()
        stored = queue.get(item.id)
        self.assertEqual(stored.status, SyncStatus.PENDING)
        self.assertEqual(stored.retry_count, 1)
        self.assertTrue(stored.error_message.startswith("ApplyFailure"))


class ReportStatusTests(unittest.TestCase):
    def test_call_statuses_collapse_to_report_states(self) -> None:
        self.assertEqual(report_status_for("received"), ReportStatus.PENDING)
        self.assertEqual(report_status_for("dispatched"), ReportStatus.IN_HANDLING)
        self.assertEqual(report_status_for("arrived"), ReportStatus.IN_HANDLING)
        self.assertEqual(report_status_for("completed"), ReportStatus.DONE)
        self.assertEqual(report_status_for("cancelled"), ReportStatus.DONE)

    def test_unknown_status_raises(self) -> None:
        with self.assertRaises(ValueError):
            report_status_for("teleported")

    def test_build_applier_uses_given_client(self) -> None:
        client = mock.Mock()
        self.assertIs(build_applier(mock.Mock(), client=client).client, client)


if __name__ == "__main__":
    unittest.main()
