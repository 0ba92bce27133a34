import unittest
from unittest import mock

import requests

from ambusync.appliers import RestApplier
from ambusync.dispatch import DispatchCoordinator
from ambusync.models import CallPriority, CallStatus, Severity, create_report
from ambusync.proximity import select_nearest
from ambusync.queue import SyncQueue
from ambusync.workflow import ArrivalEvidence, CallBoard, DispatchStateMachine
from shared.clients import HttpClient, RetryPolicy

from tests.helpers import JAKARTA, FakeClock, hospital, north_of, position


class DispatchFlowTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.session = mock.Mock(spec=requests.Session)
        self.session.request.side_effect = self._respond
        self.sent = []
        client = HttpClient(
            "https://backend.example.test/rest/v1",
            api_key="anon",
            session=self.session,
            retry=RetryPolicy(attempts=1),
        )
        self.queue = RestApplier(client).register_with(SyncQueue(clock=self.clock))
        self.board = CallBoard(DispatchStateMachine(clock=self.clock))
        self.coordinator = DispatchCoordinator(self.board, self.queue, clock=self.clock)
        self.units = [
            position("amb-2km", north_of(JAKARTA, 2.0), self.clock.now),
            position("amb-8km", north_of(JAKARTA, 8.0), self.clock.now),
        ]

    def _respond(self, method, url, **kwargs):
        self.sent.append((method, url, kwargs.get("params"), kwargs.get("json")))
        return mock.Mock(status_code=201 if method == "POST" else 204, text="")

    def test_severe_report_opens_critical_call_and_picks_nearest(self) -> None:
        report = create_report("trauma", Severity.BERAT, JAKARTA, report_id="rpt-1")
        call, created = self.board.ensure_call(report)
        self.assertTrue(created)
        self.assertEqual(call.priority, CallPriority.CRITICAL)
        self.assertEqual(call.status, CallStatus.RECEIVED)
        chosen = select_nearest(report.coordinate, self.units, 50.0)
        self.assertEqual(chosen.ambulance_id, "amb-2km")

    async def test_report_to_completion_against_backend(self) -> None:
        report = create_report("heart", "berat", JAKARTA, report_id="rpt-1")
        cardiac = hospital("rs-jantung", north_of(JAKARTA, 4.0), cardiac=True)
        decision = await self.coordinator.handle_report(report, self.units, [cardiac])
        self.assertEqual(decision.ambulance_id, "amb-2km")
        self.assertEqual(decision.hospital_id, "rs-jantung")

        call = await self.coordinator.update_status(decision.call, "en_route")
        call = await self.coordinator.update_status(
            call, "arrived", ArrivalEvidence(coordinate=north_of(JAKARTA, 0.5)),
        )
        self.assertEqual(call.arrival_validation, "discrepancy: 500m")
        await self.coordinator.update_status(call, "completed")

        first = self.sent[0]
        self.assertEqual(first[0], "POST")
        self.assertTrue(first[1].endswith("/emergency_reports"))
        self.assertEqual(first[2], {"on_conflict": "id"})
        self.assertEqual(first[3]["severity"], "berat")
        patches = [s[3]["status"] for s in self.sent if s[0] == "PATCH"]
        self.assertEqual(
            patches,
            ["dalam_penanganan", "dalam_penanganan", "dalam_penanganan", "selesai"],
        )
        self.assertEqual(self.queue.stats()["pending"], 0)
        self.assertEqual(len(self.board.audit_log()), 4)

    async def test_backend_errors_leave_mutations_queued(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("refused")
        report = create_report("trauma", "sedang", JAKARTA, report_id="rpt-2")
        with self.assertLogs("ambusync.queue", level="WARNING"):
            decision = await self.coordinator.handle_report(report, self.units)
        self.assertEqual(decision.call.status, CallStatus.DISPATCHED)
        self.assertEqual(decision.call.priority, CallPriority.HIGH)
        self.assertEqual(len(self.queue.pending_items()), 2)

        self.session.request.side_effect = self._respond
        result = await self.queue.flush()
        self.assertEqual(result.completed, 2)
        self.assertEqual([s[0] for s in self.sent], ["POST", "PATCH"])

    async def test_rejected_status_patch_keeps_later_ones_behind_it(self) -> None:
        rejections = [1]

        def respond(method, url, **kwargs):
            if method == "PATCH" and rejections[0]:
                rejections[0] -= 1
                return mock.Mock(status_code=503, text="unavailable")
            return self._respond(method, url, **kwargs)

        self.session.request.side_effect = respond
        report = create_report("trauma", "berat", JAKARTA, report_id="rpt-3")
        with self.assertLogs("ambusync.queue", level="WARNING"):
            decision = await self.coordinator.handle_report(report, self.units)
        call = decision.call
        for status in ("en_route", "arrived", "completed"):
            call = await self.coordinator.update_status(call, status)
        self.assertEqual(len(self.queue.pending_items()), 4)

        await self.queue.flush()
        patches = [s[3]["status"] for s in self.sent if s[0] == "PATCH"]
        self.assertEqual(patches, ["dalam_penanganan"] * 3 + ["selesai"])
        self.assertEqual(self.queue.stats()["pending"], 0)


if __name__ == "__main__":
    unittest.main()
