import unittest

from ambusync.models import (
    ActionType,
    CallPriority,
    Coordinate,
    EmergencyReportPayload,
    LocationUpdatePayload,
    StatusUpdatePayload,
    SyncQueueItem,
    SyncStatus,
    create_position,
    parse_payload,
    priority_for_severity,
)


class CoordinateTests(unittest.TestCase):
    def test_out_of_range_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Coordinate(91.0, 0.0)
        with self.assertRaises(ValueError):
            Coordinate(0.0, -180.5)

    def test_from_dict_accepts_both_key_styles(self) -> None:
        self.assertEqual(Coordinate.from_dict({"lat": -6.2, "lng": 106.8}), Coordinate(-6.2, 106.8))
        self.assertEqual(
            Coordinate.from_dict({"latitude": "-6.2", "longitude": "106.8"}),
            Coordinate(-6.2, 106.8),
        )


class PriorityTests(unittest.TestCase):
    def test_severity_mapping(self) -> None:
        self.assertEqual(priority_for_severity("berat"), CallPriority.CRITICAL)
        self.assertEqual(priority_for_severity("sedang"), CallPriority.HIGH)
        self.assertEqual(priority_for_severity("ringan"), CallPriority.MEDIUM)
        self.assertEqual(priority_for_severity("unknown"), CallPriority.MEDIUM)


class PayloadTests(unittest.TestCase):
    def test_parse_payload_picks_variant_by_action(self) -> None:
        payload = parse_payload("location_update", {
            "ambulance_id": "amb-1", "latitude": -6.2, "longitude": 106.8,
            "accuracy": 5, "timestamp": "2024-03-01T08:00:00+00:00",
        })
        self.assertIsInstance(payload, LocationUpdatePayload)
        self.assertEqual(payload.action_type, ActionType.LOCATION_UPDATE)

    def test_report_payload_requires_id(self) -> None:
        with self.assertRaises(ValueError):
            parse_payload(ActionType.EMERGENCY_REPORT, {"type": "trauma"})
        payload = parse_payload(ActionType.EMERGENCY_REPORT, {"id": "rpt-1", "type": "trauma"})
        self.assertIsInstance(payload, EmergencyReportPayload)

    def test_status_payload_requires_call_fields(self) -> None:
        with self.assertRaises(KeyError):
            parse_payload(ActionType.STATUS_UPDATE, {"status": "dispatched"})

    def test_location_payload_from_position(self) -> None:
        pos = create_position("amb-7", -6.21, 106.81, accuracy_meters=4.0, speed_mps=12.5)
        payload = LocationUpdatePayload.from_position(pos)
        self.assertEqual(payload.ambulance_id, "amb-7")
        self.assertEqual(payload.speed, 12.5)
        self.assertEqual(payload.timestamp, pos.captured_at.isoformat())


class SyncQueueItemTests(unittest.TestCase):
    def test_row_round_trip_keeps_owner_in_user_id(self) -> None:
        item = SyncQueueItem(
            id="sq-1",
            owner_id="user-9",
            action_type=ActionType.STATUS_UPDATE,
            payload=StatusUpdatePayload(call_id="c1", report_id="r1", status="dispatched"),
            priority=1,
        )
        row = item.to_dict()
        self.assertEqual(row["user_id"], "user-9")
        self.assertEqual(row["status"], "pending")
        restored = SyncQueueItem.from_dict(row)
        self.assertEqual(restored.owner_id, "user-9")
        self.assertEqual(restored.payload, item.payload)
        self.assertEqual(restored.created_at, item.created_at)

    def test_terminal_states(self) -> None:
        item = SyncQueueItem(
            id="sq-1", owner_id="", action_type=ActionType.EMERGENCY_REPORT,
            payload=EmergencyReportPayload({"id": "r1"}),
        )
        self.assertFalse(item.is_terminal)
        item.status = SyncStatus.FAILED
        self.assertTrue(item.is_terminal)


if __name__ == "__main__":
    unittest.main()
