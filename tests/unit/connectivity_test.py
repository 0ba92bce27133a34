import asyncio
import unittest
from unittest import mock

import requests

from ambusync.connectivity import ConnectivityMonitor, HttpHealthProbe
from ambusync.models import StatusUpdatePayload, SyncStatus
from ambusync.queue import SyncQueue

from tests.helpers import FakeClock


def status(call_id: str) -> StatusUpdatePayload:
    return StatusUpdatePayload(call_id=call_id, report_id="rpt-1", status="en_route")


class SetOnlineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.delivered = []
        self.queue = SyncQueue(
            appliers={"status_update": lambda p: self.delivered.append(p) or True},
            clock=self.clock,
        )

    async def test_queue_follows_monitor_state(self) -> None:
        monitor = ConnectivityMonitor(self.queue, online=False)
        self.assertFalse(self.queue.online)
        await monitor.set_online(True)
        self.assertTrue(self.queue.online)

    async def test_reconnect_flushes_once(self) -> None:
        monitor = ConnectivityMonitor(self.queue, online=False)
        item = self.queue.enqueue("status_update", status("c1"))
        with mock.patch.object(self.queue, "flush", wraps=self.queue.flush) as flush:
            self.assertTrue(await monitor.set_online(True))
            self.assertFalse(await monitor.set_online(True))
        self.assertEqual(flush.call_count, 1)
        self.assertEqual(self.queue.get(item.id).status, SyncStatus.COMPLETED)

    async def test_going_offline_keeps_queue(self) -> None:
        monitor = ConnectivityMonitor(self.queue, online=True, clock=self.clock)
        events = []
        monitor.on_change(events.append)
        await monitor.set_online(False)
        item = self.queue.enqueue("status_update", status("c1"))
        report = await self.queue.flush()
        self.assertTrue(report.skipped_offline)
        self.assertEqual(self.queue.get(item.id).status, SyncStatus.PENDING)
        self.assertEqual([(e.kind, e.value) for e in events], [("network", False)])
        self.assertEqual(events[0].at, self.clock.now)

    async def test_listener_errors_do_not_break_transition(self) -> None:
        monitor = ConnectivityMonitor(self.queue, online=False)

        def broken(event):
            raise RuntimeError("ui gone")

        monitor.on_change(broken)
        with self.assertLogs("ambusync.connectivity", level="ERROR"):
            await monitor.set_online(True)
        self.assertTrue(monitor.is_online)


class HealthCheckTests(unittest.IsolatedAsyncioTestCase):
    async def test_unreachable_backend_is_not_offline(self) -> None:
        queue = SyncQueue()
        monitor = ConnectivityMonitor(queue, probe=lambda: False, online=True)
        with self.assertLogs("ambusync.connectivity", level="WARNING"):
            self.assertFalse(await monitor.check_health())
        self.assertFalse(monitor.backend_reachable)
        self.assertTrue(monitor.is_online)
        item = queue.enqueue("status_update", status("c1"))
        self.assertEqual(item.status, SyncStatus.PENDING)

    async def test_probe_backoff_grows_and_caps(self) -> None:
        monitor = ConnectivityMonitor(probe=lambda: False, health_interval=30.0,
                                      max_probe_backoff=30.0)
        delays = []
        for _ in range(7):
            await monitor.check_health()
            delays.append(monitor.next_probe_delay())
        self.assertEqual(delays, [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0])

    async def test_recovered_backend_triggers_flush(self) -> None:
        outcomes = iter([False, True])
        queue = SyncQueue()
        monitor = ConnectivityMonitor(queue, probe=lambda: next(outcomes))
        events = []
        monitor.on_change(events.append)
        with mock.patch.object(queue, "flush", wraps=queue.flush) as flush:
            await monitor.check_health()
            await monitor.check_health()
        self.assertEqual(flush.call_count, 1)
        self.assertEqual(monitor.next_probe_delay(), monitor.health_interval)
        self.assertEqual([(e.kind, e.value) for e in events],
                         [("backend", False), ("backend", True)])

    async def test_async_probe_and_probe_exceptions(self) -> None:
        async def probe():
            raise requests.ConnectionError("refused")

        monitor = ConnectivityMonitor(probe=probe)
        self.assertFalse(await monitor.check_health())

    async def test_background_loop_start_and_stop(self) -> None:
        probes = []
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            await asyncio.sleep(0)

        monitor = ConnectivityMonitor(probe=lambda: probes.append(1) or True, sleep=fake_sleep)
        monitor.start()
        self.assertTrue(monitor.running)
        while len(probes) < 3:
            await asyncio.sleep(0.01)
        await monitor.stop()
        self.assertFalse(monitor.running)
        self.assertTrue(all(s == 30.0 for s in sleeps))


class HttpHealthProbeTests(unittest.TestCase):
    def test_status_below_500_is_reachable(self) -> None:
        client = mock.Mock()
        client.get.return_value = mock.Mock(status_code=404)
        self.assertTrue(HttpHealthProbe(client)())
        client.get.assert_called_once_with("/health")
        client.get.return_value = mock.Mock(status_code=503)
        self.assertFalse(HttpHealthProbe(client)())

    def test_transport_errors_are_unreachable(self) -> None:
        client = mock.Mock()
        client.get.side_effect = requests.Timeout("slow")
        self.assertFalse(HttpHealthProbe(client, "/ping")())


if __name__ == "__main__":
    unittest.main()
