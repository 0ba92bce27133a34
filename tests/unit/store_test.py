import unittest
from datetime import datetime, timezone
from unittest import mock

import psycopg2
import psycopg2.extras

from ambusync.errors import StoreUnavailable
from ambusync.models import ActionType, StatusUpdatePayload, SyncQueueItem, SyncStatus
from ambusync.store import InMemoryQueueStore, PostgresQueueStore

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def make_item(item_id: str, priority: int = 1, status: SyncStatus = SyncStatus.PENDING,
              created_at: datetime = T0) -> SyncQueueItem:
    return SyncQueueItem(
        id=item_id,
        owner_id="user-1",
        action_type=ActionType.STATUS_UPDATE,
        payload=StatusUpdatePayload(call_id="c1", report_id="r1", status="dispatched"),
        priority=priority,
        status=status,
        created_at=created_at,
        updated_at=created_at,
        scheduled_at=created_at,
    )


class InMemoryStoreTests(unittest.TestCase):
    def test_put_is_upsert(self) -> None:
        store = InMemoryQueueStore()
        store.put(make_item("a"))
        store.put(make_item("a", status=SyncStatus.COMPLETED))
        self.assertEqual(len(store), 1)
        self.assertEqual(store.get("a").status, SyncStatus.COMPLETED)

    def test_returned_items_are_copies(self) -> None:
        store = InMemoryQueueStore()
        store.put(make_item("a"))
        copy = store.get("a")
        copy.status = SyncStatus.FAILED
        self.assertEqual(store.get("a").status, SyncStatus.PENDING)

    def test_list_by_status_orders_by_priority_then_age(self) -> None:
        store = InMemoryQueueStore()
        store.put(make_item("late", priority=1, created_at=T0.replace(minute=5)))
        store.put(make_item("early", priority=1))
        store.put(make_item("urgent", priority=0, created_at=T0.replace(minute=9)))
        store.put(make_item("done", priority=0, status=SyncStatus.COMPLETED))
        pending = store.list_by_status(SyncStatus.PENDING)
        self.assertEqual([i.id for i in pending], ["urgent", "early", "late"])
        self.assertEqual(len(store.list_by_status()), 4)

    def test_delete(self) -> None:
        store = InMemoryQueueStore()
        store.put(make_item("a"))
        self.assertTrue(store.delete("a"))
        self.assertFalse(store.delete("a"))


class PostgresStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.pool = mock.MagicMock()
        self.store = PostgresQueueStore(self.pool)

    def test_put_upserts_by_id(self) -> None:
        self.store.put(make_item("sq-1"))
        query, params = self.pool.execute.call_args[0]
        self.assertIn("INSERT INTO sync_queue", query)
        self.assertIn("ON CONFLICT (id) DO UPDATE", query)
        self.assertEqual(params[0], "sq-1")
        self.assertEqual(params[1], "user-1")
        self.assertIsInstance(params[3], psycopg2.extras.Json)
        self.assertFalse(self.pool.execute.call_args[1]["fetch"])

    def test_get_parses_row(self) -> None:
        row = make_item("sq-1").to_dict()
        self.pool.execute.return_value = [row]
        item = self.store.get("sq-1")
        self.assertEqual(item.id, "sq-1")
        self.assertEqual(item.payload.call_id, "c1")
        self.pool.execute.return_value = []
        self.assertIsNone(self.store.get("missing"))

    def test_list_by_status_passes_values(self) -> None:
        self.pool.execute.return_value = []
        self.store.list_by_status(SyncStatus.PENDING, SyncStatus.PROCESSING)
        query, params = self.pool.execute.call_args[0]
        self.assertIn("status = ANY(%s)", query)
        self.assertIn("ORDER BY priority ASC, created_at ASC", query)
        self.assertEqual(params, (["pending", "processing"],))

    def test_driver_errors_become_store_unavailable(self) -> None:
        self.pool.execute.side_effect = psycopg2.OperationalError("connection refused")
        with self.assertRaises(StoreUnavailable):
            self.store.put(make_item("sq-1"))
        with self.assertRaises(StoreUnavailable):
            self.store.list_by_status()

    def test_pool_is_created_lazily(self) -> None:
        factory = mock.Mock(side_effect=psycopg2.OperationalError("no route to host"))
        store = PostgresQueueStore(pool_factory=factory)
        factory.assert_not_called()
        with self.assertRaises(StoreUnavailable):
            store.get("sq-1")

    def test_delete_reports_whether_row_existed(self) -> None:
        self.pool.execute.return_value = [{"id": "sq-1"}]
        self.assertTrue(self.store.delete("sq-1"))
        self.pool.execute.return_value = []
        self.assertFalse(self.store.delete("sq-1"))

    def test_custom_table_in_schema(self) -> None:
        store = PostgresQueueStore(self.pool, table="outbox")
        store.ensure_schema()
        query = self.pool.execute.call_args[0][0]
        self.assertIn("CREATE TABLE IF NOT EXISTS outbox", query)


if __name__ == "__main__":
    unittest.main()
