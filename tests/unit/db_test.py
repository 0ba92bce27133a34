import unittest
from unittest import mock

import psycopg2

from shared.config import AmbuSyncConfig
from shared.db import ConnectionPool, PoolSettings, close_pool, get_pool, redact_dsn


class ConnectionPoolTests(unittest.TestCase):
    def setUp(self) -> None:
        patcher = mock.patch("shared.db.psycopg2.pool.ThreadedConnectionPool")
        self.pool_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.conn = self.make_conn()
        self.pool_cls.return_value.getconn.return_value = self.conn
        self.cursor = self.conn.cursor.return_value.__enter__.return_value

    @staticmethod
    def make_conn() -> mock.MagicMock:
        conn = mock.MagicMock()
        conn.closed = 0
        return conn

    def test_pool_bounds_and_statement_timeout(self) -> None:
        ConnectionPool(PoolSettings("host=db dbname=ambusync", min_connections=2,
                                    max_connections=7, statement_timeout_ms=5000))
        kwargs = self.pool_cls.call_args[1]
        self.assertEqual(kwargs["minconn"], 2)
        self.assertEqual(kwargs["maxconn"], 7)
        self.assertEqual(kwargs["options"], "-c statement_timeout=5000")
        self.assertEqual(kwargs["application_name"], "ambusync")

    def test_execute_returns_dict_rows_and_commits(self) -> None:
        pool = ConnectionPool.from_dsn("host=db", validate_on_checkout=False)
        self.cursor.description = [("id",)]
        self.cursor.fetchall.return_value = [{"id": "sq-1"}]
        rows = pool.execute("SELECT id FROM sync_queue WHERE id = %s", ("sq-1",))
        self.assertEqual(rows, [{"id": "sq-1"}])
        self.cursor.execute.assert_called_once_with(
            "SELECT id FROM sync_queue WHERE id = %s", ("sq-1",),
        )
        self.conn.commit.assert_called_once()
        self.pool_cls.return_value.putconn.assert_called_once_with(self.conn, close=False)

    def test_statement_error_rolls_back_and_keeps_connection(self) -> None:
        pool = ConnectionPool.from_dsn("host=db", validate_on_checkout=False)
        self.cursor.execute.side_effect = psycopg2.IntegrityError("duplicate key")
        with self.assertRaises(psycopg2.IntegrityError):
            pool.execute("INSERT INTO sync_queue VALUES (1)", fetch=False)
        self.conn.rollback.assert_called_once()
        self.conn.commit.assert_not_called()
        self.pool_cls.return_value.putconn.assert_called_once_with(self.conn, close=False)

    def test_broken_connection_is_closed_not_reused(self) -> None:
        pool = ConnectionPool.from_dsn("host=db", validate_on_checkout=False)
        self.cursor.execute.side_effect = psycopg2.OperationalError("server closed")
        with self.assertRaises(psycopg2.OperationalError):
            pool.execute("SELECT 1")
        self.pool_cls.return_value.putconn.assert_called_once_with(self.conn, close=True)

    def test_dead_connection_is_replaced_on_checkout(self) -> None:
        fresh = self.make_conn()
        self.pool_cls.return_value.getconn.side_effect = [self.conn, fresh]
        self.cursor.execute.side_effect = psycopg2.OperationalError("server closed")
        pool = ConnectionPool.from_dsn("host=db")
        with self.assertLogs("ambusync.db", level="WARNING"):
            with pool.connection() as conn:
                self.assertIs(conn, fresh)
        putconn = self.pool_cls.return_value.putconn
        self.assertEqual(putconn.call_args_list[0], mock.call(self.conn, close=True))
        self.assertEqual(putconn.call_args_list[1], mock.call(fresh, close=False))

    def test_closed_pool_refuses_checkout(self) -> None:
        pool = ConnectionPool.from_dsn("host=db")
        pool.close()
        pool.close()
        self.pool_cls.return_value.closeall.assert_called_once()
        with self.assertRaises(psycopg2.InterfaceError):
            pool.execute("SELECT 1")

    def test_process_pool_is_built_from_config(self) -> None:
        close_pool()
        self.addCleanup(close_pool)
        cfg = AmbuSyncConfig(
            config_dir="/nonexistent", environ={},
            overrides={"db": {"host": "db.internal", "password": "pw", "pool_max": 9}},
        )
        with mock.patch("shared.db.get_config", return_value=cfg):
            pool = get_pool()
        self.assertIs(get_pool(), pool)
        kwargs = self.pool_cls.call_args[1]
        self.assertIn("host=db.internal", kwargs["dsn"])
        self.assertEqual(kwargs["maxconn"], 9)


class RedactDsnTests(unittest.TestCase):
    def test_password_is_masked(self) -> None:
        redacted = redact_dsn("host=db user=amb password=s3cret")
        self.assertIn("password=***", redacted)
        self.assertIn("host=db", redacted)
        self.assertNotIn("s3cret", redacted)

    def test_garbage_dsn(self) -> None:
        self.assertEqual(redact_dsn("host='unterminated"), "<unparseable dsn>")


if __name__ == "__main__":
    unittest.main()
