"""
Queue Database Pool
===================

Lends PostgreSQL connections to the durable sync queue store.  Work is done
inside :meth:`ConnectionPool.connection`, which commits on a clean exit,
rolls back when the block raises, and always hands the connection back.
Connections that died under the caller are closed instead of being reused.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg2
import psycopg2.extensions
import psycopg2.extras
import psycopg2.pool

from shared.config import get_config

logger = logging.getLogger("ambusync.db")

APPLICATION_NAME = "ambusync"

# Errors after which a connection cannot be trusted again.
_BROKEN_CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


@dataclass(frozen=True)
class PoolSettings:
    """How to reach the queue database and how many connections to keep."""
    dsn: str
    min_connections: int = 1
    max_connections: int = 5
    connect_timeout: int = 5
    statement_timeout_ms: int = 10_000
    validate_on_checkout: bool = True

    @classmethod
    def from_config(cls, cfg: Any) -> "PoolSettings":
        """Settings from the ``db`` config section."""
        dsn = psycopg2.extensions.make_dsn(
            host=cfg.get("db.host", "localhost"),
            port=cfg.get("db.port", 5432),
            dbname=cfg.get("db.name", "ambusync"),
            user=cfg.get("db.user", "ambusync"),
            password=cfg.get("db.password") or None,
        )
        return cls(
            dsn=dsn,
            min_connections=int(cfg.get("db.pool_min", 1)),
            max_connections=int(cfg.get("db.pool_max", 5)),
        )


def redact_dsn(dsn: str) -> str:
    """``dsn`` with the password masked, for log lines."""
    try:
        params = psycopg2.extensions.parse_dsn(dsn)
    except psycopg2.ProgrammingError:
        return "<unparseable dsn>"
    if "password" in params:
        params["password"] = "***"
    return " ".join(f"{key}={value}" for key, value in params.items())


class ConnectionPool:
    """Thread-safe pool over ``psycopg2.pool.ThreadedConnectionPool``.

    Parameters
    ----------
    settings : PoolSettings
        Connection string, pool bounds and timeouts.  Every connection runs
        with ``statement_timeout`` set so a stuck query cannot pin a flush.
    """

    def __init__(self, settings: PoolSettings) -> None:
        self.settings = settings
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=settings.min_connections,
            maxconn=settings.max_connections,
            dsn=settings.dsn,
            connect_timeout=settings.connect_timeout,
            application_name=APPLICATION_NAME,
            options=f"-c statement_timeout={settings.statement_timeout_ms}",
        )
        self._lock = threading.Lock()
        self._closed = False
        logger.info(
            "Queue database pool ready (%d-%d connections) for %s",
            settings.min_connections, settings.max_connections, redact_dsn(settings.dsn),
        )

    @classmethod
    def from_dsn(cls, dsn: str, **options: Any) -> "ConnectionPool":
        return cls(PoolSettings(dsn=dsn, **options))

    # -- lending -------------------------------------------------------------

    @staticmethod
    def _is_alive(conn: psycopg2.extensions.connection) -> bool:
        if conn.closed:
            return False
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
            conn.rollback()
        except _BROKEN_CONNECTION_ERRORS:
            return False
        return True

    def _checkout(self) -> psycopg2.extensions.connection:
        with self._lock:
            if self._closed:
                raise psycopg2.InterfaceError("queue database pool is closed")
        conn = self._pool.getconn()
        if self.settings.validate_on_checkout and not self._is_alive(conn):
            logger.warning("Dropping dead queue database connection")
            self._pool.putconn(conn, close=True)
            conn = self._pool.getconn()
        return conn

    @contextmanager
    def connection(self) -> Iterator[psycopg2.extensions.connection]:
        """Borrow a connection for one unit of work."""
        conn = self._checkout()
        broken = False
        try:
            yield conn
            conn.commit()
        except _BROKEN_CONNECTION_ERRORS:
            broken = True
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn, close=broken or bool(conn.closed))

    def execute(
        self,
        query: str,
        params: Optional[Sequence[Any]] = None,
        *,
        fetch: bool = True,
    ) -> Optional[List[Dict[str, Any]]]:
        """Run one statement in its own transaction.

        Rows come back as plain dicts when ``fetch`` is set and the statement
        produced a result set.
        """
        with self.connection() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, params)
                if fetch and cur.description is not None:
                    return [dict(row) for row in cur.fetchall()]
        return None

    # -- lifecycle -----------------------------------------------------------

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._pool.closeall()
        logger.info("Queue database pool closed")

    def __enter__(self) -> "ConnectionPool":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Process-wide pool
# ---------------------------------------------------------------------------

_shared_pool: Optional[ConnectionPool] = None
_shared_lock = threading.Lock()


def get_pool(settings: Optional[PoolSettings] = None) -> ConnectionPool:
    """Pool shared by every store in the process.

    Created on first use from ``settings`` or, when omitted, from the ``db``
    config section.
    """
    global _shared_pool
    with _shared_lock:
        if _shared_pool is None:
            _shared_pool = ConnectionPool(settings or PoolSettings.from_config(get_config()))
        return _shared_pool


def close_pool() -> None:
    global _shared_pool
    with _shared_lock:
        pool, _shared_pool = _shared_pool, None
    if pool is not None:
        pool.close()
