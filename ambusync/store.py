"""
AmbuSync Queue Stores
=====================

Backing stores for sync queue items.  ``InMemoryQueueStore`` serves tests and
the non-durable fallback; ``PostgresQueueStore`` keeps items in the
``sync_queue`` table through the shared psycopg2 connection pool.

Every store raises ``StoreUnavailable`` when it cannot be reached, never a
driver-specific exception.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional

import psycopg2
import psycopg2.extras

from shared.db import ConnectionPool, get_pool

from .errors import StoreUnavailable
from .models import SyncQueueItem, SyncStatus

logger = logging.getLogger(__name__)

ALL_STATUSES = tuple(SyncStatus)


class QueueStore:
    """Interface every queue backing store implements."""

    # Blocking stores are called from a worker thread inside ``SyncQueue.flush``.
    blocking = False

    def get(self, item_id: str) -> Optional[SyncQueueItem]:
        raise NotImplementedError

    def put(self, item: SyncQueueItem) -> None:
        """Insert or replace the item with the same id."""
        raise NotImplementedError

    def list_by_status(self, *statuses: SyncStatus) -> List[SyncQueueItem]:
        """Items in any of ``statuses`` ordered by ``(priority, created_at)``."""
        raise NotImplementedError

    def delete(self, item_id: str) -> bool:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryQueueStore(QueueStore):
    """Thread-safe dict-backed store.  Contents are lost on restart."""

    def __init__(self) -> None:
        self._items: Dict[str, SyncQueueItem] = {}
        self._lock = threading.Lock()

    def get(self, item_id: str) -> Optional[SyncQueueItem]:
        with self._lock:
            item = self._items.get(item_id)
            return replace(item) if item is not None else None

    def put(self, item: SyncQueueItem) -> None:
        with self._lock:
            self._items[item.id] = replace(item)

    def list_by_status(self, *statuses: SyncStatus) -> List[SyncQueueItem]:
        wanted = set(statuses or ALL_STATUSES)
        with self._lock:
            items = [replace(i) for i in self._items.values() if i.status in wanted]
        items.sort(key=lambda i: i.sort_key())
        return items

    def delete(self, item_id: str) -> bool:
        with self._lock:
            return self._items.pop(item_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


# ---------------------------------------------------------------------------
# PostgreSQL store
# ---------------------------------------------------------------------------

_COLUMNS = (
    "id", "user_id", "action_type", "payload", "priority", "status",
    "retry_count", "max_retries", "created_at", "updated_at",
    "scheduled_at", "processed_at", "error_message",
)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    id            TEXT PRIMARY KEY,
    user_id       TEXT,
    action_type   TEXT NOT NULL,
    payload       JSONB NOT NULL,
    priority      INTEGER NOT NULL DEFAULT 1,
    status        TEXT NOT NULL DEFAULT 'pending',
    retry_count   INTEGER NOT NULL DEFAULT 0,
    max_retries   INTEGER NOT NULL DEFAULT 3,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    scheduled_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    processed_at  TIMESTAMPTZ,
    error_message TEXT
);
CREATE INDEX IF NOT EXISTS {table}_status_order_idx
    ON {table} (status, priority, created_at);
"""


class PostgresQueueStore(QueueStore):
    """Durable store backed by a PostgreSQL ``sync_queue`` table.

    Parameters
    ----------
    pool : ConnectionPool, optional
        Pool to use.  When omitted the module-level pool from
        :func:`shared.db.get_pool` is created lazily on first use, so an
        unreachable database surfaces as ``StoreUnavailable`` rather than an
        import-time failure.
    table : str
        Table name.
    """

    blocking = True

    def __init__(
        self,
        pool: Optional[ConnectionPool] = None,
        table: str = "sync_queue",
        pool_factory: Callable[[], ConnectionPool] = get_pool,
    ) -> None:
        self._pool = pool
        self._pool_factory = pool_factory
        self.table = table

    def _get_pool(self) -> ConnectionPool:
        if self._pool is None:
            try:
                self._pool = self._pool_factory()
            except psycopg2.Error as exc:
                raise StoreUnavailable(f"cannot open queue database: {exc}") from exc
        return self._pool

    def _execute(self, query: str, params=None, *, fetch: bool = True):
        pool = self._get_pool()
        try:
            return pool.execute(query, params, fetch=fetch)
        except psycopg2.Error as exc:
            logger.warning("Queue store query failed: %s", exc)
            raise StoreUnavailable(str(exc)) from exc

    def ensure_schema(self) -> None:
        self._execute(CREATE_TABLE_SQL.format(table=self.table), fetch=False)

    def get(self, item_id: str) -> Optional[SyncQueueItem]:
        rows = self._execute(f"SELECT * FROM {self.table} WHERE id = %s LIMIT 1", (item_id,))
        return SyncQueueItem.from_dict(rows[0]) if rows else None

    def put(self, item: SyncQueueItem) -> None:
        row = item.to_dict()
        row["payload"] = psycopg2.extras.Json(row["payload"])
        values = [row[col] for col in _COLUMNS]
        placeholders = ", ".join(["%s"] * len(_COLUMNS))
        updates = ", ".join(f"{col} = EXCLUDED.{col}" for col in _COLUMNS if col != "id")
        query = (
            f"INSERT INTO {self.table} ({', '.join(_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT (id) DO UPDATE SET {updates}"
        )
        self._execute(query, values, fetch=False)

    def list_by_status(self, *statuses: SyncStatus) -> List[SyncQueueItem]:
        wanted = [s.value for s in (statuses or ALL_STATUSES)]
        rows = self._execute(
            f"SELECT * FROM {self.table} WHERE status = ANY(%s) "
            f"ORDER BY priority ASC, created_at ASC",
            (wanted,),
        )
        return [SyncQueueItem.from_dict(row) for row in rows or []]

    def delete(self, item_id: str) -> bool:
        rows = self._execute(
            f"DELETE FROM {self.table} WHERE id = %s RETURNING id", (item_id,),
        )
        return bool(rows)
