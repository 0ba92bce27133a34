"""
AmbuSync Sync Queue
===================

Priority-ordered outbox of mutations that could not be confirmed against the
remote backend.  Items are persisted in a ``QueueStore`` and delivered by
``flush()`` through one apply function per action type.

Retry scheduling is explicit: a failed item is put back to ``pending`` with a
``scheduled_at`` timestamp and is only picked up by a later flush once that
time has passed.  No per-item timers exist.

Mutations that touch the same backend row share a sync key (the report for
reports and status changes, the ambulance for positions).  They are
delivered strictly in the order they were queued: a newer mutation never
bypasses an older one that is still waiting, and a mutation older than one
already delivered for its key is dropped instead of being replayed over it.
"""
from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from .errors import StoreUnavailable
from .models import (
    PAYLOAD_TYPES,
    ActionType,
    SyncPayload,
    SyncQueueItem,
    SyncStatus,
    new_id,
    parse_payload,
    utcnow,
)
from .store import InMemoryQueueStore, QueueStore

logger = logging.getLogger(__name__)

ApplyFunction = Callable[[SyncPayload], Union[bool, Awaitable[bool]]]

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETENTION = timedelta(days=1)

# Lower is more urgent.  Reports go first so the backend knows about an
# incident before it receives status changes for it.
DEFAULT_ACTION_PRIORITY: Dict[ActionType, int] = {
    ActionType.EMERGENCY_REPORT: 0,
    ActionType.STATUS_UPDATE: 1,
    ActionType.LOCATION_UPDATE: 2,
}


# ---------------------------------------------------------------------------
# Backoff strategies
# ---------------------------------------------------------------------------

class LinearBackoff:
    """``delay = retry_count * base_seconds``, optionally capped."""

    def __init__(self, base_seconds: float = 30.0, max_seconds: Optional[float] = None) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds

    def delay(self, retry_count: int) -> float:
        seconds = max(retry_count, 0) * self.base_seconds
        if self.max_seconds is not None:
            seconds = min(seconds, self.max_seconds)
        return seconds


class ExponentialBackoff:
    """``delay = base_seconds * factor ** (retry_count - 1)``, capped."""

    def __init__(
        self,
        base_seconds: float = 30.0,
        factor: float = 2.0,
        max_seconds: float = 900.0,
    ) -> None:
        self.base_seconds = base_seconds
        self.factor = factor
        self.max_seconds = max_seconds

    def delay(self, retry_count: int) -> float:
        if retry_count <= 0:
            return 0.0
        return min(self.max_seconds, self.base_seconds * self.factor ** (retry_count - 1))


def backoff_from_config(cfg: Any) -> Union[LinearBackoff, ExponentialBackoff]:
    strategy = cfg.get("sync.backoff", "linear")
    base = float(cfg.get("sync.backoff_base_seconds", 30.0))
    cap = float(cfg.get("sync.backoff_max_seconds", 900.0))
    if strategy == "exponential":
        return ExponentialBackoff(base_seconds=base, max_seconds=cap)
    if strategy == "linear":
        return LinearBackoff(base_seconds=base, max_seconds=cap)
    raise ValueError(f"Unknown backoff strategy: {strategy!r}")


# ---------------------------------------------------------------------------
# Flush report
# ---------------------------------------------------------------------------

@dataclass
class FlushReport:
    """What a single flush pass did."""
    attempted: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    migrated: int = 0
    superseded: int = 0
    skipped_offline: bool = False
    coalesced: bool = False


# ---------------------------------------------------------------------------
# Sync queue
# ---------------------------------------------------------------------------

class SyncQueue:
    """Durable outbox with bounded retries.

    Parameters
    ----------
    store : QueueStore, optional
        Durable backing store.  Defaults to an in-memory store.
    appliers : dict, optional
        Apply function per action type.  An apply function receives the typed
        payload and returns (or resolves to) a truthy value on success.  It
        must be idempotent: an interrupted flush can deliver the same payload
        twice.
    owner_id : str
        Default owner stamped on new items (the ``user_id`` column).
    max_retries : int
        Attempts before an item becomes ``failed``.
    backoff : LinearBackoff or ExponentialBackoff, optional
        Delay policy between attempts.  Defaults to 30 s linear.
    is_online : callable, optional
        Connectivity check consulted by ``flush`` and ``submit``.
    fallback : QueueStore, optional
        Best-effort store used while ``store`` is unreachable.
    """

    def __init__(
        self,
        store: Optional[QueueStore] = None,
        appliers: Optional[Dict[Union[ActionType, str], ApplyFunction]] = None,
        *,
        owner_id: str = "",
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff: Optional[Union[LinearBackoff, ExponentialBackoff]] = None,
        is_online: Optional[Callable[[], bool]] = None,
        clock: Callable[[], datetime] = utcnow,
        fallback: Optional[QueueStore] = None,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._store = store if store is not None else InMemoryQueueStore()
        self._fallback = fallback if fallback is not None else InMemoryQueueStore()
        self._appliers: Dict[ActionType, ApplyFunction] = {}
        for action, fn in (appliers or {}).items():
            self.register(action, fn)
        self.owner_id = owner_id
        self.max_retries = max_retries
        self.backoff = backoff or LinearBackoff()
        self.retention = retention
        self._is_online = is_online or (lambda: True)
        self._clock = clock
        self._in_flight: set = set()
        self._flush_task: Optional[asyncio.Future] = None
        # sync keys with a direct apply in progress
        self._direct: Set[str] = set()
        # newest version delivered per (action, sync key)
        self._delivered: Dict[Tuple[ActionType, str], Any] = {}

    @classmethod
    def from_config(cls, cfg: Any, store: Optional[QueueStore] = None, **kwargs: Any) -> "SyncQueue":
        kwargs.setdefault("max_retries", int(cfg.get("sync.max_retries", DEFAULT_MAX_RETRIES)))
        kwargs.setdefault("backoff", backoff_from_config(cfg))
        kwargs.setdefault(
            "retention", timedelta(seconds=float(cfg.get("sync.retention_seconds", 86400)))
        )
        return cls(store, **kwargs)

    # -- wiring --------------------------------------------------------------

    def register(self, action_type: Union[ActionType, str], fn: ApplyFunction) -> None:
        """Install the apply function for ``action_type``."""
        self._appliers[ActionType(action_type)] = fn

    def set_online_check(self, check: Callable[[], bool]) -> None:
        self._is_online = check

    @property
    def online(self) -> bool:
        return bool(self._is_online())

    # -- intake --------------------------------------------------------------

    def _coerce_payload(
        self, action: ActionType, payload: Union[SyncPayload, Dict[str, Any]]
    ) -> SyncPayload:
        if isinstance(payload, dict):
            try:
                return parse_payload(action, payload)
            except (KeyError, TypeError) as exc:
                raise ValueError(f"invalid {action.value} payload: {exc!r}") from exc
        expected = PAYLOAD_TYPES[action]
        if not isinstance(payload, expected):
            raise ValueError(
                f"{action.value} expects {expected.__name__}, got {type(payload).__name__}"
            )
        return payload

    def enqueue(
        self,
        action_type: Union[ActionType, str],
        payload: Union[SyncPayload, Dict[str, Any]],
        priority: Optional[int] = None,
        *,
        owner_id: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> SyncQueueItem:
        """Append a pending mutation.

        Never fails because of the store: when the durable store is
        unreachable the item is kept in memory under a ``local_`` id and
        migrated on a later flush.

        Raises
        ------
        ValueError
            If the payload does not match the action type's schema.
        """
        action = ActionType(action_type)
        body = self._coerce_payload(action, payload)
        now = self._clock()
        item = SyncQueueItem(
            id=new_id("sq"),
            owner_id=self.owner_id if owner_id is None else owner_id,
            action_type=action,
            payload=body,
            priority=DEFAULT_ACTION_PRIORITY[action] if priority is None else priority,
            max_retries=self.max_retries if max_retries is None else max_retries,
            created_at=now,
            updated_at=now,
            scheduled_at=now,
        )
        try:
            self._store.put(item)
        except StoreUnavailable as exc:
            item = replace(item, id=new_id("local"), durable=False)
            self._fallback.put(item)
            logger.warning(
                "Queue store unavailable (%s); holding %s %s in memory",
                exc, action.value, item.id,
            )
        else:
            logger.debug("Enqueued %s %s (priority=%d)", action.value, item.id, item.priority)
        return item

    async def submit(
        self,
        action_type: Union[ActionType, str],
        payload: Union[SyncPayload, Dict[str, Any]],
        priority: Optional[int] = None,
        *,
        owner_id: Optional[str] = None,
    ) -> Optional[SyncQueueItem]:
        """Apply directly when online, otherwise (or on failure) enqueue.

        A mutation whose sync key still has an undelivered item (or a direct
        apply in progress) is queued behind it instead of being applied.
        Returns ``None`` when the mutation was applied or is already
        outdated, or the queued item.
        """
        action = ActionType(action_type)
        body = self._coerce_payload(action, payload)
        fn = self._appliers.get(action)
        if fn is None or not self.online:
            return self.enqueue(action, body, priority, owner_id=owner_id)

        if self._is_outdated(action, body):
            logger.info("Dropping outdated %s for %s", action.value, body.sync_key)
            return None

        key = body.sync_key
        if key in self._direct:
            logger.debug("Queueing %s behind a direct apply for %s", action.value, key)
            return self.enqueue(action, body, priority, owner_id=owner_id)

        self._direct.add(key)
        try:
            if await self._store_call(self._undelivered_for, key) is not None:
                logger.debug("Queueing %s behind undelivered work for %s", action.value, key)
                return self.enqueue(action, body, priority, owner_id=owner_id)
            ok, error = await self._invoke(fn, body)
            if ok:
                self._note_delivered(action, body)
                return None
            logger.warning("Direct %s apply failed (%s); queueing", action.value, error)
            # enqueue before releasing the key so nothing newer slips ahead
            return self.enqueue(action, body, priority, owner_id=owner_id)
        finally:
            self._direct.discard(key)

    # -- ordering per sync key -----------------------------------------------

    def _undelivered_for(self, key: str) -> Optional[SyncQueueItem]:
        for item in self._collect(SyncStatus.PENDING, SyncStatus.PROCESSING):
            if item.payload.sync_key == key:
                return item
        return None

    def _is_outdated(self, action: ActionType, payload: SyncPayload) -> bool:
        version = payload.sync_version
        delivered = self._delivered.get((action, payload.sync_key))
        if version is None or delivered is None:
            return False
        return version < delivered

    def _note_delivered(self, action: ActionType, payload: SyncPayload) -> None:
        version = payload.sync_version
        if version is None:
            return
        slot = (action, payload.sync_key)
        delivered = self._delivered.get(slot)
        if delivered is None or version > delivered:
            self._delivered[slot] = version

    # -- flushing ------------------------------------------------------------

    async def flush(self) -> FlushReport:
        """Deliver every due pending item.

        A no-op while offline.  A call made while another flush is running
        waits for that pass instead of starting a second one, so no item is
        handed to its apply function twice at the same time.
        """
        if not self.online:
            logger.debug("Flush skipped: offline")
            return FlushReport(skipped_offline=True)

        task = self._flush_task
        coalesced = task is not None and not task.done()
        if not coalesced:
            task = asyncio.ensure_future(self._flush_pass())
            self._flush_task = task
        report = await asyncio.shield(task)
        return replace(report, coalesced=True) if coalesced else report

    async def _store_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run store-touching work, off the event loop for blocking stores."""
        if not self._store.blocking:
            return fn(*args)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def _flush_pass(self) -> FlushReport:
        report = FlushReport()
        report.migrated = await self._store_call(self._migrate_fallback)

        now = self._clock()
        waiting = await self._store_call(self._collect, SyncStatus.PENDING, SyncStatus.PROCESSING)
        # An item is only due if nothing older with its sync key is still waiting.
        held: Set[str] = set(self._direct)
        due: List[SyncQueueItem] = []
        for item in waiting:
            key = item.payload.sync_key
            if key in held:
                continue
            if item.status != SyncStatus.PENDING or item.id in self._in_flight or not item.is_due(now):
                held.add(key)
                continue
            due.append(item)
        if not due:
            return report

        # Owners are independent; items of one owner keep their order.
        by_owner: Dict[str, List[SyncQueueItem]] = {}
        for item in due:
            by_owner.setdefault(item.owner_id, []).append(item)

        blocked: Set[str] = set()
        await asyncio.gather(*(self._drain(items, report, blocked) for items in by_owner.values()))

        logger.info(
            "Flush done: attempted=%d completed=%d retried=%d failed=%d superseded=%d",
            report.attempted, report.completed, report.retried, report.failed, report.superseded,
        )
        return report

    async def _drain(self, items: List[SyncQueueItem], report: FlushReport, blocked: Set[str]) -> None:
        for item in items:
            key = item.payload.sync_key
            if key in blocked:
                continue
            if not await self._process(item, report):
                blocked.add(key)

    async def _process(self, item: SyncQueueItem, report: FlushReport) -> bool:
        """Deliver one item; ``False`` when its sync key must wait for a later pass."""
        current = await self._store_call(self.get, item.id)
        if current is None:
            return True
        if current.status != SyncStatus.PENDING or item.id in self._in_flight:
            return False

        self._in_flight.add(item.id)
        try:
            if self._is_outdated(current.action_type, current.payload):
                now = self._clock()
                await self._store_call(self._save, replace(
                    current,
                    status=SyncStatus.COMPLETED,
                    updated_at=now,
                    processed_at=now,
                    error_message="superseded by a newer delivered update",
                ))
                report.superseded += 1
                logger.info(
                    "Skipped %s %s: a newer update for %s was already delivered",
                    current.action_type.value, current.id, current.payload.sync_key,
                )
                return True

            report.attempted += 1
            current = replace(current, status=SyncStatus.PROCESSING, updated_at=self._clock())
            await self._store_call(self._save, current)

            fn = self._appliers.get(current.action_type)
            if fn is None:
                ok, error = False, f"no apply function for {current.action_type.value}"
            else:
                ok, error = await self._invoke(fn, current.payload)

            now = self._clock()
            if ok:
                self._note_delivered(current.action_type, current.payload)
                await self._store_call(self._save, replace(
                    current,
                    status=SyncStatus.COMPLETED,
                    updated_at=now,
                    processed_at=now,
                    error_message=None,
                ))
                report.completed += 1
                logger.debug("Delivered %s %s", current.action_type.value, current.id)
                return True
            gave_up = await self._store_call(self._record_failure, current, error or "apply failed", now)
            if gave_up:
                report.failed += 1
            else:
                report.retried += 1
            return False
        finally:
            self._in_flight.discard(item.id)

    async def _invoke(self, fn: ApplyFunction, payload: SyncPayload):
        try:
            result = fn(payload)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            return False, f"{type(exc).__name__}: {exc}"
        if not result:
            return False, "apply function reported failure"
        return True, None

    def _record_failure(self, item: SyncQueueItem, error: str, now: datetime) -> bool:
        """Reschedule or fail ``item``; ``True`` once it has used all attempts."""
        retry_count = item.retry_count + 1
        if retry_count >= item.max_retries:
            self._save(replace(
                item,
                status=SyncStatus.FAILED,
                retry_count=retry_count,
                error_message=error,
                updated_at=now,
            ))
            logger.error(
                "Sync item %s (%s) failed permanently after %d attempts: %s",
                item.id, item.action_type.value, retry_count, error,
            )
            return True

        delay = self.backoff.delay(retry_count)
        self._save(replace(
            item,
            status=SyncStatus.PENDING,
            retry_count=retry_count,
            error_message=error,
            updated_at=now,
            scheduled_at=now + timedelta(seconds=delay),
        ))
        logger.warning(
            "Sync item %s (%s) attempt %d/%d failed, retry in %.0fs: %s",
            item.id, item.action_type.value, retry_count, item.max_retries, delay, error,
        )
        return False

    # -- store plumbing ------------------------------------------------------

    def _save(self, item: SyncQueueItem) -> None:
        if item.durable:
            try:
                self._store.put(item)
                self._fallback.delete(item.id)
                return
            except StoreUnavailable as exc:
                logger.warning("Queue store unavailable (%s); keeping %s in memory", exc, item.id)
        self._fallback.put(item)

    def _collect(self, *statuses: SyncStatus) -> List[SyncQueueItem]:
        """Items from both stores; the in-memory copy wins when both have one."""
        wanted = set(statuses or SyncStatus)
        merged: Dict[str, SyncQueueItem] = {}
        try:
            for item in self._store.list_by_status(*statuses):
                merged[item.id] = item
        except StoreUnavailable as exc:
            logger.warning("Queue store unavailable while listing: %s", exc)
        for item in self._fallback.list_by_status():
            if item.status in wanted:
                merged[item.id] = item
            else:
                merged.pop(item.id, None)
        return sorted(merged.values(), key=SyncQueueItem.sort_key)

    def _migrate_fallback(self) -> int:
        moved = 0
        for item in self._fallback.list_by_status():
            if item.id in self._in_flight:
                continue
            try:
                self._store.put(replace(item, durable=True))
            except StoreUnavailable:
                logger.debug("Queue store still unavailable; %d items stay in memory", len(self._fallback))
                break
            self._fallback.delete(item.id)
            moved += 1
        if moved:
            logger.info("Moved %d in-memory queue items to the durable store", moved)
        return moved

    # -- operator actions ----------------------------------------------------

    def get(self, item_id: str) -> Optional[SyncQueueItem]:
        item = self._fallback.get(item_id)
        if item is not None:
            return item
        try:
            return self._store.get(item_id)
        except StoreUnavailable:
            return None

    def cancel(self, item_id: str) -> bool:
        """Remove a still-pending item.  Returns ``False`` if it cannot be removed."""
        item = self.get(item_id)
        if item is None or item.status != SyncStatus.PENDING or item_id in self._in_flight:
            return False
        try:
            self._store.delete(item_id)
        except StoreUnavailable as exc:
            if item.durable:
                logger.warning("Cannot cancel %s, queue store unavailable: %s", item_id, exc)
                return False
        self._fallback.delete(item_id)
        logger.info("Cancelled sync item %s (%s)", item_id, item.action_type.value)
        return True

    def retry_failed(self, item_id: str) -> Optional[SyncQueueItem]:
        """Give a ``failed`` item a fresh set of attempts."""
        item = self.get(item_id)
        if item is None or item.status != SyncStatus.FAILED:
            return None
        now = self._clock()
        item = replace(
            item,
            status=SyncStatus.PENDING,
            retry_count=0,
            error_message=None,
            updated_at=now,
            scheduled_at=now,
        )
        self._save(item)
        logger.info("Re-queued failed sync item %s", item_id)
        return item

    def recover_interrupted(self) -> int:
        """Return items stranded in ``processing`` (e.g. after a crash) to ``pending``.

        Their apply functions may already have run; that is safe because
        apply functions are idempotent.
        """
        recovered = 0
        now = self._clock()
        for item in self._collect(SyncStatus.PROCESSING):
            if item.id in self._in_flight:
                continue
            self._save(replace(item, status=SyncStatus.PENDING, updated_at=now))
            recovered += 1
        if recovered:
            logger.warning("Recovered %d interrupted sync items", recovered)
        return recovered

    def purge_terminal(
        self,
        older_than: Optional[timedelta] = None,
        include_failed: bool = False,
    ) -> int:
        """Delete completed items past retention.

        Failed items are kept for inspection unless ``include_failed``.
        """
        statuses = [SyncStatus.COMPLETED]
        if include_failed:
            statuses.append(SyncStatus.FAILED)
        cutoff = self._clock() - (self.retention if older_than is None else older_than)
        purged = 0
        for item in self._collect(*statuses):
            if (item.processed_at or item.updated_at) > cutoff:
                continue
            try:
                self._store.delete(item.id)
            except StoreUnavailable:
                if item.durable:
                    continue
            self._fallback.delete(item.id)
            purged += 1
        if purged:
            logger.info("Purged %d terminal sync items", purged)
        return purged

    # -- inspection ----------------------------------------------------------

    def pending_items(self) -> List[SyncQueueItem]:
        return self._collect(SyncStatus.PENDING)

    def failed_items(self) -> List[SyncQueueItem]:
        return self._collect(SyncStatus.FAILED)

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in SyncStatus}
        for item in self._collect():
            counts[item.status.value] += 1
        counts["in_memory"] = len(self._fallback.list_by_status())
        return counts
