"""
AmbuSync Connectivity Monitor
=============================

Tracks two separate signals:

* ``is_online`` -- the platform's network signal.  Going online triggers one
  ``SyncQueue.flush()``; going offline leaves the queue untouched.
* ``backend_reachable`` -- the result of periodic health probes.  A failing
  probe never marks the monitor offline, so enqueueing keeps working while
  the backend errors.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Union

import requests

from shared.clients import CircuitOpenError, HttpClient

from .models import utcnow
from .queue import SyncQueue

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_INTERVAL = 30.0
DEFAULT_MAX_PROBE_BACKOFF = 30.0

Probe = Callable[[], Union[bool, Awaitable[bool]]]


@dataclass(frozen=True)
class ConnectivityEvent:
    """A change of one connectivity signal.

    ``kind`` is ``"network"`` for the platform signal and ``"backend"`` for
    health-probe reachability.
    """
    kind: str
    value: bool
    at: datetime


Listener = Callable[[ConnectivityEvent], None]


class ConnectivityMonitor:
    """Online/offline tracker that drives queue flushes.

    Parameters
    ----------
    queue : SyncQueue, optional
        Queue to flush on reconnect.  Its online check is bound to this
        monitor.
    probe : callable, optional
        Backend health check returning a truthy value when reachable.  Plain
        callables run in the default executor.
    online : bool
        Initial platform signal.
    health_interval : float
        Seconds between probes while the backend is reachable.
    max_probe_backoff : float
        Upper bound on the delay between failed probes.
    """

    def __init__(
        self,
        queue: Optional[SyncQueue] = None,
        probe: Optional[Probe] = None,
        *,
        online: bool = True,
        health_interval: float = DEFAULT_HEALTH_INTERVAL,
        max_probe_backoff: float = DEFAULT_MAX_PROBE_BACKOFF,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._queue = queue
        self._probe = probe
        self._online = bool(online)
        self._reachable = True
        self._failed_probes = 0
        self.health_interval = health_interval
        self.max_probe_backoff = max_probe_backoff
        self._clock = clock
        self._sleep = sleep
        self._listeners: List[Listener] = []
        self._loop_task: Optional[asyncio.Task] = None
        if queue is not None:
            queue.set_online_check(lambda: self._online)

    @classmethod
    def from_config(
        cls,
        cfg: Any,
        queue: Optional[SyncQueue] = None,
        probe: Optional[Probe] = None,
        **kwargs: Any,
    ) -> "ConnectivityMonitor":
        kwargs.setdefault(
            "health_interval", float(cfg.get("connectivity.health_interval_seconds", 30.0))
        )
        kwargs.setdefault(
            "max_probe_backoff", float(cfg.get("connectivity.max_probe_backoff_seconds", 30.0))
        )
        return cls(queue, probe, **kwargs)

    # -- state ---------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def backend_reachable(self) -> bool:
        return self._reachable

    def on_change(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _emit(self, kind: str, value: bool) -> None:
        event = ConnectivityEvent(kind=kind, value=value, at=self._clock())
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Connectivity listener failed on %s event", kind)

    async def _flush_queue(self) -> None:
        if self._queue is None:
            return
        try:
            await self._queue.flush()
        except Exception:
            logger.exception("Queue flush after reconnect failed")

    # -- platform signal -----------------------------------------------------

    async def set_online(self, online: bool) -> bool:
        """Record the platform signal.  Returns ``True`` if it changed."""
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        logger.info("Network is now %s", "online" if online else "offline")
        self._emit("network", online)
        if online:
            await self._flush_queue()
        return True

    # -- health probing ------------------------------------------------------

    async def check_health(self) -> bool:
        """Run the probe once and update ``backend_reachable``."""
        if self._probe is None:
            return self._reachable

        try:
            if inspect.iscoroutinefunction(self._probe):
                result = await self._probe()
            else:
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(None, self._probe)
                if inspect.isawaitable(result):
                    result = await result
            reachable = bool(result)
        except Exception as exc:
            logger.debug("Health probe raised: %s", exc)
            reachable = False

        self._failed_probes = 0 if reachable else self._failed_probes + 1

        if reachable != self._reachable:
            self._reachable = reachable
            if reachable:
                logger.info("Backend reachable again")
            else:
                logger.warning("Backend unreachable while network is %s",
                               "online" if self._online else "offline")
            self._emit("backend", reachable)
            if reachable and self._online:
                await self._flush_queue()

        return reachable

    def next_probe_delay(self) -> float:
        """Seconds until the next probe: 1, 2, 4 ... after failures, else the interval."""
        if self._failed_probes == 0:
            return self.health_interval
        return min(self.max_probe_backoff, 2.0 ** (self._failed_probes - 1))

    # -- background loop -----------------------------------------------------

    async def _run(self) -> None:
        while True:
            await self.check_health()
            await self._sleep(self.next_probe_delay())

    def start(self) -> None:
        """Start periodic health checks on the running event loop."""
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = asyncio.ensure_future(self._run())
        logger.debug("Connectivity monitor started")

    async def stop(self) -> None:
        task, self._loop_task = self._loop_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Connectivity monitor stopped")

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()


# ---------------------------------------------------------------------------
# HTTP health probe
# ---------------------------------------------------------------------------

class HttpHealthProbe:
    """Reachable when ``GET <path>`` answers with a status below 500."""

    def __init__(self, client: HttpClient, path: str = "/health") -> None:
        self.client = client
        self.path = path

    @classmethod
    def from_config(cls, cfg: Any, client: HttpClient) -> "HttpHealthProbe":
        return cls(client, cfg.get("connectivity.health_path", "/health"))

    def __call__(self) -> bool:
        try:
            response = self.client.get(self.path)
        except (requests.RequestException, CircuitOpenError) as exc:
            logger.debug("Health probe %s failed: %s", self.path, exc)
            return False
        return response.status_code < 500
