from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from field_sync.core.errors import NetworkError
from field_sync.core.events import ConnectivityChanged, EventBus
from field_sync.core.utils import normalize_resource_key
from field_sync.transport.interfaces import Transport

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """
    Tracks whether the server is reachable.

    State changes come from explicit signals (set_online) or from an optional periodic
    health probe. Listeners run synchronously on every change.
    """

    def __init__(
        self,
        *,
        transport: Optional[Transport] = None,
        probe_path: str = "",
        probe_interval_seconds: float = 30.0,
        probe_timeout_seconds: float = 10.0,
        events: Optional[EventBus] = None,
        initial_online: bool = True,
    ):
        self._transport = transport
        self._probe_path = probe_path.strip()
        self._probe_interval = probe_interval_seconds
        self._probe_timeout = probe_timeout_seconds
        self._events = events
        self._online = initial_online
        self._listeners: list[Listener] = []
        self._runtime_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed. online=%s", online)
        if self._events:
            self._events.publish(ConnectivityChanged(online=online))
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener failed. online=%s", online)

    async def probe(self) -> bool:
        """Probe the health endpoint once and record the result."""
        if self._transport is None or not self._probe_path:
            return self._online
        key = normalize_resource_key(self._probe_path)
        try:
            response = await asyncio.wait_for(self._transport.send("GET", key), timeout=self._probe_timeout)
            # Any non-5xx answer proves the server is reachable.
            online = response.status < 500
        except (NetworkError, asyncio.TimeoutError) as e:
            logger.debug("Connectivity probe failed. error=%s", e)
            online = False
        self.set_online(online)
        return online

    def start(self) -> None:
        if self._transport is None or not self._probe_path:
            return
        if self._runtime_task and not self._runtime_task.done():
            return
        self._stop_event.clear()
        self._runtime_task = asyncio.create_task(self._runtime_loop())

    async def stop(self) -> None:
        if not self._runtime_task:
            return
        self._stop_event.set()
        await self._runtime_task
        self._runtime_task = None

    async def _runtime_loop(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                await self.probe()
            except Exception:
                logger.exception("Connectivity probe tick failed.")
            elapsed = time.monotonic() - started
            sleep_seconds = max(0.0, self._probe_interval - elapsed)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
            except asyncio.TimeoutError:
                continue
