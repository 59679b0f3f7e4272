"""Periodic inactivity sweep over connected devices."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Callable, List, Optional

from .config import Config
from .devices import DeviceRegistry
from .discovery import ConnectionManager
from .events import EventDispatcher, InactivitySweep
from .health import HealthMonitor
from .logging import get_logger
from .metrics import record_stale_disconnect


class InactivityMonitor:
    """Disconnect devices that have gone quiet for longer than the liveness threshold.

    The timer task only posts :class:`InactivitySweep` events; the sweep itself
    runs on the dispatcher like every other registry mutation. Removal of
    disconnected records is left to their grace timers.
    """

    def __init__(
        self,
        config: Config,
        registry: DeviceRegistry,
        dispatcher: EventDispatcher,
        connections: ConnectionManager,
        clock: Callable[[], float],
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.dispatcher = dispatcher
        self.connections = connections
        self.clock = clock
        self.health = health
        self.logger = get_logger("gateway.monitor")
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        dispatcher.register(InactivitySweep, self.on_sweep)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self.logger.info(
            "Inactivity monitor started",
            extra={
                "sweep_interval": self.config.sweep_interval,
                "liveness_threshold": self.config.liveness_threshold,
            },
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self.logger.info("Inactivity monitor stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.sweep_interval)
            except asyncio.TimeoutError:
                self.dispatcher.post(InactivitySweep(self.clock()))

    def on_sweep(self, event: InactivitySweep) -> None:
        try:
            self.sweep(event.now)
        except Exception as exc:
            if self.health:
                self.health.record_failure("monitor", exc)
            raise
        if self.health:
            self.health.record_success("monitor")

    def sweep(self, now: float) -> List[str]:
        """Request a disconnect for every connected device idle past the threshold."""

        stale: List[str] = []
        for device in self.registry:
            idle = now - device.last_seen
            if idle <= self.config.liveness_threshold or not device.connected:
                continue
            stale.append(device.id)
            record_stale_disconnect()
            self.logger.info(
                "Disconnecting inactive device",
                extra={"device_id": device.id, "idle_seconds": round(idle, 1)},
            )
            self.connections.request_disconnect(device)
        return stale
