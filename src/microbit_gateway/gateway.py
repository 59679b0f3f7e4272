"""Composition root wiring the radio, dispatcher and device components together."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional

from .adapter import AdapterController
from .channels import ChannelResolver
from .config import Config
from .devices import DeviceRegistry
from .discovery import ConnectionManager
from .events import AdapterStateChanged, EventDispatcher, PeerDisconnected, PeerDiscovered
from .health import HealthMonitor
from .logging import get_logger
from .monitor import InactivityMonitor
from .protocol import LineHandler
from .sender import CommandDispatcher, SendResult
from .transport import Advertisement, Radio

SUBSYSTEMS = ("adapter", "dispatcher", "monitor")


class Gateway:
    """A running micro:bit gateway.

    Everything that touches the registry runs as an event handler on the
    dispatcher. ``list_devices`` and ``send_command`` are the entry points
    used by the HTTP API.
    """

    def __init__(
        self,
        config: Config,
        radio: Radio,
        *,
        clock: Callable[[], float] = time.time,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.radio = radio
        self.clock = clock
        self.logger = get_logger("gateway")
        self.health = health or HealthMonitor(
            SUBSYSTEMS,
            config.subsystem_failure_threshold,
            config.subsystem_failure_cooldown,
        )
        self.registry = DeviceRegistry()
        self.dispatcher = EventDispatcher(self.health)
        self.adapter = AdapterController(radio, self.dispatcher, config, self.health)
        self.resolver = ChannelResolver(config, self.registry, self.dispatcher)
        self.connections = ConnectionManager(
            config,
            radio,
            self.registry,
            self.dispatcher,
            self.adapter,
            self.resolver,
            clock,
        )
        self.lines = LineHandler(self.registry, self.dispatcher, clock)
        self.monitor = InactivityMonitor(
            config,
            self.registry,
            self.dispatcher,
            self.connections,
            clock,
            self.health,
        )
        self.sender = CommandDispatcher(self.registry)
        radio.set_handlers(
            on_adapter_state=lambda state: self.dispatcher.post(AdapterStateChanged(state)),
            on_advertisement=self._on_advertisement,
            on_disconnect=lambda peer_id, generation: self.dispatcher.post(
                PeerDisconnected(peer_id, generation)
            ),
        )

    def _on_advertisement(self, advertisement: Advertisement) -> None:
        self.dispatcher.post(
            PeerDiscovered(advertisement.peer_id, advertisement.name, advertisement.rssi)
        )

    @property
    def scanning(self) -> bool:
        return self.adapter.scanning

    async def start(self) -> None:
        await self.dispatcher.start()
        await self.radio.start()
        await self.monitor.start()
        self.logger.info("Gateway started", extra={"name_filter": self.config.name_filter})

    async def stop(self) -> None:
        """Stop scanning and disconnect every connected device within ``shutdown_timeout``."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.shutdown_timeout
        await self.monitor.stop()
        self.adapter.halt()
        try:
            await self.radio.stop_scan()
        except Exception:
            self.logger.exception("Failed to stop discovery during shutdown")

        connected = [device for device in self.registry if device.connected]
        pending = [
            task
            for task in (self.connections.request_disconnect(device) for device in connected)
            if task is not None
        ]
        if pending:
            self.logger.info("Disconnecting devices", extra={"count": len(pending)})
            _, unfinished = await asyncio.wait(pending, timeout=self.config.shutdown_timeout)
            if unfinished:
                self.logger.warning(
                    "Timed out waiting for devices to disconnect",
                    extra={"pending": len(unfinished)},
                )
            remaining = max(0.0, deadline - loop.time())
            try:
                await asyncio.wait_for(self.dispatcher.settle(), timeout=remaining)
            except asyncio.TimeoutError:
                self.logger.debug("Event queue not drained before shutdown")

        for device in self.registry:
            device.cancel_eviction()
        await self.radio.stop()
        await self.dispatcher.stop()
        self.logger.info("Gateway stopped")

    async def settle(self) -> None:
        await self.dispatcher.settle()

    def list_devices(self) -> Dict[str, Dict[str, Any]]:
        return self.registry.snapshot()

    async def send_command(self, device_id: str, command: str) -> SendResult:
        return await self.sender.send(device_id, command)

    def status(self) -> Dict[str, Any]:
        return {
            "adapter": self.adapter.state.value,
            "scanning": self.adapter.scanning,
            "devices": self.registry.counts(),
        }
