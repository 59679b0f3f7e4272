"""Discovery and connection management for micro:bit peers."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from .adapter import AdapterController
from .channels import ChannelResolver
from .config import Config
from .devices import ConnectionState, Device, DeviceRegistry
from .events import (
    ConnectFailed,
    ConnectSucceeded,
    EventDispatcher,
    GraceExpired,
    PeerDisconnected,
    PeerDiscovered,
    TransportFailed,
)
from .logging import get_logger
from .metrics import (
    record_connection_attempt,
    record_discovery,
    record_eviction,
    record_transport_failure,
)
from .transport import Radio


class ConnectionManager:
    """Turn matching advertisements into connected device records.

    A record exists from the first matching advertisement until its grace
    period runs out after a disconnect. A peer that comes back inside the
    grace period reuses its record; connect completions and grace timers
    carry the record's generation so outdated ones are ignored.
    """

    def __init__(
        self,
        config: Config,
        radio: Radio,
        registry: DeviceRegistry,
        dispatcher: EventDispatcher,
        adapter: AdapterController,
        resolver: ChannelResolver,
        clock: Callable[[], float],
    ) -> None:
        self.config = config
        self.radio = radio
        self.registry = registry
        self.dispatcher = dispatcher
        self.adapter = adapter
        self.resolver = resolver
        self.clock = clock
        self.logger = get_logger("gateway.discovery")
        dispatcher.register(PeerDiscovered, self.on_discovered)
        dispatcher.register(ConnectSucceeded, self.on_connect_succeeded)
        dispatcher.register(ConnectFailed, self.on_connect_failed)
        dispatcher.register(PeerDisconnected, self.on_disconnected)
        dispatcher.register(GraceExpired, self.on_grace_expired)
        dispatcher.register(TransportFailed, self.on_transport_failed)

    def matches(self, name: Optional[str]) -> bool:
        return bool(name) and self.config.name_filter in name  # type: ignore[operator]

    def on_discovered(self, event: PeerDiscovered) -> None:
        if not self.matches(event.name):
            record_discovery("filtered")
            return
        device = self.registry.get(event.peer_id)
        if device is None:
            self._connect_new(event)
            return
        if device.state is ConnectionState.DISCONNECTED:
            self._reconnect(device)
            return
        if device.connected:
            # Repeated advertisements count as activity.
            device.touch(self.clock())
        record_discovery("ignored")

    def _connect_new(self, event: PeerDiscovered) -> None:
        link = self.radio.link(event.peer_id, 0)
        device = self.registry.create(
            event.peer_id,
            event.name or event.peer_id,
            self.clock(),
            link=link,
        )
        record_discovery("connecting")
        self.logger.info(
            "Connecting to device",
            extra={"device_id": device.id, "device_name": device.display_name, "rssi": event.rssi},
        )
        self._submit_connect(device)

    def _reconnect(self, device: Device) -> None:
        device.begin_reconnect(self.radio.link(device.id, device.generation + 1))
        self.registry.publish_counts()
        record_discovery("reconnecting")
        self.logger.info(
            "Reconnecting to device inside its grace period",
            extra={"device_id": device.id, "generation": device.generation},
        )
        self._submit_connect(device)

    def _submit_connect(self, device: Device) -> None:
        assert device.link is not None
        device_id = device.id
        generation = device.generation
        self.dispatcher.submit(
            device.link.connect(),
            on_success=lambda _: ConnectSucceeded(device_id, generation),
            on_failure=lambda exc: ConnectFailed(device_id, generation, exc),
        )

    def _current(self, device_id: str, generation: int) -> Optional[Device]:
        device = self.registry.get(device_id)
        if device is None or device.generation != generation:
            return None
        if device.state is not ConnectionState.CONNECTING:
            return None
        return device

    def on_connect_succeeded(self, event: ConnectSucceeded) -> None:
        device = self._current(event.peer_id, event.generation)
        if device is None:
            self.logger.debug(
                "Ignoring outdated connect completion",
                extra={"device_id": event.peer_id, "generation": event.generation},
            )
            return
        device.mark_connected(self.clock())
        self.registry.publish_counts()
        record_connection_attempt("success")
        self.logger.info(
            "Device connected",
            extra={"device_id": device.id, "device_name": device.display_name},
        )
        self.adapter.resume()
        self.resolver.resolve(device)

    def on_connect_failed(self, event: ConnectFailed) -> None:
        device = self._current(event.peer_id, event.generation)
        if device is None:
            return
        self._drop(device.id)
        record_connection_attempt("failure")
        self.logger.warning(
            "Failed to connect to device",
            extra={"device_id": event.peer_id, "error": str(event.error)},
        )

    def on_disconnected(self, event: PeerDisconnected) -> None:
        device = self.registry.get(event.peer_id)
        if device is None or not device.connected:
            # Connecting records are cleaned up by the connect failure path.
            return
        if device.generation != event.generation:
            self.logger.debug(
                "Ignoring disconnect from an earlier connection",
                extra={"device_id": device.id, "generation": event.generation},
            )
            return
        device.mark_disconnected()
        self.registry.publish_counts()
        device.eviction = self.dispatcher.call_later(
            self.config.grace_period,
            GraceExpired(device.id, device.generation),
        )
        self.logger.info(
            "Device disconnected",
            extra={"device_id": device.id, "grace_period": self.config.grace_period},
        )

    def on_grace_expired(self, event: GraceExpired) -> None:
        device = self.registry.get(event.peer_id)
        if device is None or device.generation != event.generation:
            return
        if device.state is not ConnectionState.DISCONNECTED:
            return
        device.eviction = None
        self._drop(device.id)
        record_eviction()
        self.logger.info("Removed disconnected device", extra={"device_id": device.id})

    def _drop(self, device_id: str) -> None:
        self.registry.remove(device_id)
        self.radio.forget(device_id)

    def on_transport_failed(self, event: TransportFailed) -> None:
        record_transport_failure(event.operation)
        self.logger.warning(
            "Transport operation failed",
            extra={
                "device_id": event.peer_id,
                "operation": event.operation,
                "error": str(event.error),
            },
        )

    def request_disconnect(self, device: Device) -> Optional["asyncio.Task[None]"]:
        """Ask the transport to drop ``device``; completion arrives as an event."""

        link = device.link
        if link is None:
            return None
        device_id = device.id
        generation = device.generation
        return self.dispatcher.submit(
            link.disconnect(),
            on_success=lambda _: PeerDisconnected(device_id, generation),
            on_failure=lambda exc: TransportFailed(device_id, "disconnect", exc),
        )
