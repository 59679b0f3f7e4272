"""UART channel resolution and notification line assembly."""

from __future__ import annotations

from typing import List, Optional, Sequence

from .config import Config
from .devices import Channel, Device, DeviceRegistry
from .events import EventDispatcher, LineReceived, ServicesResolved, Subscribed, TransportFailed
from .logging import get_logger
from .transport import CharacteristicInfo, ServiceInfo, normalize_uuid


class LineAssembler:
    """Turn raw notification payloads into text lines.

    In ``notification`` mode every notification is a complete line. In
    ``newline`` mode text is buffered until a line terminator arrives; a
    buffer growing past ``max_line_length`` is flushed as a line on its own.
    """

    def __init__(self, mode: str = "notification", max_line_length: int = 512) -> None:
        self.mode = mode
        self.max_line_length = max_line_length
        self._buffer = ""

    def feed(self, payload: bytes) -> List[str]:
        text = payload.decode("utf-8", errors="replace")
        if self.mode == "notification":
            return [line for line in (part.strip() for part in text.splitlines()) if line]

        self._buffer += text.replace("\r", "")
        *complete, self._buffer = self._buffer.split("\n")
        if len(self._buffer) > self.max_line_length:
            complete.append(self._buffer)
            self._buffer = ""
        return [line for line in (part.strip() for part in complete) if line]


def _find_service(services: Sequence[ServiceInfo], uuid: str) -> Optional[ServiceInfo]:
    wanted = normalize_uuid(uuid)
    for service in services:
        if normalize_uuid(service.uuid) == wanted:
            return service
    return None


def _find_characteristic(service: ServiceInfo, uuid: str) -> Optional[CharacteristicInfo]:
    wanted = normalize_uuid(uuid)
    for characteristic in service.characteristics:
        if normalize_uuid(characteristic.uuid) == wanted:
            return characteristic
    return None


def _as_channel(characteristic: Optional[CharacteristicInfo]) -> Optional[Channel]:
    if characteristic is None:
        return None
    return Channel(uuid=characteristic.uuid, properties=tuple(characteristic.properties))


class ChannelResolver:
    """Bind the command and telemetry channels of a freshly connected device."""

    def __init__(self, config: Config, registry: DeviceRegistry, dispatcher: EventDispatcher) -> None:
        self.config = config
        self.registry = registry
        self.dispatcher = dispatcher
        self.logger = get_logger("gateway.channels")
        dispatcher.register(ServicesResolved, self.on_services_resolved)
        dispatcher.register(Subscribed, self.on_subscribed)

    def resolve(self, device: Device) -> None:
        if device.link is None:
            return
        device_id = device.id
        generation = device.generation
        self.dispatcher.submit(
            device.link.services(),
            on_success=lambda services: ServicesResolved(device_id, generation, tuple(services)),
            on_failure=lambda exc: TransportFailed(device_id, "services", exc),
        )

    def on_services_resolved(self, event: ServicesResolved) -> None:
        device = self.registry.get(event.peer_id)
        if device is None or device.generation != event.generation or not device.connected:
            return
        service = _find_service(event.services, self.config.uart_service_uuid)
        if service is None:
            self.logger.error(
                "UART service not found; device cannot exchange messages",
                extra={"device_id": device.id, "services": [s.uuid for s in event.services]},
            )
            return

        command = _as_channel(_find_characteristic(service, self.config.command_char_uuid))
        telemetry = _as_channel(_find_characteristic(service, self.config.telemetry_char_uuid))
        device.bind_channels(command, telemetry)
        if command is None or telemetry is None:
            self.logger.warning(
                "UART service is missing a channel",
                extra={
                    "device_id": device.id,
                    "command_channel": command is not None,
                    "telemetry_channel": telemetry is not None,
                },
            )
        else:
            self.logger.debug("Channels bound", extra={"device_id": device.id})
        if telemetry is not None:
            self._subscribe(device, telemetry)

    def _subscribe(self, device: Device, channel: Channel) -> None:
        assert device.link is not None
        device_id = device.id
        assembler = LineAssembler(self.config.line_mode, self.config.max_line_length)

        def _on_notification(payload: bytes) -> None:
            for line in assembler.feed(payload):
                self.dispatcher.post(LineReceived(device_id, line))

        self.dispatcher.submit(
            device.link.subscribe(channel.uuid, _on_notification),
            on_success=lambda _: Subscribed(device_id, channel.uuid),
            on_failure=lambda exc: TransportFailed(device_id, "subscribe", exc),
        )

    def on_subscribed(self, event: Subscribed) -> None:
        self.logger.info(
            "Subscribed to telemetry",
            extra={"device_id": event.peer_id, "uuid": event.uuid},
        )
