"""Device records, their connection state machine, and the shared registry."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from .metrics import set_device_counts
from .transport import PeerLink


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


_ALLOWED_TRANSITIONS = {
    (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
    (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED),
    (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
}


class IllegalTransition(RuntimeError):
    """Raised when a device is asked to move to a state it cannot reach."""

    def __init__(self, device_id: str, current: ConnectionState, requested: ConnectionState) -> None:
        super().__init__(f"{device_id}: cannot move from {current.value} to {requested.value}")
        self.device_id = device_id
        self.current = current
        self.requested = requested


class DuplicateDevice(KeyError):
    """Raised when a record already exists for a transport id."""


@dataclass(frozen=True)
class Channel:
    """A resolved characteristic on a connected peer."""

    uuid: str
    properties: tuple = ()


@dataclass
class Device:
    """Live state for one peer seen while connected."""

    id: str
    display_name: str
    last_seen: float
    state: ConnectionState = ConnectionState.CONNECTING
    custom_id: Optional[str] = None
    command_channel: Optional[Channel] = None
    telemetry_channel: Optional[Channel] = None
    sensor_data: Dict[str, str] = field(default_factory=dict)
    last_response: Optional[str] = None
    link: Optional[PeerLink] = field(default=None, repr=False)
    generation: int = 0
    eviction: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def can_send(self) -> bool:
        return self.connected and self.command_channel is not None and self.link is not None

    def touch(self, now: float) -> None:
        """Refresh ``last_seen`` without ever moving it backwards."""

        if now > self.last_seen:
            self.last_seen = now

    def _transition(self, target: ConnectionState) -> None:
        if (self.state, target) not in _ALLOWED_TRANSITIONS:
            raise IllegalTransition(self.id, self.state, target)
        self.state = target

    def mark_connected(self, now: float) -> None:
        self._transition(ConnectionState.CONNECTED)
        self.touch(now)

    def mark_disconnected(self) -> None:
        # Channels are kept so the record stays inspectable; ``can_send`` guards writes.
        self._transition(ConnectionState.DISCONNECTED)

    def begin_reconnect(self, link: PeerLink) -> int:
        """Reuse this record for a new connection attempt and return its generation."""

        self._transition(ConnectionState.CONNECTING)
        self.cancel_eviction()
        self.command_channel = None
        self.telemetry_channel = None
        self.link = link
        self.generation += 1
        return self.generation

    def bind_channels(self, command: Optional[Channel], telemetry: Optional[Channel]) -> None:
        if not self.connected:
            raise IllegalTransition(self.id, self.state, ConnectionState.CONNECTED)
        if command is not None:
            self.command_channel = command
        if telemetry is not None:
            self.telemetry_channel = telemetry

    def cancel_eviction(self) -> None:
        if self.eviction is not None:
            self.eviction.cancel()
            self.eviction = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customId": self.custom_id,
            "name": self.display_name,
            "connected": self.connected,
            "lastSeen": int(self.last_seen * 1000),
            "sensorData": dict(self.sensor_data),
        }


class DeviceRegistry:
    """Mapping of transport id to :class:`Device`.

    Only the event dispatcher's handlers mutate the registry, one event at a
    time, so no locking is needed.
    """

    def __init__(self) -> None:
        self._devices: Dict[str, Device] = {}

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[Device]:
        return iter(list(self._devices.values()))

    def get(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def create(self, device_id: str, display_name: str, now: float, link: Optional[PeerLink] = None) -> Device:
        if device_id in self._devices:
            raise DuplicateDevice(device_id)
        device = Device(id=device_id, display_name=display_name, last_seen=now, link=link)
        self._devices[device_id] = device
        self.publish_counts()
        return device

    def remove(self, device_id: str) -> Optional[Device]:
        device = self._devices.pop(device_id, None)
        if device is not None:
            device.cancel_eviction()
            self.publish_counts()
        return device

    def ids(self) -> List[str]:
        return list(self._devices)

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in ConnectionState}
        for device in self._devices.values():
            counts[device.state.value] += 1
        return counts

    def publish_counts(self) -> None:
        set_device_counts(self.counts())

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Read-only copy of every record keyed by transport id."""

        return {device_id: device.as_dict() for device_id, device in self._devices.items()}
