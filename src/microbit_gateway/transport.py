"""Transport-neutral contract between the gateway core and the radio stack."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple


class AdapterState(str, Enum):
    """Power states reported by the local radio adapter."""

    UNKNOWN = "unknown"
    RESETTING = "resetting"
    UNSUPPORTED = "unsupported"
    UNAUTHORIZED = "unauthorized"
    POWERED_OFF = "poweredOff"
    POWERED_ON = "poweredOn"


@dataclass(frozen=True)
class Advertisement:
    """A single advertisement delivered while scanning."""

    peer_id: str
    name: Optional[str] = None
    rssi: Optional[int] = None


@dataclass(frozen=True)
class CharacteristicInfo:
    uuid: str
    properties: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ServiceInfo:
    uuid: str
    characteristics: Tuple[CharacteristicInfo, ...] = field(default_factory=tuple)


NotificationHandler = Callable[[bytes], None]
AdapterStateHandler = Callable[[AdapterState], None]
AdvertisementHandler = Callable[[Advertisement], None]
DisconnectHandler = Callable[[str, int], None]


def normalize_uuid(value: str) -> str:
    """Lower-case a UUID and strip dashes so both spellings compare equal."""

    return value.replace("-", "").strip().lower()


class PeerLink(abc.ABC):
    """Connection to a single remote peer.

    Every coroutine completes asynchronously; the gateway never awaits one
    from inside an event handler.
    """

    def __init__(self, peer_id: str, generation: int = 0) -> None:
        self.peer_id = peer_id
        self.generation = generation

    @abc.abstractmethod
    async def connect(self) -> None:
        ...

    @abc.abstractmethod
    async def disconnect(self) -> None:
        ...

    @abc.abstractmethod
    async def services(self) -> Sequence[ServiceInfo]:
        """Return the peer's resolved service table."""

    @abc.abstractmethod
    async def subscribe(self, uuid: str, handler: NotificationHandler) -> None:
        """Start notifications on ``uuid``, delivering each payload to ``handler``."""

    @abc.abstractmethod
    async def write(self, uuid: str, payload: bytes) -> None:
        """Write ``payload`` to ``uuid`` without waiting for a peer acknowledgement."""


class Radio(abc.ABC):
    """Local radio adapter: power state, scanning, and link creation."""

    def __init__(self) -> None:
        self._on_adapter_state: Optional[AdapterStateHandler] = None
        self._on_advertisement: Optional[AdvertisementHandler] = None
        self._on_disconnect: Optional[DisconnectHandler] = None

    def set_handlers(
        self,
        on_adapter_state: AdapterStateHandler,
        on_advertisement: AdvertisementHandler,
        on_disconnect: DisconnectHandler,
    ) -> None:
        self._on_adapter_state = on_adapter_state
        self._on_advertisement = on_advertisement
        self._on_disconnect = on_disconnect

    def report_adapter_state(self, state: AdapterState) -> None:
        if self._on_adapter_state:
            self._on_adapter_state(state)

    def report_advertisement(self, advertisement: Advertisement) -> None:
        if self._on_advertisement:
            self._on_advertisement(advertisement)

    def report_disconnect(self, peer_id: str, generation: int) -> None:
        if self._on_disconnect:
            self._on_disconnect(peer_id, generation)

    async def start(self) -> None:
        """Begin reporting adapter state. Subclasses may override."""

    async def stop(self) -> None:
        """Release adapter resources. Subclasses may override."""

    @abc.abstractmethod
    async def start_scan(self, allow_duplicates: bool) -> None:
        ...

    @abc.abstractmethod
    async def stop_scan(self) -> None:
        ...

    @abc.abstractmethod
    def link(self, peer_id: str, generation: int) -> PeerLink:
        """Create a fresh, unconnected link for ``peer_id``.

        ``generation`` is the record generation the link serves; the link
        reports it back with every disconnect.
        """

    def forget(self, peer_id: str) -> None:
        """Drop anything cached for ``peer_id`` once its record is gone."""
