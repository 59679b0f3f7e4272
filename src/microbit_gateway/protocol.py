"""Line protocol spoken by the micro:bit endpoints.

Peers send one message per line:

``CONNECTED:<name>``
    The peer announces its logical name.
``DATA:<key>:<value>[,<key>:<value>]*``
    Sensor readings. The reserved key ``id`` carries the logical name.
anything else
    Free text (command echoes, replies) kept as the device's last response.

Parsing never raises: malformed DATA segments are dropped one at a time and
unrecognised lines fall through to free text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple, Union

from .devices import Device, DeviceRegistry
from .events import EventDispatcher, LineReceived
from .logging import get_logger
from .metrics import record_dropped_segments, record_inbound_line

CONNECTED_PREFIX = "CONNECTED:"
DATA_PREFIX = "DATA:"
ID_KEY = "id"

logger = get_logger("gateway.protocol")


@dataclass(frozen=True)
class Connected:
    name: str

    kind = "connected"


@dataclass(frozen=True)
class Data:
    readings: Dict[str, str] = field(default_factory=dict)
    custom_id: Optional[str] = None
    dropped: int = 0

    kind = "data"


@dataclass(frozen=True)
class Freeform:
    text: str

    kind = "freeform"


Message = Union[Connected, Data, Freeform]


def _split_segment(segment: str) -> Optional[Tuple[str, str]]:
    key, sep, value = segment.partition(":")
    key = key.strip()
    value = value.strip()
    if not sep or not key or not value:
        return None
    return key, value


def parse_data(body: str) -> Data:
    """Parse the comma separated ``key:value`` list following ``DATA:``."""

    readings: Dict[str, str] = {}
    custom_id: Optional[str] = None
    dropped = 0
    for segment in body.split(","):
        pair = _split_segment(segment)
        if pair is None:
            dropped += 1
            continue
        key, value = pair
        if key == ID_KEY:
            custom_id = value
        else:
            readings[key] = value
    return Data(readings=readings, custom_id=custom_id, dropped=dropped)


def parse_line(line: str) -> Message:
    """Classify one inbound line."""

    text = line.strip()
    if text.startswith(CONNECTED_PREFIX):
        name = text[len(CONNECTED_PREFIX):].strip()
        if name:
            return Connected(name=name)
    if text.startswith(DATA_PREFIX):
        return parse_data(text[len(DATA_PREFIX):])
    return Freeform(text=text)


def apply_message(device: Device, message: Message, now: float) -> None:
    """Fold a parsed message into the device record and refresh its liveness."""

    if isinstance(message, Connected):
        device.custom_id = message.name
        logger.info(
            "Device identified itself",
            extra={"device_id": device.id, "custom_id": message.name},
        )
    elif isinstance(message, Data):
        if message.custom_id is not None:
            device.custom_id = message.custom_id
        device.sensor_data.update(message.readings)
        if message.dropped:
            logger.debug(
                "Dropped malformed DATA segments",
                extra={"device_id": device.id, "dropped": message.dropped},
            )
            record_dropped_segments(message.dropped)
    else:
        device.last_response = message.text
    device.touch(now)
    record_inbound_line(message.kind)


def handle_line(device: Device, line: str, now: float) -> Message:
    """Parse ``line`` and apply it to ``device``."""

    message = parse_line(line)
    logger.debug(
        "Received line",
        extra={"device_id": device.id, "line": line, "kind": message.kind},
    )
    apply_message(device, message, now)
    return message


class LineHandler:
    """Apply inbound telemetry lines to their device records."""

    def __init__(
        self,
        registry: DeviceRegistry,
        dispatcher: EventDispatcher,
        clock: Callable[[], float],
    ) -> None:
        self.registry = registry
        self.clock = clock
        dispatcher.register(LineReceived, self.on_line)

    def on_line(self, event: LineReceived) -> None:
        device = self.registry.get(event.peer_id)
        if device is None or not device.connected:
            logger.debug("Dropping line for unknown or offline device", extra={"device_id": event.peer_id})
            return
        handle_line(device, event.line, self.clock())
