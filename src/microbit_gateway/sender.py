"""Command delivery to connected devices."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .devices import DeviceRegistry
from .logging import get_logger
from .metrics import record_command


class SendStatus(str, Enum):
    ACCEPTED = "accepted"
    NOT_FOUND = "not_found"
    NOT_CONNECTED = "not_connected"
    NO_WRITE_CHANNEL = "no_write_channel"
    TRANSPORT_ERROR = "transport_error"
    INVALID_COMMAND = "invalid_command"


@dataclass(frozen=True)
class SendResult:
    """Outcome of a send.

    ``accepted`` only means the local transport took the write. Writes go out
    without a response, so whether the peer processed the command is never
    known and ``peer_acknowledged`` stays ``None``.
    """

    device_id: str
    status: SendStatus
    payload: Optional[str] = None
    error: Optional[str] = None
    peer_acknowledged: Optional[bool] = None

    @property
    def ok(self) -> bool:
        return self.status is SendStatus.ACCEPTED

    @property
    def rejected(self) -> bool:
        return self.status in (SendStatus.NOT_CONNECTED, SendStatus.NO_WRITE_CHANNEL)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.device_id,
            "status": self.status.value,
            "success": self.ok,
            "payload": self.payload,
            "error": self.error,
            "peerAcknowledged": self.peer_acknowledged,
        }


def normalize_command(message: str) -> str:
    """Terminate ``message`` with a newline unless it already is."""

    return message if message.endswith("\n") else f"{message}\n"


class CommandDispatcher:
    """Write newline-terminated commands to a device's command channel."""

    def __init__(self, registry: DeviceRegistry) -> None:
        self.registry = registry
        self.logger = get_logger("gateway.sender")

    def _reject(self, device_id: str, status: SendStatus, error: str) -> SendResult:
        record_command(status.value)
        self.logger.info(
            "Command rejected",
            extra={"device_id": device_id, "status": status.value},
        )
        return SendResult(device_id=device_id, status=status, error=error)

    async def send(self, device_id: str, message: str) -> SendResult:
        if not message:
            return self._reject(device_id, SendStatus.INVALID_COMMAND, "Command must not be empty")
        device = self.registry.get(device_id)
        if device is None:
            return self._reject(device_id, SendStatus.NOT_FOUND, "Device not found")
        if not device.connected:
            return self._reject(device_id, SendStatus.NOT_CONNECTED, "Device not connected")
        if device.command_channel is None or device.link is None:
            return self._reject(device_id, SendStatus.NO_WRITE_CHANNEL, "Command channel not resolved")

        payload = normalize_command(message)
        try:
            await device.link.write(device.command_channel.uuid, payload.encode("utf-8"))
        except Exception as exc:
            record_command(SendStatus.TRANSPORT_ERROR.value)
            self.logger.warning(
                "Command write failed",
                extra={"device_id": device_id, "error": str(exc)},
            )
            return SendResult(
                device_id=device_id,
                status=SendStatus.TRANSPORT_ERROR,
                payload=payload,
                error=str(exc),
            )
        record_command(SendStatus.ACCEPTED.value)
        self.logger.debug("Command written", extra={"device_id": device_id, "payload": payload})
        return SendResult(device_id=device_id, status=SendStatus.ACCEPTED, payload=payload)
