"""bleak-backed radio and peer links."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Dict, List, Optional, Sequence, Union

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .config import Config
from .health import BackoffPolicy
from .logging import get_logger
from .transport import (
    AdapterState,
    Advertisement,
    CharacteristicInfo,
    NotificationHandler,
    PeerLink,
    Radio,
    ServiceInfo,
)


class BleakPeerLink(PeerLink):
    """A single BLE connection driven through :class:`bleak.BleakClient`."""

    def __init__(
        self,
        peer_id: str,
        generation: int,
        device: Union[BLEDevice, str],
        radio: "BleakRadio",
        timeout: float,
    ) -> None:
        super().__init__(peer_id, generation)
        self._radio = radio
        self._client = BleakClient(
            device,
            disconnected_callback=self._handle_disconnect,
            timeout=timeout,
        )

    def _handle_disconnect(self, _client: BleakClient) -> None:
        self._radio.call_threadsafe(
            self._radio.report_disconnect, self.peer_id, self.generation
        )

    async def connect(self) -> None:
        await self._client.connect()

    async def disconnect(self) -> None:
        await self._client.disconnect()

    async def services(self) -> Sequence[ServiceInfo]:
        services: List[ServiceInfo] = []
        for service in self._client.services:
            characteristics = tuple(
                CharacteristicInfo(uuid=str(char.uuid), properties=tuple(char.properties))
                for char in service.characteristics
            )
            services.append(ServiceInfo(uuid=str(service.uuid), characteristics=characteristics))
        return services

    async def subscribe(self, uuid: str, handler: NotificationHandler) -> None:
        def _on_notify(_char: BleakGATTCharacteristic, data: bytearray) -> None:
            self._radio.call_threadsafe(handler, bytes(data))

        await self._client.start_notify(uuid, _on_notify)

    async def write(self, uuid: str, payload: bytes) -> None:
        await self._client.write_gatt_char(uuid, payload, response=False)


class BleakRadio(Radio):
    """Adapter wrapper around :class:`bleak.BleakScanner`.

    bleak does not publish adapter power events, so the radio probes the
    adapter while it is not scanning and reports the observed state.
    """

    def __init__(self, config: Config) -> None:
        super().__init__()
        self.config = config
        self.logger = get_logger("gateway.ble")
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._scanner: Optional[BleakScanner] = None
        self._devices: Dict[str, BLEDevice] = {}
        self._probe_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._backoff = BackoffPolicy(
            base=config.adapter_backoff_base,
            factor=config.adapter_backoff_factor,
            maximum=config.adapter_backoff_max,
        )

    def call_threadsafe(self, callback, *args) -> None:  # type: ignore[no-untyped-def]
        if self._loop is None:
            callback(*args)
            return
        self._loop.call_soon_threadsafe(callback, *args)

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event.clear()
        self._probe_task = asyncio.create_task(self._watch_adapter())
        self.logger.info("BLE radio started")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._probe_task:
            self._probe_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._probe_task
        self._probe_task = None
        await self.stop_scan()
        self.logger.info("BLE radio stopped")

    async def start_scan(self, allow_duplicates: bool) -> None:
        if self._scanner is not None:
            return
        scanner = BleakScanner(
            detection_callback=self._on_detection,
            bluez={"filters": {"DuplicateData": allow_duplicates}},
        )
        await scanner.start()
        self._scanner = scanner
        self.logger.info("BLE scan started", extra={"allow_duplicates": allow_duplicates})

    async def stop_scan(self) -> None:
        scanner = self._scanner
        self._scanner = None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except (BleakError, OSError) as exc:
            self.logger.warning(
                "Failed to stop BLE scan cleanly",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        self.logger.info("BLE scan stopped")

    def link(self, peer_id: str, generation: int) -> PeerLink:
        device: Union[BLEDevice, str] = self._devices.get(peer_id, peer_id)
        return BleakPeerLink(
            peer_id, generation, device, self, timeout=self.config.connect_timeout
        )

    def forget(self, peer_id: str) -> None:
        self._devices.pop(peer_id, None)

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        name = advertisement.local_name or device.name
        # Only candidate peers are cached; everything else in range is transient.
        if name and self.config.name_filter in name:
            self._devices[device.address] = device
        self.call_threadsafe(
            self.report_advertisement,
            Advertisement(peer_id=device.address, name=name, rssi=advertisement.rssi),
        )

    async def _watch_adapter(self) -> None:
        failures = 0
        while not self._stop_event.is_set():
            if self._scanner is None:
                state = await self._probe()
                failures = failures + 1 if state is AdapterState.POWERED_OFF else 0
                self.report_adapter_state(state)
            delay = max(self.config.adapter_probe_interval, self._backoff.delay(failures))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue

    async def _probe(self) -> AdapterState:
        try:
            async with BleakScanner():
                pass
        except (BleakError, OSError) as exc:
            self.logger.debug("Adapter probe failed", extra={"error": str(exc)})
            return AdapterState.POWERED_OFF
        return AdapterState.POWERED_ON
