import asyncio

import pytest

from microbit_gateway.config import Config
from microbit_gateway.devices import ConnectionState
from microbit_gateway.events import ConnectSucceeded, InactivitySweep, PeerDiscovered
from microbit_gateway.gateway import Gateway
from microbit_gateway.sender import SendStatus
from microbit_gateway.transport import AdapterState, Advertisement
from fakes import FakeClock, FakeRadio

NAME = "BBC micro:bit [zotig]"


async def _started(radio: FakeRadio, clock: FakeClock, **overrides) -> Gateway:
    gateway = Gateway(Config(**overrides), radio, clock=clock)
    await gateway.start()
    radio.report_adapter_state(AdapterState.POWERED_ON)
    await gateway.settle()
    return gateway


async def _discover(gateway: Gateway, radio: FakeRadio, peer_id: str = "AA", name: str = NAME) -> None:
    radio.report_advertisement(Advertisement(peer_id=peer_id, name=name, rssi=-60))
    await gateway.settle()


async def _until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_matching_peer_is_connected_and_resolved() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)

        device = gateway.registry.get("AA")
        assert device is not None
        assert device.connected
        assert device.display_name == NAME
        assert device.command_channel is not None
        assert device.telemetry_channel is not None
        assert radio.links["AA"].handlers
        assert gateway.scanning
        assert radio.scan_calls == [True]
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_unmatched_names_create_no_record() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio, "BB", "Fitness Band")
        await _discover(gateway, radio, "CC", None)

        assert gateway.list_devices() == {}
        assert radio.created_links == []
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_repeated_discovery_does_not_reconnect() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)
        clock.advance(5)
        await _discover(gateway, radio)

        assert len(radio.created_links) == 1
        assert gateway.registry.get("AA").last_seen == clock.now
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_failed_connect_removes_record() -> None:
    radio, clock = FakeRadio(), FakeClock()
    radio.connect_error = TimeoutError("connect timed out")
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)

        assert "AA" not in gateway.registry
        assert radio.forgotten == ["AA"]
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_notifications_update_device() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)
        clock.advance(3)
        link = radio.links["AA"]
        link.notify(b"CONNECTED:deviceA\n")
        link.notify(b"DATA:temp:21,light:300")
        link.notify(b"LED_ON\r\n")
        await gateway.settle()

        snapshot = gateway.list_devices()["AA"]
        assert snapshot["customId"] == "deviceA"
        assert snapshot["sensorData"] == {"temp": "21", "light": "300"}
        assert snapshot["lastSeen"] == int(clock.now * 1000)
        assert gateway.registry.get("AA").last_response == "LED_ON"
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_send_command_through_gateway() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)

        result = await gateway.send_command("AA", "LED_ON")
        missing = await gateway.send_command("ZZ", "LED_ON")

        assert result.status is SendStatus.ACCEPTED
        assert [payload for _, payload in radio.links["AA"].writes] == [b"LED_ON\n"]
        assert missing.status is SendStatus.NOT_FOUND
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_stale_device_gets_one_disconnect_per_sweep() -> None:
    radio, clock = FakeRadio(), FakeClock()
    radio.disconnect_error = OSError("busy")
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)
        link = radio.links["AA"]

        clock.advance(10)
        assert gateway.monitor.sweep(clock.now) == []

        clock.advance(25)
        gateway.dispatcher.post(InactivitySweep(clock.now))
        await gateway.settle()
        assert link.disconnect_calls == 1
        assert gateway.registry.get("AA").connected

        gateway.dispatcher.post(InactivitySweep(clock.now))
        await gateway.settle()
        assert link.disconnect_calls == 2
    finally:
        radio.disconnect_error = None
        await gateway.stop()


@pytest.mark.asyncio
async def test_stale_disconnect_marks_device_disconnected() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)
        clock.advance(31)
        gateway.dispatcher.post(InactivitySweep(clock.now))
        await gateway.settle()

        device = gateway.registry.get("AA")
        assert device.state is ConnectionState.DISCONNECTED
        assert device.eviction is not None
        assert gateway.list_devices()["AA"]["connected"] is False
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_grace_period_evicts_disconnected_device() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock, grace_period=0.05)
    try:
        await _discover(gateway, radio)
        radio.links["AA"].drop()
        await gateway.settle()
        assert gateway.registry.get("AA").state is ConnectionState.DISCONNECTED

        await asyncio.sleep(0.1)
        await gateway.settle()
        assert "AA" not in gateway.registry
        assert radio.forgotten == ["AA"]
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_reconnect_within_grace_reuses_record() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock, grace_period=0.1)
    try:
        await _discover(gateway, radio)
        gateway.registry.get("AA").custom_id = "deviceA"
        radio.links["AA"].drop()
        await gateway.settle()

        await _discover(gateway, radio)
        device = gateway.registry.get("AA")
        assert device.connected
        assert device.generation == 1
        assert device.custom_id == "deviceA"
        assert len(gateway.registry) == 1
        assert len(radio.created_links) == 2

        await asyncio.sleep(0.15)
        await gateway.settle()
        assert gateway.registry.get("AA") is device
        assert device.connected
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_disconnected_stale_device_gets_no_disconnect_request() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)
        link = radio.links["AA"]
        link.drop()
        await gateway.settle()
        assert gateway.registry.get("AA").state is ConnectionState.DISCONNECTED

        clock.advance(31)
        assert gateway.monitor.sweep(clock.now) == []
        gateway.dispatcher.post(InactivitySweep(clock.now))
        await gateway.settle()

        assert link.disconnect_calls == 0
        assert gateway.registry.get("AA").state is ConnectionState.DISCONNECTED
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_late_disconnect_from_old_link_leaves_reconnected_device_alone() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock, grace_period=0.2)
    try:
        await _discover(gateway, radio)
        device = gateway.registry.get("AA")
        old_link = radio.links["AA"]
        old_link.disconnect_gate = asyncio.Event()

        clock.advance(31)
        gateway.dispatcher.post(InactivitySweep(clock.now))
        await _until(lambda: old_link.disconnect_calls == 1)

        # The link drops on its own while the requested disconnect is still in flight.
        old_link.drop()
        await _until(lambda: device.state is ConnectionState.DISCONNECTED)

        radio.report_advertisement(Advertisement(peer_id="AA", name=NAME, rssi=-60))
        await _until(lambda: device.connected and radio.links["AA"] is not old_link)
        new_link = radio.links["AA"]
        await _until(lambda: bool(new_link.handlers))
        assert device.generation == 1
        assert new_link.generation == 1

        old_link.disconnect_gate.set()
        await gateway.settle()
        assert device.connected
        assert device.generation == 1
        assert device.eviction is None

        await asyncio.sleep(0.3)
        await gateway.settle()
        assert gateway.registry.get("AA") is device
        assert device.connected
        assert new_link.disconnect_calls == 0
        assert radio.forgotten == []
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_outdated_connect_completion_is_ignored() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)
        gateway.dispatcher.post(ConnectSucceeded("AA", 7))
        await gateway.settle()

        assert gateway.registry.get("AA").connected
        assert gateway.health.snapshot()["dispatcher"]["status"] == "ok"
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_handler_fault_does_not_stop_processing() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock)

    def _boom(event: PeerDiscovered) -> None:
        raise RuntimeError("handler bug")

    gateway.dispatcher.register(PeerDiscovered, _boom)
    try:
        await _discover(gateway, radio)
        await _discover(gateway, radio, "BB", "BBC micro:bit [vavet]")

        assert gateway.registry.get("AA").connected
        assert gateway.registry.get("BB").connected
        assert gateway.health.snapshot()["dispatcher"]["status"] == "degraded"
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_missing_uart_service_keeps_connection() -> None:
    radio, clock = FakeRadio(), FakeClock()
    radio.services = ()
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)

        device = gateway.registry.get("AA")
        assert device.connected
        assert device.command_channel is None
        result = await gateway.send_command("AA", "LED_ON")
        assert result.status is SendStatus.NO_WRITE_CHANNEL
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_subscribe_failure_is_not_fatal() -> None:
    radio, clock = FakeRadio(), FakeClock()
    radio.subscribe_error = OSError("notify refused")
    gateway = await _started(radio, clock)
    try:
        await _discover(gateway, radio)

        device = gateway.registry.get("AA")
        assert device.connected
        assert device.telemetry_channel is not None
        assert (await gateway.send_command("AA", "TEMP")).ok
    finally:
        await gateway.stop()


@pytest.mark.asyncio
async def test_shutdown_disconnects_connected_devices() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock)
    await _discover(gateway, radio)
    await _discover(gateway, radio, "BB", "BBC micro:bit [vavet]")

    await gateway.stop()

    assert radio.links["AA"].disconnect_calls == 1
    assert radio.links["BB"].disconnect_calls == 1
    assert all(device.state is ConnectionState.DISCONNECTED for device in gateway.registry)
    assert all(device.eviction is None for device in gateway.registry)
    assert not gateway.dispatcher.running
    assert radio.stop_scan_calls >= 1


@pytest.mark.asyncio
async def test_shutdown_is_bounded_when_disconnect_hangs() -> None:
    radio, clock = FakeRadio(), FakeClock()
    gateway = await _started(radio, clock, shutdown_timeout=0.1)
    await _discover(gateway, radio)
    radio.hang_disconnect = True

    await asyncio.wait_for(gateway.stop(), timeout=2.0)

    assert radio.links["AA"].disconnect_calls == 1
    assert not gateway.dispatcher.running
