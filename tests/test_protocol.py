from microbit_gateway.devices import Device
from microbit_gateway.protocol import (
    Connected,
    Data,
    Freeform,
    apply_message,
    handle_line,
    parse_line,
)


def _device() -> Device:
    return Device(id="AA:BB", display_name="BBC micro:bit [zotig]", last_seen=100.0)


def test_data_line_updates_sensor_data_only() -> None:
    device = _device()
    handle_line(device, "DATA:temp:21,light:300", now=101.0)

    assert device.sensor_data == {"temp": "21", "light": "300"}
    assert device.custom_id is None
    assert device.last_seen == 101.0


def test_data_id_segment_sets_custom_id() -> None:
    device = _device()
    handle_line(device, "DATA:id:deviceA,hum:55", now=101.0)

    assert device.custom_id == "deviceA"
    assert device.sensor_data == {"hum": "55"}


def test_connected_line_sets_custom_id() -> None:
    device = _device()
    device.sensor_data["temp"] = "20"
    handle_line(device, "CONNECTED:deviceA", now=101.0)

    assert device.custom_id == "deviceA"
    assert device.sensor_data == {"temp": "20"}


def test_freeform_line_sets_last_response() -> None:
    device = _device()
    handle_line(device, "hello world", now=101.0)

    assert device.last_response == "hello world"
    assert device.custom_id is None
    assert device.sensor_data == {}


def test_malformed_segments_are_dropped() -> None:
    message = parse_line("DATA:temp:21,broken,:5,light:,  hum : 40 ")

    assert isinstance(message, Data)
    assert message.readings == {"temp": "21", "hum": "40"}
    assert message.dropped == 3


def test_segment_splits_on_first_colon() -> None:
    message = parse_line("DATA:time:12:30:05")

    assert isinstance(message, Data)
    assert message.readings == {"time": "12:30:05"}


def test_prefixes_are_case_sensitive() -> None:
    assert isinstance(parse_line("data:temp:21"), Freeform)
    assert isinstance(parse_line("CONNECTED:bob"), Connected)


def test_empty_connected_name_falls_through() -> None:
    assert parse_line("CONNECTED:") == Freeform(text="CONNECTED:")


def test_last_seen_never_moves_backwards() -> None:
    device = _device()
    apply_message(device, parse_line("DATA:temp:1"), now=90.0)

    assert device.last_seen == 100.0
    assert device.sensor_data == {"temp": "1"}
