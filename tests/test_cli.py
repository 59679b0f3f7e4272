import json
from argparse import Namespace
from typing import Any

import httpx
import pytest
import yaml

from microbit_gateway.cli import (
    CliError,
    ClientConfig,
    _build_parser,
    _cmd_devices_list,
    _cmd_devices_send,
    _cmd_health,
)


def _client_with_capture(captured: dict, status: int = 200, response_json: Any = None) -> httpx.Client:
    def _handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        if request.content:
            captured["json"] = json.loads(request.content.decode())
        return httpx.Response(status, json=response_json if response_json is not None else {})

    transport = httpx.MockTransport(_handler)
    return httpx.Client(transport=transport, base_url="http://test")


def test_cli_send_payload_and_url(capsys) -> None:
    captured: dict = {}
    config = ClientConfig(server_url="http://test", output="json")
    args = Namespace(device_id="E1:2A:33:4B:55:6C", message="LED_ON")

    with _client_with_capture(captured, response_json={"status": "accepted"}) as client:
        _cmd_devices_send(config, client, args)

    assert captured["method"] == "POST"
    assert captured["url"] == "http://test/api/devices/E1%3A2A%3A33%3A4B%3A55%3A6C/command"
    assert captured["json"] == {"command": "LED_ON"}
    assert json.loads(capsys.readouterr().out) == {"status": "accepted"}


def test_cli_rejects_empty_command() -> None:
    config = ClientConfig(server_url="http://test", output="json")
    args = Namespace(device_id="AA", message="")

    with _client_with_capture({}) as client:
        with pytest.raises(CliError):
            _cmd_devices_send(config, client, args)


def test_cli_surfaces_api_errors() -> None:
    config = ClientConfig(server_url="http://test", output="json")
    args = Namespace(device_id="AA", message="LED_ON")
    body = {"detail": {"status": "not_connected", "error": "Device not connected"}}

    with _client_with_capture({}, status=409, response_json=body) as client:
        with pytest.raises(CliError, match="409"):
            _cmd_devices_send(config, client, args)


def test_cli_lists_devices_as_yaml(capsys) -> None:
    captured: dict = {}
    config = ClientConfig(server_url="http://test", output="yaml")
    devices = {"AA": {"id": "AA", "customId": "deviceA", "connected": True}}

    with _client_with_capture(captured, response_json=devices) as client:
        _cmd_devices_list(config, client, Namespace())

    assert captured["url"] == "http://test/api/devices"
    assert yaml.safe_load(capsys.readouterr().out) == devices


def test_cli_health(capsys) -> None:
    captured: dict = {}
    config = ClientConfig(server_url="http://test", output="json")

    with _client_with_capture(captured, response_json={"status": "ok"}) as client:
        _cmd_health(config, client, Namespace())

    assert captured["url"] == "http://test/health"
    assert json.loads(capsys.readouterr().out)["status"] == "ok"


def test_parser_reads_server_url_from_env(monkeypatch) -> None:
    monkeypatch.setenv("MICROBIT_GATEWAY_SERVER_URL", "http://gateway.local:3000")
    args = _build_parser().parse_args(["devices", "send", "AA", "TEMP"])

    assert args.server_url == "http://gateway.local:3000"
    assert args.device_id == "AA"
    assert args.message == "TEMP"
    assert args.func is _cmd_devices_send
