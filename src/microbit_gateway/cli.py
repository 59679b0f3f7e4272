"""Command-line client for the gateway HTTP API."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional
from urllib.parse import quote

import httpx
import yaml


DEFAULT_SERVER_URL = "http://127.0.0.1:3000"
ENV_PREFIX = "MICROBIT_GATEWAY_"


class CliError(Exception):
    """Raised when the CLI encounters an expected error condition."""


@dataclass(frozen=True)
class ClientConfig:
    """Configuration for the API client."""

    server_url: str
    output: str
    timeout: float = 10.0


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="microbit-gateway-cli",
        description=(
            "CLI for the micro:bit BLE gateway API. Uses MICROBIT_GATEWAY_* env vars "
            "for defaults and prints JSON (default) or YAML. Examples: "
            "`microbit-gateway-cli devices list`, "
            "`microbit-gateway-cli devices send <id> LED_ON`."
        ),
    )
    parser.add_argument(
        "--server-url",
        default=_env("SERVER_URL", DEFAULT_SERVER_URL),
        help=(
            f"Base URL for the gateway API (env: {ENV_PREFIX}SERVER_URL). "
            f"Defaults to {DEFAULT_SERVER_URL}."
        ),
    )
    parser.add_argument(
        "--output",
        choices=["json", "yaml"],
        default=_env("OUTPUT", "json"),
        help=f"Output format for responses (env: {ENV_PREFIX}OUTPUT). Defaults to 'json'.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(_env("TIMEOUT", "10") or 10),
        help=f"Request timeout in seconds (env: {ENV_PREFIX}TIMEOUT).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    health = subparsers.add_parser(
        "health",
        help="Check gateway health (GET /health)",
        description="Prints the overall status and per-subsystem health.",
    )
    health.set_defaults(func=_cmd_health)

    status = subparsers.add_parser(
        "status",
        help="Show adapter, scanning and device counts (GET /status)",
    )
    status.set_defaults(func=_cmd_status)

    devices = subparsers.add_parser("devices", help="Inspect devices and send them commands")
    device_sub = devices.add_subparsers(dest="device_command", required=True)

    list_cmd = device_sub.add_parser(
        "list",
        help="List devices (GET /api/devices -> mapping of id to device)",
    )
    list_cmd.set_defaults(func=_cmd_devices_list)

    send = device_sub.add_parser(
        "send",
        help="Send a command to a device (POST /api/devices/{id}/command)",
        description="Commands are forwarded verbatim with a trailing newline, e.g. LED_ON or TEMP.",
    )
    send.add_argument("device_id", help="Transport id of the device")
    send.add_argument("message", help="Command text to send")
    send.set_defaults(func=_cmd_devices_send)

    return parser


def _load_config(args: argparse.Namespace) -> ClientConfig:
    output = args.output or "json"
    if output not in {"json", "yaml"}:
        raise CliError("Output format must be 'json' or 'yaml'")
    return ClientConfig(server_url=args.server_url, output=output, timeout=args.timeout)


def _build_client(config: ClientConfig) -> httpx.Client:
    return httpx.Client(base_url=config.server_url, timeout=config.timeout)


def _print_output(data: Any, output: str) -> None:
    if output == "yaml":
        yaml.safe_dump(data, sys.stdout, sort_keys=False)
    else:
        json.dump(data, sys.stdout, indent=2)
        sys.stdout.write("\n")


def _handle_response(response: httpx.Response) -> Any:
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        raise CliError(f"Request failed ({response.status_code}): {detail}") from exc
    if response.content:
        return response.json()
    return None


def _cmd_health(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/health"))
    _print_output(data, config.output)


def _cmd_status(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/status"))
    _print_output(data, config.output)


def _cmd_devices_list(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    data = _handle_response(client.get("/api/devices"))
    _print_output(data, config.output)


def _cmd_devices_send(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    if not args.message:
        raise CliError("Command must not be empty")
    path = f"/api/devices/{quote(args.device_id, safe='')}/command"
    data = _handle_response(client.post(path, json={"command": args.message}))
    _print_output(data, config.output)


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)

    try:
        config = _load_config(args)
        with _build_client(config) as client:
            func: Callable[[ClientConfig, httpx.Client, argparse.Namespace], None] = args.func
            func(config, client, args)
    except CliError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"Error: {exc}\n")
        sys.exit(1)
    except httpx.RequestError as exc:  # pragma: no cover - CLI feedback path
        sys.stderr.write(f"HTTP request failed: {exc}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
