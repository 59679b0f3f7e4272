"""Configuration loading for the micro:bit BLE gateway."""

from __future__ import annotations

import argparse
import os
import re
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - older interpreters use the backport
    import tomli as tomllib  # type: ignore


CONFIG_ENV_PREFIX = "MICROBIT_GATEWAY_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

# Nordic UART service as exposed by the micro:bit bluetooth UART block.
UART_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
COMMAND_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"
TELEMETRY_CHAR_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"

LINE_MODES = ("notification", "newline")

_UUID_PATTERN = re.compile(r"^[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}$")

_INT_FIELDS = {
    "api_port",
    "max_line_length",
    "subsystem_failure_threshold",
    "config_version",
}
_FLOAT_FIELDS = {
    "connect_timeout",
    "liveness_threshold",
    "sweep_interval",
    "grace_period",
    "shutdown_timeout",
    "adapter_probe_interval",
    "adapter_backoff_base",
    "adapter_backoff_factor",
    "adapter_backoff_max",
    "subsystem_failure_cooldown",
}
_BOOL_FIELDS = {"api_docs", "scan_allow_duplicates"}
_LEVEL_FIELDS = {"log_level", "discovery_log_level", "protocol_log_level", "api_log_level"}


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_docs: bool = True
    name_filter: str = "BBC micro:bit"
    uart_service_uuid: str = UART_SERVICE_UUID
    command_char_uuid: str = COMMAND_CHAR_UUID
    telemetry_char_uuid: str = TELEMETRY_CHAR_UUID
    scan_allow_duplicates: bool = True
    connect_timeout: float = 20.0
    liveness_threshold: float = 30.0
    sweep_interval: float = 10.0
    grace_period: float = 60.0
    shutdown_timeout: float = 5.0
    line_mode: str = "notification"
    max_line_length: int = 512
    adapter_probe_interval: float = 5.0
    adapter_backoff_base: float = 1.0
    adapter_backoff_factor: float = 2.0
    adapter_backoff_max: float = 30.0
    subsystem_failure_threshold: int = 5
    subsystem_failure_cooldown: float = 15.0
    log_format: str = "plain"
    log_level: str = "INFO"
    discovery_log_level: Optional[str] = None
    protocol_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a mapping suitable for structured logging."""

        return {
            "config_version": self.config_version,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "api_docs": self.api_docs,
            "name_filter": self.name_filter,
            "uart_service_uuid": self.uart_service_uuid,
            "command_char_uuid": self.command_char_uuid,
            "telemetry_char_uuid": self.telemetry_char_uuid,
            "scan_allow_duplicates": self.scan_allow_duplicates,
            "connect_timeout": self.connect_timeout,
            "liveness_threshold": self.liveness_threshold,
            "sweep_interval": self.sweep_interval,
            "grace_period": self.grace_period,
            "shutdown_timeout": self.shutdown_timeout,
            "line_mode": self.line_mode,
            "max_line_length": self.max_line_length,
            "adapter_probe_interval": self.adapter_probe_interval,
            "subsystem_failure_threshold": self.subsystem_failure_threshold,
            "subsystem_failure_cooldown": self.subsystem_failure_cooldown,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "discovery_log_level": self.discovery_log_level,
            "protocol_log_level": self.protocol_log_level,
            "api_log_level": self.api_log_level,
        }

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("api_port", config.api_port, 1, 65535)
    _validate_range("connect_timeout", config.connect_timeout, 0.5, 300.0)
    _validate_range("liveness_threshold", config.liveness_threshold, 1.0, 86400.0)
    _validate_range("sweep_interval", config.sweep_interval, 0.01, 3600.0)
    _validate_range("grace_period", config.grace_period, 0.0, 86400.0)
    _validate_range("shutdown_timeout", config.shutdown_timeout, 0.0, 300.0)
    _validate_range("max_line_length", config.max_line_length, 16, 65536)
    _validate_range("adapter_probe_interval", config.adapter_probe_interval, 0.1, 3600.0)
    _validate_range("adapter_backoff_base", config.adapter_backoff_base, 0.0, 300.0)
    _validate_range("adapter_backoff_factor", config.adapter_backoff_factor, 1.0, 10.0)
    _validate_range("adapter_backoff_max", config.adapter_backoff_max, 0.1, 3600.0)
    _validate_range("subsystem_failure_threshold", config.subsystem_failure_threshold, 1, 1000)
    _validate_range("subsystem_failure_cooldown", config.subsystem_failure_cooldown, 0.0, 3600.0)
    if not config.name_filter:
        raise ValueError("name_filter must not be empty.")
    if config.line_mode not in LINE_MODES:
        raise ValueError(f"line_mode must be one of {list(LINE_MODES)}; got {config.line_mode}.")
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name in ("uart_service_uuid", "command_char_uuid", "telemetry_char_uuid"):
        _validate_uuid(field_name, getattr(config, field_name))
    for field_name in sorted(_LEVEL_FIELDS):
        _validate_log_level_value(getattr(config, field_name), field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the gateway."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_uuid(name: str, value: str) -> None:
    if not _UUID_PATTERN.match(value):
        raise ValueError(f"{name} must be a 128-bit UUID; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if value.upper() not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    parser = argparse.ArgumentParser(
        prog="microbit-gateway",
        description="Run the micro:bit BLE gateway.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--api-host", type=str, help="Interface the HTTP API binds to.")
    parser.add_argument("--api-port", type=int, help="TCP port for the HTTP API server.")
    parser.add_argument(
        "--no-api-docs",
        action="store_true",
        help="Disable interactive API docs.",
    )
    parser.add_argument(
        "--name-filter",
        type=str,
        help="Substring an advertised name must contain to be connected.",
    )
    parser.add_argument("--uart-service-uuid", type=str, help="UUID of the UART service.")
    parser.add_argument(
        "--command-char-uuid",
        type=str,
        help="UUID of the write characteristic commands are sent on.",
    )
    parser.add_argument(
        "--telemetry-char-uuid",
        type=str,
        help="UUID of the notify characteristic telemetry arrives on.",
    )
    parser.add_argument(
        "--no-scan-duplicates",
        action="store_true",
        help="Ask the adapter to filter repeated advertisements.",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        help="Seconds to wait for a BLE connection to complete.",
    )
    parser.add_argument(
        "--liveness-threshold",
        type=float,
        help="Seconds without traffic before a device is considered stale.",
    )
    parser.add_argument(
        "--sweep-interval",
        type=float,
        help="Seconds between inactivity sweeps.",
    )
    parser.add_argument(
        "--grace-period",
        type=float,
        help="Seconds a disconnected device is retained before removal.",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        help="Seconds to wait for devices to disconnect on shutdown.",
    )
    parser.add_argument(
        "--line-mode",
        choices=list(LINE_MODES),
        help="Treat each notification as a line, or reassemble newline-terminated lines.",
    )
    parser.add_argument(
        "--max-line-length",
        type=int,
        help="Longest inbound line buffered before it is force-flushed.",
    )
    parser.add_argument(
        "--adapter-probe-interval",
        type=float,
        help="Seconds between adapter power-state probes.",
    )
    parser.add_argument(
        "--subsystem-failure-threshold",
        type=int,
        help="Consecutive failures before a subsystem is reported suppressed.",
    )
    parser.add_argument(
        "--subsystem-failure-cooldown",
        type=float,
        help="Seconds a suppressed subsystem waits before retrying.",
    )
    parser.add_argument("--log-format", choices=["plain", "json"], help="Structured logging format.")
    parser.add_argument("--log-level", choices=levels, help="Log verbosity level.")
    parser.add_argument("--discovery-log-level", choices=levels, help="Log verbosity for discovery.")
    parser.add_argument(
        "--protocol-log-level",
        choices=levels,
        help="Log verbosity for inbound protocol handling.",
    )
    parser.add_argument("--api-log-level", choices=levels, help="Log verbosity for the API server.")
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    skipped = {"config", "no_api_docs", "no_scan_duplicates"}
    mapping = {k: v for k, v in vars(args).items() if k not in skipped and v is not None}
    if args.no_api_docs:
        mapping["api_docs"] = False
    if args.no_scan_duplicates:
        mapping["scan_allow_duplicates"] = False
    return mapping


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key not in Config.__dataclass_fields__:
            raise ValueError(f"Unknown configuration key: {key}")
        if key in _INT_FIELDS:
            data[key] = int(value)
        elif key in _FLOAT_FIELDS:
            data[key] = float(value)
        elif key in _BOOL_FIELDS:
            data[key] = _coerce_bool(value)
        elif key in _LEVEL_FIELDS:
            data[key] = str(value).upper()
        elif key in {"log_format", "line_mode"}:
            data[key] = str(value).lower()
        elif key.endswith("_uuid"):
            data[key] = str(value).lower()
        else:
            data[key] = str(value)
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - reported before logging is configured
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
