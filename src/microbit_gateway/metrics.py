"""Prometheus metrics helpers."""

from __future__ import annotations

from typing import Mapping

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "gateway_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "gateway_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
DISCOVERY_EVENTS = Counter(
    "gateway_discovery_events_total",
    "Advertisements seen by the discovery manager",
    ["outcome"],
    registry=_REGISTRY,
)
CONNECTION_ATTEMPTS = Counter(
    "gateway_connection_attempts_total",
    "Connection attempts by result",
    ["result"],
    registry=_REGISTRY,
)
DEVICES = Gauge(
    "gateway_devices",
    "Devices in the registry by connection state",
    ["state"],
    registry=_REGISTRY,
)
INBOUND_LINES = Counter(
    "gateway_inbound_lines_total",
    "Inbound protocol lines by message kind",
    ["kind"],
    registry=_REGISTRY,
)
DROPPED_SEGMENTS = Counter(
    "gateway_dropped_data_segments_total",
    "Malformed DATA segments discarded by the parser",
    registry=_REGISTRY,
)
COMMANDS = Counter(
    "gateway_commands_total",
    "Commands submitted to the dispatcher by status",
    ["status"],
    registry=_REGISTRY,
)
STALE_DISCONNECTS = Counter(
    "gateway_stale_disconnects_total",
    "Disconnect requests issued for inactive devices",
    registry=_REGISTRY,
)
EVICTIONS = Counter(
    "gateway_evictions_total",
    "Disconnected devices removed after their grace period",
    registry=_REGISTRY,
)
TRANSPORT_FAILURES = Counter(
    "gateway_transport_failures_total",
    "Transport operations that failed",
    ["operation"],
    registry=_REGISTRY,
)
HANDLER_ERRORS = Counter(
    "gateway_handler_errors_total",
    "Unexpected faults raised by event handlers",
    ["event"],
    registry=_REGISTRY,
)
SCANNING = Gauge(
    "gateway_scanning",
    "Whether discovery scanning is active (1) or not (0)",
    registry=_REGISTRY,
)
SUBSYSTEM_FAILURES = Counter(
    "gateway_subsystem_failures_total",
    "Subsystem failures leading to suppression",
    ["subsystem"],
    registry=_REGISTRY,
)
SUBSYSTEM_STATUS = Gauge(
    "gateway_subsystem_status",
    "Subsystem health (0=suppressed,1=degraded/recovering,2=ok)",
    ["subsystem"],
    registry=_REGISTRY,
)


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def record_discovery(outcome: str) -> None:
    """Record what the discovery manager did with an advertisement."""

    DISCOVERY_EVENTS.labels(outcome=outcome).inc()


def record_connection_attempt(result: str) -> None:
    CONNECTION_ATTEMPTS.labels(result=result).inc()


def set_device_counts(counts: Mapping[str, int]) -> None:
    """Publish the number of registry entries per connection state."""

    for state, count in counts.items():
        DEVICES.labels(state=state).set(count)


def record_inbound_line(kind: str) -> None:
    INBOUND_LINES.labels(kind=kind).inc()


def record_dropped_segments(count: int) -> None:
    if count > 0:
        DROPPED_SEGMENTS.inc(count)


def record_command(status: str) -> None:
    COMMANDS.labels(status=status).inc()


def record_stale_disconnect() -> None:
    STALE_DISCONNECTS.inc()


def record_eviction() -> None:
    EVICTIONS.inc()


def record_transport_failure(operation: str) -> None:
    TRANSPORT_FAILURES.labels(operation=operation).inc()


def record_handler_error(event: str) -> None:
    HANDLER_ERRORS.labels(event=event).inc()


def set_scanning(active: bool) -> None:
    SCANNING.set(1 if active else 0)


def record_subsystem_failure(subsystem: str) -> None:
    """Record a subsystem failure triggering suppression."""

    SUBSYSTEM_FAILURES.labels(subsystem=subsystem).inc()


def record_subsystem_status(subsystem: str, status: str) -> None:
    """Record the current subsystem status."""

    code = 0
    if status == "ok":
        code = 2
    elif status in {"recovering", "degraded"}:
        code = 1
    SUBSYSTEM_STATUS.labels(subsystem=subsystem).set(code)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
