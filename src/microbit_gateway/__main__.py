"""Entrypoint for the micro:bit BLE gateway."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any, Dict, Iterable, List, Optional

from .api import ApiService
from .ble import BleakRadio
from .config import Config, load_config
from .gateway import Gateway
from .health import BackoffPolicy
from .logging import configure_logging, get_logger


async def _gateway_loop(stop_event: asyncio.Event, config: Config, gateway: Gateway) -> None:
    logger = get_logger("gateway.adapter")
    backoff = BackoffPolicy(
        base=config.adapter_backoff_base,
        factor=config.adapter_backoff_factor,
        maximum=config.adapter_backoff_max,
    )
    failures = 0
    while not stop_event.is_set():
        allowed, remaining = gateway.health.allow_attempt("adapter")
        if not allowed:
            logger.warning(
                "Radio start suppressed after repeated failures",
                extra={"cooldown_seconds": round(remaining, 2)},
            )
            await _wait_or_stop(stop_event, remaining)
            continue
        try:
            await gateway.start()
            break
        except Exception as exc:
            failures += 1
            logger.exception("Gateway failed to start; will retry")
            gateway.health.record_failure("adapter", exc)
            await gateway.radio.stop()
            await _wait_or_stop(stop_event, backoff.delay(failures))
    else:
        return

    try:
        await stop_event.wait()
    finally:
        await gateway.stop()


async def _api_loop(stop_event: asyncio.Event, config: Config, gateway: Gateway) -> None:
    logger = get_logger("gateway.api")
    service = ApiService(config, gateway)
    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()
        logger.info("API loop stopped")


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    logger = get_logger("gateway")
    exc = context.get("exception")
    if exc is not None:
        logger.error(
            context.get("message", "Unhandled exception in event loop"),
            exc_info=(type(exc), exc, exc.__traceback__),
        )
    else:
        logger.error("Event loop error", extra={"context": str(context.get("message"))})


async def _run_async(config: Config) -> None:
    logger = get_logger("gateway")
    stop_event = asyncio.Event()
    gateway = Gateway(config, BleakRadio(config))

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_loop_exception_handler)
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    tasks: List[asyncio.Task[None]] = [
        asyncio.create_task(_gateway_loop(stop_event, config, gateway)),
        asyncio.create_task(_api_loop(stop_event, config, gateway)),
    ]
    logger.info(
        "Gateway services started",
        extra={"api_port": config.api_port, "name_filter": config.name_filter},
    )

    try:
        await stop_event.wait()
    finally:
        await _shutdown_tasks(tasks, logger, config.shutdown_timeout)
        logger.info("Gateway shutdown complete")


async def _shutdown_tasks(
    tasks: Iterable[asyncio.Task[None]], logger: logging.Logger, timeout: float
) -> None:
    tasks = list(tasks)
    # Tasks observe the stop event themselves; give them the shutdown budget plus slack.
    _, pending = await asyncio.wait(tasks, timeout=timeout + 1.0)
    for task in pending:
        logger.warning("Task did not stop in time; cancelling", extra={"task": task.get_name()})
        task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await asyncio.gather(*tasks, return_exceptions=True)


async def _wait_or_stop(stop_event: asyncio.Event, delay: float) -> None:
    if delay <= 0:
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("gateway")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
