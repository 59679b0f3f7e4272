import asyncio

import pytest

from microbit_gateway.events import (
    EventDispatcher,
    GraceExpired,
    LineReceived,
    PeerDisconnected,
    TransportFailed,
)
from microbit_gateway.health import HealthMonitor


@pytest.mark.asyncio
async def test_events_are_handled_in_order() -> None:
    dispatcher = EventDispatcher()
    seen: list = []
    dispatcher.register(LineReceived, lambda event: seen.append(event.line))
    await dispatcher.start()
    try:
        for index in range(5):
            dispatcher.post(LineReceived("AA", f"line-{index}"))
        await dispatcher.settle()
    finally:
        await dispatcher.stop()

    assert seen == [f"line-{index}" for index in range(5)]


@pytest.mark.asyncio
async def test_submit_reports_outcome_as_event() -> None:
    dispatcher = EventDispatcher()
    seen: list = []
    dispatcher.register(PeerDisconnected, lambda event: seen.append(("ok", event.peer_id)))
    dispatcher.register(TransportFailed, lambda event: seen.append(("failed", str(event.error))))

    async def _succeeds() -> None:
        await asyncio.sleep(0)

    async def _fails() -> None:
        raise OSError("radio gone")

    await dispatcher.start()
    try:
        dispatcher.submit(_succeeds(), on_success=lambda _: PeerDisconnected("AA", 0))
        dispatcher.submit(
            _fails(),
            on_failure=lambda exc: TransportFailed("BB", "disconnect", exc),
        )
        await dispatcher.settle()
    finally:
        await dispatcher.stop()

    assert sorted(seen) == [("failed", "radio gone"), ("ok", "AA")]


@pytest.mark.asyncio
async def test_handler_error_is_contained() -> None:
    health = HealthMonitor(("dispatcher",), failure_threshold=2, cooldown_seconds=1)
    dispatcher = EventDispatcher(health)
    seen: list = []

    def _handler(event: LineReceived) -> None:
        if event.line == "bad":
            raise ValueError("boom")
        seen.append(event.line)

    dispatcher.register(LineReceived, _handler)
    await dispatcher.start()
    try:
        dispatcher.post(LineReceived("AA", "bad"))
        dispatcher.post(LineReceived("AA", "good"))
        await dispatcher.settle()
        assert dispatcher.running
    finally:
        await dispatcher.stop()

    assert seen == ["good"]
    assert health.snapshot()["dispatcher"]["failures"] == 1


@pytest.mark.asyncio
async def test_call_later_posts_event() -> None:
    dispatcher = EventDispatcher()
    seen: list = []
    dispatcher.register(GraceExpired, lambda event: seen.append(event.generation))
    await dispatcher.start()
    try:
        dispatcher.call_later(0.01, GraceExpired("AA", 1))
        handle = dispatcher.call_later(0.01, GraceExpired("AA", 2))
        handle.cancel()
        await asyncio.sleep(0.05)
        await dispatcher.settle()
    finally:
        await dispatcher.stop()

    assert seen == [1]


@pytest.mark.asyncio
async def test_stop_cancels_outstanding_calls() -> None:
    dispatcher = EventDispatcher()
    await dispatcher.start()
    task = dispatcher.submit(asyncio.Event().wait())
    await asyncio.sleep(0)

    await dispatcher.stop()

    assert task.cancelled()
    assert not dispatcher.running
