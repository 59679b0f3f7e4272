"""Gateway events and the ordered dispatcher that runs their handlers."""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Type, TypeVar

from .health import HealthMonitor
from .logging import get_logger
from .metrics import record_handler_error
from .transport import AdapterState


@dataclass(frozen=True)
class GatewayEvent:
    """Base class for everything delivered through the dispatcher."""

    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class AdapterStateChanged(GatewayEvent):
    state: AdapterState


@dataclass(frozen=True)
class ScanStarted(GatewayEvent):
    pass


@dataclass(frozen=True)
class ScanFailed(GatewayEvent):
    error: BaseException


@dataclass(frozen=True)
class PeerDiscovered(GatewayEvent):
    peer_id: str
    name: Optional[str] = None
    rssi: Optional[int] = None


@dataclass(frozen=True)
class ConnectSucceeded(GatewayEvent):
    peer_id: str
    generation: int


@dataclass(frozen=True)
class ConnectFailed(GatewayEvent):
    peer_id: str
    generation: int
    error: BaseException


@dataclass(frozen=True)
class PeerDisconnected(GatewayEvent):
    peer_id: str
    generation: int


@dataclass(frozen=True)
class ServicesResolved(GatewayEvent):
    peer_id: str
    generation: int
    services: tuple


@dataclass(frozen=True)
class Subscribed(GatewayEvent):
    peer_id: str
    uuid: str


@dataclass(frozen=True)
class TransportFailed(GatewayEvent):
    """A best-effort transport call (disconnect, subscribe, discovery) failed."""

    peer_id: str
    operation: str
    error: BaseException


@dataclass(frozen=True)
class LineReceived(GatewayEvent):
    peer_id: str
    line: str


@dataclass(frozen=True)
class InactivitySweep(GatewayEvent):
    now: float


@dataclass(frozen=True)
class GraceExpired(GatewayEvent):
    peer_id: str
    generation: int


E = TypeVar("E", bound=GatewayEvent)
Handler = Callable[[Any], None]
T = TypeVar("T")


class EventDispatcher:
    """Single consumer of an ordered event queue.

    Handlers are plain functions that run to completion one event at a time.
    Transport coroutines are started with :meth:`submit`; their outcome comes
    back as a new event rather than being awaited by the handler.
    """

    def __init__(self, health: Optional[HealthMonitor] = None) -> None:
        self.logger = get_logger("gateway.events")
        self._health = health
        self._queue: "asyncio.Queue[GatewayEvent]" = asyncio.Queue()
        self._handlers: Dict[Type[GatewayEvent], List[Handler]] = defaultdict(list)
        self._pending: Set["asyncio.Task[None]"] = set()
        self._task: Optional["asyncio.Task[None]"] = None

    def register(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        self._handlers[event_type].append(handler)

    def post(self, event: GatewayEvent) -> None:
        self._queue.put_nowait(event)

    def call_later(self, delay: float, event: GatewayEvent) -> asyncio.TimerHandle:
        """Post ``event`` after ``delay`` seconds."""

        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self.post, event)

    def submit(
        self,
        operation: Awaitable[T],
        *,
        on_success: Optional[Callable[[T], Optional[GatewayEvent]]] = None,
        on_failure: Optional[Callable[[BaseException], Optional[GatewayEvent]]] = None,
    ) -> "asyncio.Task[None]":
        """Run a transport coroutine in the background and report its outcome as an event."""

        task = asyncio.ensure_future(self._complete(operation, on_success, on_failure))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _complete(
        self,
        operation: Awaitable[T],
        on_success: Optional[Callable[[T], Optional[GatewayEvent]]],
        on_failure: Optional[Callable[[BaseException], Optional[GatewayEvent]]],
    ) -> None:
        try:
            result = await operation
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            event = on_failure(exc) if on_failure else None
        else:
            event = on_success(result) if on_success else None
        if event is not None:
            self.post(event)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        self.logger.debug("Event dispatcher started")

    async def stop(self) -> None:
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        self.logger.debug("Event dispatcher stopped")

    async def settle(self) -> None:
        """Wait until the queue is drained and no submitted call is outstanding."""

        while True:
            await self._queue.join()
            if self._pending:
                await asyncio.gather(*list(self._pending), return_exceptions=True)
                continue
            await asyncio.sleep(0)
            if self._queue.empty() and not self._pending:
                return

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self.dispatch(event)
            finally:
                self._queue.task_done()

    def dispatch(self, event: GatewayEvent) -> None:
        """Run every handler for ``event``; a faulty handler never stops the loop."""

        handlers = self._handlers.get(type(event))
        if not handlers:
            self.logger.debug("No handler for event", extra={"event": event.kind})
            return
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                self.logger.exception("Event handler failed", extra={"event": event.kind})
                record_handler_error(event.kind)
                if self._health:
                    self._health.record_failure("dispatcher", exc)
