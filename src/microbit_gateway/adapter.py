"""Radio adapter controller: keeps discovery running while the adapter is powered."""

from __future__ import annotations

from typing import Optional

from .config import Config
from .events import AdapterStateChanged, EventDispatcher, ScanFailed, ScanStarted
from .health import HealthMonitor
from .logging import get_logger
from .metrics import set_scanning
from .transport import AdapterState, Radio


class AdapterController:
    """React to adapter power changes by starting or stopping discovery."""

    def __init__(
        self,
        radio: Radio,
        dispatcher: EventDispatcher,
        config: Config,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.radio = radio
        self.dispatcher = dispatcher
        self.config = config
        self.health = health
        self.logger = get_logger("gateway.adapter")
        self.state = AdapterState.UNKNOWN
        self.scanning = False
        self._halted = False
        dispatcher.register(AdapterStateChanged, self.on_state_changed)
        dispatcher.register(ScanStarted, self.on_scan_started)
        dispatcher.register(ScanFailed, self.on_scan_failed)

    @property
    def powered(self) -> bool:
        return self.state is AdapterState.POWERED_ON

    def on_state_changed(self, event: AdapterStateChanged) -> None:
        previous = self.state
        self.state = event.state
        if previous is not event.state:
            self.logger.info(
                "Adapter state changed",
                extra={"previous": previous.value, "state": event.state.value},
            )
        if self.powered:
            self._start_scan()
        elif self.scanning:
            self._stop_scan()

    def resume(self) -> None:
        """Restart discovery if the adapter is on and nothing is scanning."""

        if self.powered:
            self._start_scan()

    def halt(self) -> None:
        """Stop reacting to power reports; the caller stops the radio itself."""

        self._halted = True
        self.scanning = False
        set_scanning(False)

    def on_scan_started(self, _event: ScanStarted) -> None:
        if self.health:
            self.health.record_success("adapter")

    def on_scan_failed(self, event: ScanFailed) -> None:
        self.scanning = False
        set_scanning(False)
        self.logger.error(
            "Failed to start discovery",
            exc_info=(type(event.error), event.error, event.error.__traceback__),
        )
        if self.health:
            self.health.record_failure("adapter", event.error)

    def _start_scan(self) -> None:
        if self.scanning or self._halted:
            return
        self.scanning = True
        set_scanning(True)
        self.logger.debug("Requesting discovery", extra={"allow_duplicates": self.config.scan_allow_duplicates})
        self.dispatcher.submit(
            self.radio.start_scan(self.config.scan_allow_duplicates),
            on_success=lambda _: ScanStarted(),
            on_failure=ScanFailed,
        )

    def _stop_scan(self) -> None:
        self.scanning = False
        set_scanning(False)
        self.logger.info("Stopping discovery", extra={"state": self.state.value})
        self.dispatcher.submit(
            self.radio.stop_scan(),
            on_failure=self._stop_failed,
        )

    def _stop_failed(self, exc: BaseException) -> None:
        self.logger.warning("Failed to stop discovery", extra={"error": str(exc)})
        return None
