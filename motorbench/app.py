"""Main application entry-point for motorbench."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Mapping, Optional

from .adapters import BleakTransport
from .analysis import analyze_run
from .channel import CommandChannel
from .config import BenchConfig, load_config
from .control import MotorControl
from .core.models import TestRun
from .core.protocols import GattTransport, PeripheralHandle, SleepFunc
from .core.throttle import percent_to_raw
from .health import COMPONENTS, HealthReporter, HealthServer
from .history import HistoryStore, JsonKeyValueStore
from .logging import configure_logging
from .profiles import ProfileCatalog
from .sequencer import SequencerPhase, TestSequencer, VoltagePrompt
from .session import DeviceSession
from .telemetry import TelemetryDecoder
from .watchdog import SafetyWatchdog

LOGGER = logging.getLogger(__name__)


class BenchApp:
    """Builds and wires the bench components.

    Everything that talks to the device goes through one ``CommandChannel``.
    The transport, sleep and clock can be injected for testing; by default
    the bleak transport and the event loop clock are used.
    """

    def __init__(
        self,
        config: Optional[BenchConfig] = None,
        *,
        transport: Optional[GattTransport] = None,
        voltage_prompt: Optional[VoltagePrompt] = None,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._config = config or load_config()
        self._transport: GattTransport = transport or BleakTransport(
            scan_timeout=self._config.device.scan_timeout_seconds
        )

        self._channel = CommandChannel(
            inter_command_delay=self._config.commands.inter_command_delay_seconds,
            sleep=sleep,
        )
        self._decoder = TelemetryDecoder()
        self._watchdog = SafetyWatchdog(
            self._channel,
            grace_seconds=self._config.watchdog.grace_seconds,
            enabled=self._config.watchdog.enabled,
            sleep=sleep,
        )
        self._session = DeviceSession(
            transport=self._transport,
            channel=self._channel,
            decoder=self._decoder,
            watchdog=self._watchdog,
            config=self._config.device,
            sleep=sleep,
        )
        self._control = MotorControl(self._channel)
        self._profiles = ProfileCatalog()
        self._history = HistoryStore(
            JsonKeyValueStore(self._config.history.path),
            capacity=self._config.history.capacity,
        )
        self._sequencer = TestSequencer(
            channel=self._channel,
            telemetry=lambda: self._decoder.last_telemetry,
            status=lambda: self._decoder.last_status,
            is_connected=lambda: self._session.is_connected,
            profiles=self._profiles,
            history=self._history,
            analyzer=analyze_run,
            voltage_prompt=voltage_prompt,
            config=self._config.sequencer,
            sleep=sleep,
            clock=clock,
        )

        self._health = HealthReporter(COMPONENTS)
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._services_started = False

        self._wire()

    def _wire(self) -> None:
        self._decoder.add_message_listener(self._profiles.handle_message)
        self._decoder.add_status_listener(lambda _status: self._sequencer.refresh_controls())
        self._decoder.add_warning_listener(self._on_warnings)

        self._session.add_connected_listener(self._on_connected)
        self._session.add_disconnected_listener(self._on_disconnected)
        self._watchdog.add_disarm_listener(self._on_auto_disarm)
        self._sequencer.add_phase_listener(self._on_phase)
        self._sequencer.add_finished_listener(self._on_run_finished)

    @property
    def config(self) -> BenchConfig:
        return self._config

    @property
    def transport(self) -> GattTransport:
        return self._transport

    @property
    def channel(self) -> CommandChannel:
        return self._channel

    @property
    def decoder(self) -> TelemetryDecoder:
        return self._decoder

    @property
    def watchdog(self) -> SafetyWatchdog:
        return self._watchdog

    @property
    def session(self) -> DeviceSession:
        return self._session

    @property
    def profiles(self) -> ProfileCatalog:
        return self._profiles

    @property
    def history(self) -> HistoryStore:
        return self._history

    @property
    def sequencer(self) -> TestSequencer:
        return self._sequencer

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def connect(self) -> PeripheralHandle:
        return await self._session.connect()

    async def disconnect(self) -> None:
        if self._sequencer.running:
            await self._sequencer.stop()
        await self._session.disconnect()

    async def arm(self, *, force: bool = False) -> None:
        await self._control.arm(force=force)

    async def disarm(self) -> None:
        await self._control.disarm()

    async def set_throttle(self, percent: float) -> None:
        """Manual throttle outside of a run, clamped to the active arm floor."""

        floor = self._profiles.arm_floor_percent()
        await self._control.set_throttle_raw(percent_to_raw(max(floor, percent)))

    async def refresh_profiles(self) -> None:
        await self._control.request_profiles()

    async def run_test(self, mode: str, params: Optional[Mapping[str, Any]] = None) -> TestRun:
        """Run one test mode to completion and return the sealed run."""
        return await self._sequencer.run(mode, params)

    async def stop_test(self) -> None:
        await self._sequencer.stop()

    async def start_services(self) -> None:
        if self._services_started:
            return
        self._services_started = True

        self._history.load()
        await self._health.set_session_state(self._session.state.value)
        await self._health.update("ble", False, "disconnected")
        await self._health.update(
            "watchdog",
            True,
            "enabled" if self._watchdog.enabled else "disabled",
            data={"graceSeconds": self._watchdog.grace_seconds},
        )
        await self._report_sequencer()
        await self._start_health_server()

    async def stop_services(self) -> None:
        if not self._services_started:
            return
        self._services_started = False

        await self._sequencer.aclose()
        await self._session.dispose()
        await self._channel.aclose()
        await self._stop_health_server()

        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run(self) -> None:
        """Start services, connect, and stay up until shutdown is requested."""

        self._shutdown_event = asyncio.Event()
        LOGGER.info("motorbench starting with config: %s", self._config.path)
        await self.start_services()
        try:
            await self.connect()
        except Exception as exc:
            LOGGER.warning("Initial connection failed; running without a device: %s", exc)

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("motorbench received shutdown signal")
            raise
        finally:
            await self.stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[BenchConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_ble=instance._config.logging.log_ble,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("motorbench received shutdown signal")

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def _stop_health_server(self) -> None:
        if self._health_server is None:
            return
        await self._health_server.stop()
        self._health_server = None
        await self._health.update("health-endpoint", False, "shutdown")

    async def _report_sequencer(self) -> None:
        description = self._sequencer.describe()
        await self._health.update(
            "sequencer",
            self._sequencer.last_error is None,
            description["phase"],
            data=description,
        )

    async def _on_connected(self, handle: PeripheralHandle) -> None:
        self._sequencer.refresh_controls()
        await self._health.set_session_state(self._session.state.value)
        await self._health.update("ble", True, handle.name or handle.address)

    async def _on_disconnected(self, requested: bool) -> None:
        self._profiles.clear()
        self._sequencer.refresh_controls()
        await self._health.set_session_state(self._session.state.value)
        await self._health.update(
            "ble", False, "disconnected" if requested else "connection lost"
        )

    async def _on_auto_disarm(self, cause: str) -> None:
        await self._health.update(
            "watchdog",
            True,
            cause,
            data={
                "graceSeconds": self._watchdog.grace_seconds,
                "disarmCount": self._watchdog.disarm_count,
            },
        )

    async def _on_phase(self, phase: SequencerPhase) -> None:
        await self._report_sequencer()

    async def _on_run_finished(self, run: TestRun) -> None:
        await self._report_sequencer()

    def _on_warnings(self, labels: str) -> None:
        if labels:
            LOGGER.warning("Device warnings: %s", labels)
