"""Lifecycle of the link to one bench peripheral.

A session owns everything that must be torn down together when the link
goes away: the bound command characteristic, the notification subscription,
the watchdog timer, queued commands and session-scoped tasks such as the
delayed firmware version request.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional, Set

from .channel import CommandChannel, CommandChannelError
from .config import DeviceConfig
from .constants import (
    APP_DISCOVERY_SERVICE_UUID,
    APP_INFO_CHARACTERISTIC_UUID,
    NUS_RX_CHARACTERISTIC_UUID,
    NUS_SERVICE_UUID,
    NUS_TX_CHARACTERISTIC_UUID,
)
from .control import MotorControl
from .core.listeners import ListenerSet
from .core.protocols import GattCharacteristic, GattLink, GattTransport, PeripheralHandle, SleepFunc
from .telemetry import TelemetryDecoder
from .watchdog import SafetyWatchdog

LOGGER = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Raised when connecting fails or the session is in the wrong state."""



class ConnectAborted(SessionError):
    """A disconnect or newer connect superseded an in-progress connect."""


class SessionState(str, Enum):
    """Current state of the peripheral link."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


ConnectedListener = Callable[[PeripheralHandle], Any]
DisconnectedListener = Callable[[bool], Any]


class DeviceSession:
    """Connects to the peripheral and wires it to the channel and decoder."""

    def __init__(
        self,
        *,
        transport: GattTransport,
        channel: CommandChannel,
        decoder: TelemetryDecoder,
        watchdog: Optional[SafetyWatchdog] = None,
        config: Optional[DeviceConfig] = None,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self._transport = transport
        self._channel = channel
        self._decoder = decoder
        self._watchdog = watchdog
        self._config = config or DeviceConfig()
        self._sleep = sleep or asyncio.sleep
        self._control = MotorControl(channel)

        self._state = SessionState.DISCONNECTED
        self._device: Optional[PeripheralHandle] = None
        self._link: Optional[GattLink] = None
        self._notify_char: Optional[GattCharacteristic] = None
        self._app_info: Optional[str] = None
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._generation = 0
        self._torn_down = True

        self._connected_listeners: ListenerSet[ConnectedListener] = ListenerSet("connected")
        self._disconnected_listeners: ListenerSet[DisconnectedListener] = ListenerSet(
            "disconnected"
        )

        if watchdog is not None:
            # Registered first so safety sees every status before any UI listener.
            decoder.add_status_listener(watchdog.observe)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    @property
    def device(self) -> Optional[PeripheralHandle]:
        return self._device

    @property
    def app_info(self) -> Optional[str]:
        """Text read from the App Discovery info characteristic, if any."""
        return self._app_info

    def add_connected_listener(self, listener: ConnectedListener) -> Callable[[], None]:
        return self._connected_listeners.add(listener)

    def add_disconnected_listener(self, listener: DisconnectedListener) -> Callable[[], None]:
        return self._disconnected_listeners.add(listener)

    async def connect(self) -> PeripheralHandle:
        """Select, connect and subscribe to a peripheral.

        Raises:
            SessionError: If a session is already active or any step fails.
                The partial session is torn down before raising.
        """

        if self._state is not SessionState.DISCONNECTED:
            raise SessionError(f"Cannot connect while {self._state.value}")

        self._state = SessionState.CONNECTING
        self._generation += 1
        generation = self._generation
        self._torn_down = False

        try:
            handle = await self._establish(generation)
        except ConnectAborted:
            raise
        except asyncio.CancelledError:
            if self._is_current(generation):
                await self._abort_connect()
            raise
        except Exception as exc:
            if not self._is_current(generation):
                raise ConnectAborted("connect aborted") from exc
            LOGGER.error("Connection failed: %s", exc)
            await self._abort_connect()
            raise SessionError(f"Connection failed: {exc}") from exc

        self._state = SessionState.CONNECTED
        LOGGER.info("Connected to %s", handle.name or handle.address)
        self._spawn(self._request_version_later())
        self._connected_listeners.emit(handle)
        return handle

    async def _establish(self, generation: int) -> PeripheralHandle:
        LOGGER.info("Requesting Bluetooth device")
        handle = await self._transport.request_device(
            service_uuid=NUS_SERVICE_UUID,
            accept_all=self._config.scan_all_devices,
            name=self._config.device_name,
        )
        await self._ensure_current(generation)
        self._device = handle
        LOGGER.info("Device selected: %s", handle.name or "Unknown")

        link = self._transport.open(handle, lambda: self._on_link_lost(generation))
        self._link = link
        await link.connect()
        await self._ensure_current(generation, link)
        LOGGER.debug("GATT link up, discovering services")

        service = await link.get_primary_service(NUS_SERVICE_UUID)
        rx_char = await service.get_characteristic(NUS_RX_CHARACTERISTIC_UUID)
        tx_char = await service.get_characteristic(NUS_TX_CHARACTERISTIC_UUID)
        await self._ensure_current(generation, link)

        self._channel.bind(rx_char)
        await tx_char.start_notifications(self._decoder.handle)
        await self._ensure_current(generation, link)
        self._notify_char = tx_char
        LOGGER.debug("Notifications started")

        app_info = await self._read_app_info(link)
        await self._ensure_current(generation, link)
        self._app_info = app_info
        return handle

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and not self._torn_down

    async def _ensure_current(self, generation: int, link: Optional[GattLink] = None) -> None:
        # Teardown after bind() already unbound the channel; only the link is left.
        if self._is_current(generation):
            return
        LOGGER.info("Connect aborted")
        if link is not None:
            try:
                await link.disconnect()
            except Exception as exc:
                LOGGER.debug("Disconnect of abandoned link: %s", exc)
        raise ConnectAborted("connect aborted")

    async def _read_app_info(self, link: GattLink) -> Optional[str]:
        try:
            service = await link.get_primary_service(APP_DISCOVERY_SERVICE_UUID)
            characteristic = await service.get_characteristic(APP_INFO_CHARACTERISTIC_UUID)
            value = await characteristic.read_value()
        except Exception as exc:
            LOGGER.info("App Discovery service not available: %s", exc)
            return None

        info = bytes(value).decode("utf-8", errors="replace")
        LOGGER.info("App info: %s", info)
        return info

    async def _abort_connect(self) -> None:
        link = self._link
        self._teardown(requested=True, notify=False)
        if link is not None:
            try:
                await link.disconnect()
            except Exception as exc:
                LOGGER.debug("Disconnect after failed connect: %s", exc)

    async def disconnect(self) -> None:
        """Close the link; a no-op when nothing is connected."""

        link = self._link
        if link is None or self._state is SessionState.DISCONNECTED:
            LOGGER.info("No device to disconnect")
            return

        self._state = SessionState.DISCONNECTING
        LOGGER.info("Disconnect requested")

        notify_char = self._notify_char
        if notify_char is not None and link.is_connected:
            try:
                await notify_char.stop_notifications()
            except Exception as exc:
                LOGGER.debug("Failed to stop notifications: %s", exc)

        try:
            await link.disconnect()
        except Exception as exc:
            LOGGER.warning("Disconnect error: %s", exc)

        self._teardown(requested=True)

    async def dispose(self) -> None:
        await self.disconnect()
        self._connected_listeners.clear()
        self._disconnected_listeners.clear()

    async def set_device_id(self, value: int) -> None:
        """Send a new device id; the advertised name changes after reconnecting."""
        await self._control.set_device_id(value)

    def _on_link_lost(self, generation: int) -> None:
        if generation != self._generation or self._torn_down:
            return
        requested = self._state is SessionState.DISCONNECTING
        if not requested:
            LOGGER.warning("Device disconnected unexpectedly")
        self._teardown(requested=requested)

    def _teardown(self, *, requested: bool, notify: bool = True) -> None:
        if self._torn_down:
            return
        self._torn_down = True

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        self._channel.unbind()
        self._channel.clear()
        if self._watchdog is not None:
            self._watchdog.reset()
        self._decoder.reset()

        self._notify_char = None
        self._link = None
        self._device = None
        self._app_info = None
        self._state = SessionState.DISCONNECTED
        LOGGER.info("Device disconnected")

        if notify:
            self._disconnected_listeners.emit(requested)

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _request_version_later(self) -> None:
        await self._sleep(self._config.version_request_delay_seconds)
        try:
            await self._control.request_version()
        except CommandChannelError as exc:
            LOGGER.warning("Failed to request version: %s", exc)
        else:
            LOGGER.info("Requested firmware version from device")
