"""Protocol definitions for GATT transports and callbacks."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol


NotificationCallback = Callable[[bytes], Awaitable[None] | None]
DisconnectCallback = Callable[[], Awaitable[None] | None]
SleepFunc = Callable[[float], Awaitable[None]]


class CharacteristicWriter(Protocol):
    """Anything that can write one frame to the peripheral."""

    async def write_value(self, data: bytes) -> None:
        ...


class GattCharacteristic(CharacteristicWriter, Protocol):
    """A single characteristic on a connected peripheral."""

    uuid: str

    async def start_notifications(self, callback: NotificationCallback) -> None:
        """Route every notification payload to ``callback``."""
        ...

    async def stop_notifications(self) -> None:
        ...

    async def read_value(self) -> bytes:
        ...


class GattService(Protocol):
    uuid: str

    async def get_characteristic(self, uuid: str) -> GattCharacteristic:
        """Look up a characteristic; raise if the service does not expose it."""
        ...


class PeripheralHandle(Protocol):
    """A discovered peripheral, not yet connected."""

    name: Optional[str]
    address: str


class GattLink(Protocol):
    """An opened link to one peripheral."""

    handle: PeripheralHandle

    @property
    def is_connected(self) -> bool:
        ...

    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def get_primary_service(self, uuid: str) -> GattService:
        ...


class GattTransport(Protocol):
    """Minimal contract for the host BLE stack."""

    async def request_device(
        self,
        *,
        service_uuid: str,
        accept_all: bool = False,
        name: Optional[str] = None,
    ) -> PeripheralHandle:
        """Select one peripheral.

        Args:
            service_uuid: Service the peripheral must advertise.
            accept_all: Accept any peripheral regardless of advertised services.
            name: Optional advertised-name filter.

        Raises:
            RuntimeError: If no matching peripheral is found.
        """
        ...

    def open(self, handle: PeripheralHandle, on_disconnect: DisconnectCallback) -> GattLink:
        """Create a link whose unsolicited loss invokes ``on_disconnect``."""
        ...

    async def scan(
        self,
        *,
        timeout: Optional[float] = None,
        accept_all: bool = False,
        service_uuid: Optional[str] = None,
    ) -> list[Any]:
        """Return the peripherals seen during one discovery window."""
        ...
