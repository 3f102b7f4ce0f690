"""GATT transport backed by bleak."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.service import BleakGATTService

from ..core.protocols import DisconnectCallback, NotificationCallback

LOGGER = logging.getLogger(__name__)


class BleTransportError(RuntimeError):
    """Raised when discovery or GATT lookup fails."""


@dataclass(slots=True)
class BlePeripheral:
    """A peripheral seen during discovery."""

    address: str
    name: Optional[str]
    rssi: Optional[int] = None
    service_uuids: List[str] = field(default_factory=list)
    device: Optional[BLEDevice] = field(default=None, repr=False, compare=False)


class BleakCharacteristicAdapter:
    def __init__(self, client: BleakClient, characteristic: BleakGATTCharacteristic) -> None:
        self._client = client
        self._characteristic = characteristic

    @property
    def uuid(self) -> str:
        return self._characteristic.uuid

    async def write_value(self, data: bytes) -> None:
        await self._client.write_gatt_char(self._characteristic, data)

    async def start_notifications(self, callback: NotificationCallback) -> None:
        async def _on_notify(_: BleakGATTCharacteristic, data: bytearray) -> None:
            result = callback(bytes(data))
            if asyncio.iscoroutine(result):
                await result

        await self._client.start_notify(self._characteristic, _on_notify)

    async def stop_notifications(self) -> None:
        await self._client.stop_notify(self._characteristic)

    async def read_value(self) -> bytes:
        return bytes(await self._client.read_gatt_char(self._characteristic))


class BleakServiceAdapter:
    def __init__(self, client: BleakClient, service: BleakGATTService) -> None:
        self._client = client
        self._service = service

    @property
    def uuid(self) -> str:
        return self._service.uuid

    async def get_characteristic(self, uuid: str) -> BleakCharacteristicAdapter:
        characteristic = self._service.get_characteristic(uuid)
        if characteristic is None:
            raise BleTransportError(f"Characteristic {uuid} not found in service {self.uuid}")
        return BleakCharacteristicAdapter(self._client, characteristic)


class BleakLink:
    """One ``BleakClient`` plus the unsolicited-disconnect hook."""

    def __init__(self, handle: BlePeripheral, on_disconnect: DisconnectCallback) -> None:
        self.handle = handle
        self._on_disconnect = on_disconnect
        target = handle.device if handle.device is not None else handle.address
        self._client = BleakClient(target, disconnected_callback=self._handle_disconnect)

    @property
    def is_connected(self) -> bool:
        return self._client.is_connected

    async def connect(self) -> None:
        await self._client.connect()

    async def disconnect(self) -> None:
        await self._client.disconnect()

    async def get_primary_service(self, uuid: str) -> BleakServiceAdapter:
        service = self._client.services.get_service(uuid)
        if service is None:
            raise BleTransportError(f"Service {uuid} not found on {self.handle.address}")
        return BleakServiceAdapter(self._client, service)

    def _handle_disconnect(self, _: BleakClient) -> None:
        LOGGER.debug("Link to %s dropped", self.handle.address)
        try:
            result = self._on_disconnect()
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)
        except Exception:
            LOGGER.exception("Disconnect callback failed")


class BleakTransport:
    """Discovery and link creation through bleak."""

    def __init__(self, *, scan_timeout: float = 10.0) -> None:
        self._scan_timeout = scan_timeout

    async def scan(
        self,
        *,
        timeout: Optional[float] = None,
        accept_all: bool = False,
        service_uuid: Optional[str] = None,
    ) -> List[BlePeripheral]:
        """Discover peripherals, strongest signal first."""

        window = timeout if timeout is not None else self._scan_timeout
        LOGGER.info("Scanning for devices (%.0fs)", window)
        discovered = await BleakScanner.discover(timeout=window, return_adv=True)

        wanted = service_uuid.lower() if service_uuid else None
        peripherals: List[BlePeripheral] = []
        for device, adv in discovered.values():
            advertised = [uuid.lower() for uuid in (adv.service_uuids or [])]
            if not accept_all and wanted is not None and wanted not in advertised:
                continue
            peripherals.append(
                BlePeripheral(
                    address=device.address,
                    name=device.name or adv.local_name,
                    rssi=adv.rssi,
                    service_uuids=advertised,
                    device=device,
                )
            )
            LOGGER.debug("Found %s (%s) RSSI %s dBm", device.name, device.address, adv.rssi)

        peripherals.sort(key=lambda item: item.rssi if item.rssi is not None else -999, reverse=True)
        return peripherals

    async def request_device(
        self,
        *,
        service_uuid: str,
        accept_all: bool = False,
        name: Optional[str] = None,
    ) -> BlePeripheral:
        candidates = await self.scan(accept_all=accept_all, service_uuid=service_uuid)
        if name:
            candidates = [item for item in candidates if item.name == name]
        if not candidates:
            target = f"'{name}'" if name else "a bench device"
            raise BleTransportError(f"No Bluetooth device found matching {target}")
        return candidates[0]

    def open(self, handle: Any, on_disconnect: DisconnectCallback) -> BleakLink:
        if not isinstance(handle, BlePeripheral):
            handle = BlePeripheral(address=handle.address, name=getattr(handle, "name", None))
        return BleakLink(handle, on_disconnect)
