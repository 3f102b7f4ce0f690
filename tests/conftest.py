import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import pytest

from motorbench.constants import (
    APP_DISCOVERY_SERVICE_UUID,
    APP_INFO_CHARACTERISTIC_UUID,
    NUS_RX_CHARACTERISTIC_UUID,
    NUS_SERVICE_UUID,
    NUS_TX_CHARACTERISTIC_UUID,
)


async def instant_sleep(seconds: float) -> None:
    """Sleep replacement that only yields to the loop."""
    await asyncio.sleep(0)


class RecordingSleep:
    """Yields like ``instant_sleep`` and remembers every requested duration."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


class GatedSleep:
    """Blocks every sleeper until ``release()``."""

    def __init__(self) -> None:
        self.calls: List[float] = []
        self._gate = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await self._gate.wait()

    def release(self) -> None:
        self._gate.set()


class FakeWriter:
    def __init__(self, fail: Optional[Callable[[Dict[str, Any]], bool]] = None) -> None:
        self.frames: List[bytes] = []
        self._fail = fail

    async def write_value(self, data: bytes) -> None:
        decoded = json.loads(bytes(data).decode("utf-8"))
        if self._fail is not None and self._fail(decoded):
            raise OSError("GATT write failed")
        self.frames.append(bytes(data))

    @property
    def commands(self) -> List[Dict[str, Any]]:
        return [json.loads(frame.decode("utf-8")) for frame in self.frames]

    def names(self) -> List[str]:
        return [item["cmd"] for item in self.commands]

    def throttle_values(self) -> List[int]:
        return [item["value"] for item in self.commands if item["cmd"] == "set_throttle"]


class FakeCharacteristic(FakeWriter):
    def __init__(self, uuid: str, *, value: bytes = b"") -> None:
        super().__init__()
        self.uuid = uuid
        self.value = value
        self.callback: Optional[Callable[[bytes], Any]] = None
        self.stopped = False

    async def start_notifications(self, callback: Callable[[bytes], Any]) -> None:
        self.callback = callback

    async def stop_notifications(self) -> None:
        self.stopped = True
        self.callback = None

    async def read_value(self) -> bytes:
        return self.value

    def notify(self, message: Dict[str, Any]) -> None:
        assert self.callback is not None, "notifications not started"
        self.callback(json.dumps(message).encode("utf-8"))


class FakeService:
    def __init__(self, uuid: str, characteristics: List[FakeCharacteristic]) -> None:
        self.uuid = uuid
        self._characteristics = {item.uuid: item for item in characteristics}

    async def get_characteristic(self, uuid: str) -> FakeCharacteristic:
        try:
            return self._characteristics[uuid]
        except KeyError:
            raise LookupError(f"characteristic {uuid} not found") from None


@dataclass
class FakePeripheral:
    address: str = "AA:BB:CC:DD:EE:FF"
    name: Optional[str] = "MotorBench-01"


class FakeLink:
    def __init__(
        self,
        handle: FakePeripheral,
        on_disconnect: Callable[[], None],
        services: Dict[str, FakeService],
        *,
        fail_connect: bool = False,
        connect_gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.handle = handle
        self._on_disconnect = on_disconnect
        self._services = services
        self._fail_connect = fail_connect
        self._connect_gate = connect_gate
        self._connected = False
        self.disconnect_calls = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._fail_connect:
            raise OSError("GATT connect failed")
        self._connected = True
        if self._connect_gate is not None:
            await self._connect_gate.wait()

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        was_connected = self._connected
        self._connected = False
        if was_connected:
            self._on_disconnect()

    async def get_primary_service(self, uuid: str) -> FakeService:
        try:
            return self._services[uuid]
        except KeyError:
            raise LookupError(f"service {uuid} not found") from None

    def drop(self) -> None:
        """Simulate the peripheral going away."""
        self._connected = False
        self._on_disconnect()


class FakeTransport:
    def __init__(
        self,
        *,
        app_info: Optional[bytes] = b"motorbench-fw",
        fail_select: bool = False,
        fail_connect: bool = False,
        with_nus: bool = True,
        connect_gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.peripheral = FakePeripheral()
        self.rx = FakeCharacteristic(NUS_RX_CHARACTERISTIC_UUID)
        self.tx = FakeCharacteristic(NUS_TX_CHARACTERISTIC_UUID)
        self.links: List[FakeLink] = []
        self.requests: List[Dict[str, Any]] = []
        self._fail_select = fail_select
        self._fail_connect = fail_connect
        self.connect_gate = connect_gate

        self.services: Dict[str, FakeService] = {}
        if with_nus:
            self.services[NUS_SERVICE_UUID] = FakeService(NUS_SERVICE_UUID, [self.rx, self.tx])
        if app_info is not None:
            info = FakeCharacteristic(APP_INFO_CHARACTERISTIC_UUID, value=app_info)
            self.services[APP_DISCOVERY_SERVICE_UUID] = FakeService(
                APP_DISCOVERY_SERVICE_UUID, [info]
            )

    @property
    def link(self) -> FakeLink:
        return self.links[-1]

    async def request_device(
        self, *, service_uuid: str, accept_all: bool = False, name: Optional[str] = None
    ) -> FakePeripheral:
        self.requests.append({"service_uuid": service_uuid, "accept_all": accept_all, "name": name})
        if self._fail_select:
            raise LookupError("No Bluetooth device selected")
        return self.peripheral

    def open(self, handle: FakePeripheral, on_disconnect: Callable[[], None]) -> FakeLink:
        link = FakeLink(
            handle,
            on_disconnect,
            self.services,
            fail_connect=self._fail_connect,
            connect_gate=self.connect_gate,
        )
        self.links.append(link)
        return link

    async def scan(self, **_: Any) -> List[FakePeripheral]:
        return [self.peripheral]


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def writer() -> FakeWriter:
    return FakeWriter()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
