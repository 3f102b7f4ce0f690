"""Core primitives for motorbench."""

from .listeners import ListenerSet
from .models import (
    Command,
    KvPoint,
    Profile,
    ProfileError,
    RunOutcome,
    TelemetrySample,
    TestRun,
)
from .protocols import (
    CharacteristicWriter,
    DisconnectCallback,
    GattCharacteristic,
    GattLink,
    GattService,
    GattTransport,
    NotificationCallback,
    PeripheralHandle,
    SleepFunc,
)
from .status import DeviceStatus, StatusFlag, pack_status_flags, unpack_status_flags
from .throttle import arm_floor_percent, clamp, percent_to_raw, raw_to_percent

__all__ = [
    "CharacteristicWriter",
    "Command",
    "DeviceStatus",
    "DisconnectCallback",
    "GattCharacteristic",
    "GattLink",
    "GattService",
    "GattTransport",
    "KvPoint",
    "ListenerSet",
    "NotificationCallback",
    "PeripheralHandle",
    "Profile",
    "ProfileError",
    "RunOutcome",
    "SleepFunc",
    "StatusFlag",
    "TelemetrySample",
    "TestRun",
    "arm_floor_percent",
    "clamp",
    "pack_status_flags",
    "percent_to_raw",
    "raw_to_percent",
    "unpack_status_flags",
]
