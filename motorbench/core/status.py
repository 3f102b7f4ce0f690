"""Device status bitmask.

The peripheral reports its health as a 32-bit integer with 22 defined bits,
grouped as:

- Initialisation (bits 0-4): subsystems that came up successfully.
- Tasks (bits 5-7): firmware tasks currently running.
- Runtime (bits 8-14): armed/spinning and per-subsystem last-operation-ok.
- Warnings (bits 15-21): conditions the operator should act on.

Older firmware builds send the same information as a set of named booleans;
``pack_status_flags`` folds that form into the integer representation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntFlag
from typing import Any, Dict, List, Mapping


class StatusFlag(IntFlag):
    CFG_OK = 1 << 0
    DSHOT_OK = 1 << 1
    KISS_TELEM_OK = 1 << 2
    LOAD_CELL_OK = 1 << 3
    TEMP_SENSOR_OK = 1 << 4

    DSHOT_TASK_RUNNING = 1 << 5
    KISS_TASK_RUNNING = 1 << 6
    SENSOR_TASK_RUNNING = 1 << 7

    MOTOR_ARMED = 1 << 8
    MOTOR_SPINNING = 1 << 9
    DSHOT_SEND_OK = 1 << 10
    KISS_READ_OK = 1 << 11
    TARE_OK = 1 << 12
    LOAD_READ_OK = 1 << 13
    TEMP_READ_OK = 1 << 14

    WARN_BATTERY_LOW = 1 << 15
    WARN_ESC_OVERHEAT = 1 << 16
    WARN_MOTOR_OVERHEAT = 1 << 17
    WARN_OVER_CURRENT = 1 << 18
    WARN_OVER_RPM = 1 << 19
    WARN_MOTOR_STALL = 1 << 20
    WARN_PROFILE_STORE_FULL = 1 << 21


# Named-boolean wire keys, in bit order.
WIRE_FLAG_NAMES: Dict[str, StatusFlag] = {
    "usrCfgProfOk": StatusFlag.CFG_OK,
    "dshotOk": StatusFlag.DSHOT_OK,
    "kissTelemOk": StatusFlag.KISS_TELEM_OK,
    "hx711Ok": StatusFlag.LOAD_CELL_OK,
    "ntcSensorOk": StatusFlag.TEMP_SENSOR_OK,
    "dshotTaskRunning": StatusFlag.DSHOT_TASK_RUNNING,
    "kissTelemTaskRunning": StatusFlag.KISS_TASK_RUNNING,
    "sensorTaskRunning": StatusFlag.SENSOR_TASK_RUNNING,
    "armed": StatusFlag.MOTOR_ARMED,
    "spinning": StatusFlag.MOTOR_SPINNING,
    "dshotSendOk": StatusFlag.DSHOT_SEND_OK,
    "kissTelemReadOk": StatusFlag.KISS_READ_OK,
    "hx711TareOk": StatusFlag.TARE_OK,
    "hx711ReadOk": StatusFlag.LOAD_READ_OK,
    "ntcSensorReadOk": StatusFlag.TEMP_READ_OK,
    "warnBatteryLow": StatusFlag.WARN_BATTERY_LOW,
    "warnEscOverheat": StatusFlag.WARN_ESC_OVERHEAT,
    "warnMotorOverheat": StatusFlag.WARN_MOTOR_OVERHEAT,
    "warnOverCurrent": StatusFlag.WARN_OVER_CURRENT,
    "warnOverRpm": StatusFlag.WARN_OVER_RPM,
    "warnMotorStall": StatusFlag.WARN_MOTOR_STALL,
    "warnFullUsrCfgPrfls": StatusFlag.WARN_PROFILE_STORE_FULL,
}

WARNING_LABELS: Dict[StatusFlag, str] = {
    StatusFlag.WARN_BATTERY_LOW: "Battery low",
    StatusFlag.WARN_ESC_OVERHEAT: "ESC overheat",
    StatusFlag.WARN_MOTOR_OVERHEAT: "Motor overheat",
    StatusFlag.WARN_OVER_CURRENT: "Over current",
    StatusFlag.WARN_OVER_RPM: "Over RPM",
    StatusFlag.WARN_MOTOR_STALL: "Motor stall",
    StatusFlag.WARN_PROFILE_STORE_FULL: "Profiles full",
}

DEFINED_BITS_MASK = 0
for _flag in StatusFlag:
    DEFINED_BITS_MASK |= int(_flag)


def pack_status_flags(flags: Mapping[str, Any]) -> int:
    """Fold named boolean flags into a status mask.

    Unknown keys are ignored; values are tested for truthiness.
    """

    mask = 0
    for name, flag in WIRE_FLAG_NAMES.items():
        if flags.get(name):
            mask |= int(flag)
    return mask


def unpack_status_flags(mask: int) -> Dict[str, bool]:
    """Inverse of ``pack_status_flags`` over the defined bits."""

    return {name: bool(mask & int(flag)) for name, flag in WIRE_FLAG_NAMES.items()}


@dataclass(frozen=True, slots=True)
class DeviceStatus:
    """Decoded view over a raw status mask."""

    mask: int = 0

    def has(self, flag: StatusFlag) -> bool:
        return bool(self.mask & int(flag))

    @property
    def armed(self) -> bool:
        return self.has(StatusFlag.MOTOR_ARMED)

    @property
    def spinning(self) -> bool:
        return self.has(StatusFlag.MOTOR_SPINNING)

    @property
    def armed_idle(self) -> bool:
        """Armed but not spinning: the condition the watchdog guards."""
        return self.armed and not self.spinning

    @property
    def warnings(self) -> List[str]:
        return [label for flag, label in WARNING_LABELS.items() if self.has(flag)]

    def flags(self) -> Dict[str, bool]:
        return unpack_status_flags(self.mask)
