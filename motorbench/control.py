"""Direct motor control commands."""

from __future__ import annotations

import logging

from .channel import CommandChannel
from .constants import THROTTLE_RAW_MAX, THROTTLE_RAW_MIN

LOGGER = logging.getLogger(__name__)

DEVICE_ID_MIN = 0
DEVICE_ID_MAX = 255


class MotorControl:
    """Thin command helpers over a ``CommandChannel``."""

    def __init__(self, channel: CommandChannel) -> None:
        self._channel = channel

    async def arm(self, *, force: bool = False) -> None:
        """Arm the ESC; ``force`` skips the firmware's pre-arm checks."""

        cmd = "force_arm" if force else "arm"
        LOGGER.info("Sending %s", cmd)
        await self._channel.send(cmd)

    async def disarm(self) -> None:
        LOGGER.info("Sending disarm")
        await self._channel.send("disarm")

    async def set_throttle_raw(self, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"raw throttle must be an integer (got {value!r})")
        if not THROTTLE_RAW_MIN <= value <= THROTTLE_RAW_MAX:
            raise ValueError(
                f"raw throttle {value} outside [{THROTTLE_RAW_MIN}, {THROTTLE_RAW_MAX}]"
            )
        await self._channel.send("set_throttle", {"value": value})

    async def request_version(self) -> None:
        await self._channel.send("get_version")

    async def request_profiles(self) -> None:
        await self._channel.send("GET_PROFILES")

    async def set_device_id(self, value: int) -> None:
        """Change the numeric suffix of the advertised device name.

        The new name is only visible after reconnecting.
        """

        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"device id must be an integer (got {value!r})")
        if not DEVICE_ID_MIN <= value <= DEVICE_ID_MAX:
            raise ValueError(f"device id {value} outside [{DEVICE_ID_MIN}, {DEVICE_ID_MAX}]")
        LOGGER.info("Setting device id to %d; reconnect to see the new name", value)
        await self._channel.send("set_dev_id", {"value": value})
