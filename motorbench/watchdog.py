"""Auto-disarm for a motor that sits armed without spinning."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from .constants import DEFAULT_WATCHDOG_GRACE_SECONDS
from .core.listeners import ListenerSet
from .core.protocols import SleepFunc
from .core.status import DeviceStatus

LOGGER = logging.getLogger(__name__)


class CommandSender(Protocol):
    async def send(self, cmd: str, payload: Optional[dict[str, Any]] = None) -> None:
        ...


class WatchdogState(str, Enum):
    IDLE = "idle"
    PENDING_DISARM = "pending_disarm"
    DISARMING = "disarming"


DisarmListener = Callable[[str], Any]


class SafetyWatchdog:
    """Disarms the motor after it stays armed and idle for a grace window.

    Only one grace timer exists at a time. A status that is no longer
    armed-and-idle cancels it; when it expires the latest observed status is
    checked again before ``disarm`` is sent. Failures are logged, never
    raised.
    """

    def __init__(
        self,
        channel: CommandSender,
        *,
        grace_seconds: float = DEFAULT_WATCHDOG_GRACE_SECONDS,
        enabled: bool = True,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self._channel = channel
        self._grace = max(0.0, grace_seconds)
        self._enabled = enabled
        self._sleep = sleep or asyncio.sleep

        self._state = WatchdogState.IDLE
        self._latest: Optional[DeviceStatus] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._disarm_listeners: ListenerSet[DisarmListener] = ListenerSet("auto-disarm")
        self._disarm_count = 0

    @property
    def state(self) -> WatchdogState:
        return self._state

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def grace_seconds(self) -> float:
        return self._grace

    @property
    def disarm_count(self) -> int:
        """Auto-disarms issued since construction."""
        return self._disarm_count

    def add_disarm_listener(self, listener: DisarmListener) -> Callable[[], None]:
        return self._disarm_listeners.add(listener)

    def observe(self, status: DeviceStatus) -> None:
        self._latest = status
        if not self._enabled:
            return

        if status.armed_idle:
            if self._state is WatchdogState.IDLE:
                self._state = WatchdogState.PENDING_DISARM
                self._task = asyncio.create_task(self._expire())
                LOGGER.debug("Motor armed and idle; disarming in %.1fs", self._grace)
            return

        if self._state is WatchdogState.PENDING_DISARM:
            LOGGER.debug("Motor no longer armed and idle; auto-disarm cancelled")
            self._cancel_task()
            self._state = WatchdogState.IDLE

    def reset(self) -> None:
        self._cancel_task()
        self._latest = None
        self._state = WatchdogState.IDLE

    def _cancel_task(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    async def _expire(self) -> None:
        await self._sleep(self._grace)

        latest = self._latest
        if latest is None or not latest.armed_idle:
            self._state = WatchdogState.IDLE
            self._task = None
            return

        self._state = WatchdogState.DISARMING
        cause = f"motor armed but not spinning for {self._grace:.1f}s"
        LOGGER.warning("Auto-disarm: %s", cause)
        try:
            await self._channel.send("disarm")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.error("Auto-disarm failed: %s", exc)
        else:
            self._disarm_count += 1
            self._disarm_listeners.emit(cause)
        finally:
            self._state = WatchdogState.IDLE
            if self._task is asyncio.current_task():
                self._task = None
