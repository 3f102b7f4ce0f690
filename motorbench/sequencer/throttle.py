"""Throttle primitives shared by every test mode."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from ..constants import DEFAULT_STOP_RAMP_MS, RAMP_STEPS
from ..core.protocols import SleepFunc
from ..core.throttle import clamp, percent_to_raw
from .cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

# Holds are slept in chunks no longer than this so cancellation is seen promptly.
HOLD_CHUNK_SECONDS = 1.0


class CommandSender(Protocol):
    async def send(self, cmd: str, payload: Optional[dict[str, Any]] = None) -> None:
        ...


class ThrottleController:
    """Sends clamped throttle commands and tracks the commanded value."""

    def __init__(
        self,
        channel: CommandSender,
        *,
        floor_percent: Callable[[], float],
        sleep: Optional[SleepFunc] = None,
        on_first_send: Optional[Callable[[], Any]] = None,
    ) -> None:
        self._channel = channel
        self._floor_percent = floor_percent
        self._sleep = sleep or asyncio.sleep
        self._on_first_send = on_first_send
        self._current = 0.0
        self._sent = 0

    @property
    def current_percent(self) -> float:
        """Last throttle percentage that was actually sent."""
        return self._current

    @property
    def commands_sent(self) -> int:
        return self._sent

    def floor_percent(self) -> float:
        return self._floor_percent()

    async def send_throttle(self, percent: float) -> float:
        """Send ``percent`` clamped to [arm floor, 100]; returns the value sent."""

        percent = clamp(max(percent, self._floor_percent()), 0.0, 100.0)
        raw = percent_to_raw(percent)
        await self._channel.send("set_throttle", {"value": raw})
        self._current = percent
        self._sent += 1
        if self._sent == 1 and self._on_first_send is not None:
            self._on_first_send()
        return percent

    async def ramp(
        self,
        from_percent: float,
        to_percent: float,
        duration_ms: float,
        *,
        token: Optional[CancellationToken] = None,
    ) -> None:
        """Step from ``from_percent`` to ``to_percent`` in ``RAMP_STEPS`` steps.

        Both endpoints are sent, so a ramp is ``RAMP_STEPS + 1`` commands.
        Without a token the ramp cannot be interrupted.
        """

        step_seconds = max(0.0, duration_ms) / RAMP_STEPS / 1000.0
        delta = (to_percent - from_percent) / RAMP_STEPS
        for index in range(RAMP_STEPS + 1):
            if token is not None:
                token.check()
            await self.send_throttle(from_percent + delta * index)
            await self._sleep(step_seconds)

    async def ramp_to_floor(self, duration_ms: float = DEFAULT_STOP_RAMP_MS) -> None:
        """Uninterruptible safety ramp from the current throttle to the arm floor."""

        start = self._current
        floor = self._floor_percent()
        LOGGER.info("Ramping throttle %.1f%% -> %.1f%% over %.1fs", start, floor, duration_ms / 1000.0)
        await self.ramp(start, floor, duration_ms)

    async def hold(
        self,
        seconds: float,
        *,
        token: Optional[CancellationToken] = None,
        on_tick: Optional[Callable[[float], Any]] = None,
    ) -> None:
        """Sleep ``seconds`` in chunks, checking ``token`` between them.

        ``on_tick`` receives the elapsed seconds before each chunk.
        """

        elapsed = 0.0
        while elapsed < seconds:
            if token is not None:
                token.check()
            if on_tick is not None:
                on_tick(elapsed)
            chunk = min(HOLD_CHUNK_SECONDS, seconds - elapsed)
            await self._sleep(chunk)
            elapsed += chunk
        if token is not None:
            token.check()
