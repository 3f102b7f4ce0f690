"""Periodic sampling of telemetry during a run."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional

from ..constants import DEFAULT_SAMPLE_INTERVAL_MS
from ..core.models import TelemetrySample
from ..core.protocols import SleepFunc

LOGGER = logging.getLogger(__name__)


class Sampler:
    """Records last-known telemetry paired with the commanded throttle.

    The telemetry's own ``throttle`` field is ignored; the row carries the
    throttle the sequencer last sent. Timestamps are seconds since ``start``.
    """

    def __init__(
        self,
        *,
        telemetry: Callable[[], Optional[TelemetrySample]],
        throttle: Callable[[], float],
        interval: float = DEFAULT_SAMPLE_INTERVAL_MS / 1000.0,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._telemetry = telemetry
        self._throttle = throttle
        self._interval = interval
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._samples: List[TelemetrySample] = []
        self._task: Optional[asyncio.Task[None]] = None
        self._started_at: Optional[float] = None

    @property
    def samples(self) -> List[TelemetrySample]:
        return self._samples

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._started_at = self._clock()
        self._task = asyncio.create_task(self._loop())
        LOGGER.debug("Sampling every %.0f ms", self._interval * 1000)

    async def stop(self) -> List[TelemetrySample]:
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        return self._samples

    def sample_now(self) -> TelemetrySample:
        started = self._started_at if self._started_at is not None else self._clock()
        elapsed = self._clock() - started
        last = self._telemetry() or TelemetrySample()
        row = last.with_throttle(timestamp=elapsed, throttle_pct=self._throttle())
        self._samples.append(row)
        return row

    async def _loop(self) -> None:
        while True:
            await self._sleep(self._interval)
            self.sample_now()
