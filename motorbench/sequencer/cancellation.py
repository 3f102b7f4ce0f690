"""Cooperative cancellation for test runs."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class RunCancelled(Exception):
    """Raised at a checkpoint once the run's token has been cancelled."""


class CancellationToken:
    """Polled stop flag shared between a run and whoever may stop it.

    Modes call ``check()`` at their checkpoints (before each send, between
    ramp steps and between hold chunks). Writes and sleeps already in
    progress always finish first.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "stopped") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def check(self) -> None:
        if self._event.is_set():
            raise RunCancelled(self._reason or "stopped")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first.

        Used for waits with no natural checkpoint, such as an operator prompt.
        """

        self.check()
        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            if not cancelled.done():
                cancelled.cancel()

        if not work.done():
            work.cancel()
            try:
                await work
            except asyncio.CancelledError:
                pass
            self.check()
        return work.result()
