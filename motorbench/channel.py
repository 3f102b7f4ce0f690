"""Serialized command channel to the peripheral.

The peripheral's GATT stack tolerates only one write at a time, so every
command goes through a FIFO queue drained by a single worker task. Each
successful write is followed by a fixed settling delay before the next one
is issued; the caller's ``send`` resolves once that delay has elapsed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Mapping, Optional

from .constants import DEFAULT_INTER_COMMAND_DELAY_MS
from .core.models import Command
from .core.protocols import CharacteristicWriter, SleepFunc

LOGGER = logging.getLogger(__name__)


class CommandChannelError(RuntimeError):
    """Base error for command delivery failures."""


class NotConnectedError(CommandChannelError):
    """Raised when no write characteristic is bound."""


class CommandWriteError(CommandChannelError):
    """Raised when the transport rejects a write."""


@dataclass(slots=True)
class _PendingCommand:
    command: Command
    future: asyncio.Future[None]


class CommandChannel:
    """FIFO, single-flight writer for JSON command frames."""

    def __init__(
        self,
        *,
        inter_command_delay: float = DEFAULT_INTER_COMMAND_DELAY_MS / 1000.0,
        sleep: Optional[SleepFunc] = None,
    ) -> None:
        self._delay = max(0.0, inter_command_delay)
        self._sleep = sleep or asyncio.sleep
        self._writer: Optional[CharacteristicWriter] = None
        self._queue: Deque[_PendingCommand] = deque()
        self._in_flight: Optional[_PendingCommand] = None
        self._worker: Optional[asyncio.Task[None]] = None

    @property
    def is_bound(self) -> bool:
        return self._writer is not None

    @property
    def pending(self) -> int:
        """Number of commands queued but not yet written."""
        return len(self._queue)

    @property
    def in_flight(self) -> Optional[Command]:
        return self._in_flight.command if self._in_flight else None

    def bind(self, writer: CharacteristicWriter) -> None:
        self._writer = writer

    def unbind(self) -> None:
        self._writer = None

    async def send(self, cmd: str, payload: Optional[Mapping[str, Any]] = None) -> None:
        """Queue ``cmd`` and wait until it has been written and settled.

        Raises:
            NotConnectedError: If no writer is bound, at call time or by the
                time the command reaches the head of the queue.
            CommandWriteError: If the transport write fails.
            CommandChannelError: If the queue is cleared before dispatch.
        """

        if self._writer is None:
            raise NotConnectedError(f"Cannot send '{cmd}': no device connected")

        loop = asyncio.get_running_loop()
        request = _PendingCommand(command=Command.create(cmd, payload), future=loop.create_future())
        self._queue.append(request)
        self._ensure_worker()
        await request.future

    def clear(self) -> None:
        """Drop every queued command; the in-flight write is left alone."""

        dropped = 0
        while self._queue:
            request = self._queue.popleft()
            if not request.future.done():
                request.future.set_exception(CommandChannelError("command queue cleared"))
                dropped += 1
        if dropped:
            LOGGER.debug("Cleared %d queued command(s)", dropped)

    async def aclose(self) -> None:
        """Clear the queue and stop the worker."""

        self.clear()
        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            request = self._queue.popleft()
            if request.future.done():
                # Caller gave up while the command was queued.
                continue

            self._in_flight = request
            try:
                await self._dispatch(request)
            except asyncio.CancelledError:
                _reject(request, NotConnectedError("command channel closed"))
                raise
            finally:
                self._in_flight = None

    async def _dispatch(self, request: _PendingCommand) -> None:
        command = request.command
        writer = self._writer
        if writer is None:
            _reject(request, NotConnectedError(f"Cannot send '{command.cmd}': device disconnected"))
            return

        frame = command.to_bytes()
        LOGGER.debug("TX: %s", frame)
        try:
            await writer.write_value(frame)
        except Exception as exc:
            LOGGER.warning("Write of '%s' failed: %s", command.cmd, exc)
            error = CommandWriteError(f"Failed to write '{command.cmd}': {exc}")
            error.__cause__ = exc
            _reject(request, error)
            return

        await self._sleep(self._delay)
        if not request.future.done():
            request.future.set_result(None)


def _reject(request: _PendingCommand, error: BaseException) -> None:
    if not request.future.done():
        request.future.set_exception(error)
