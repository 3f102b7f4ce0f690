"""Listener lists with logged, isolated dispatch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Generic, List, Set, TypeVar

LOGGER = logging.getLogger(__name__)

ListenerT = TypeVar("ListenerT", bound=Callable[..., Any])


class ListenerSet(Generic[ListenerT]):
    """Ordered callbacks; one failing listener never stops the others.

    Coroutine results are scheduled as tasks so synchronous emitters (the
    notification path, the status path) never block on a slow listener.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: List[ListenerT] = []
        self._tasks: Set[asyncio.Task[Any]] = set()

    def add(self, listener: ListenerT) -> Callable[[], None]:
        """Register ``listener``; returns a callable that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            self.discard(listener)

        return _remove

    def discard(self, listener: ListenerT) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)

    def emit(self, *args: Any) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(*args)
                if asyncio.iscoroutine(result):
                    task = asyncio.create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception:
                LOGGER.exception("%s listener failed", self._name)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("%s listener failed", self._name, exc_info=exc)
