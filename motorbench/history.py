"""Bounded, persisted history of completed runs.

Runs are kept oldest first under a single key of a small JSON key-value
file. Loading is best effort: a missing or corrupt file gives an empty
history and malformed entries are dropped, so a bad file never blocks the
bench.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from .constants import HISTORY_CAPACITY, HISTORY_STORAGE_KEY
from .core.models import TestRun

LOGGER = logging.getLogger(__name__)


class JsonKeyValueStore:
    """String keys to JSON values, persisted as one JSON object on disk."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _read_all(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        with self._path.open("r", encoding="utf-8") as stream:
            data = json.load(stream)
        if not isinstance(data, dict):
            raise ValueError(f"{self._path} does not hold a JSON object")
        return data

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value; raises on an unreadable file."""
        return self._read_all().get(key, default)

    def set(self, key: str, value: Any) -> None:
        try:
            data = self._read_all()
        except (OSError, ValueError) as exc:
            LOGGER.warning("Replacing unreadable store %s: %s", self._path, exc)
            data = {}
        data[key] = value

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as stream:
            json.dump(data, stream, indent=2)
        tmp_path.replace(self._path)


class HistoryStore:
    """Keeps the most recent ``capacity`` runs, evicting the oldest."""

    def __init__(
        self,
        store: Optional[JsonKeyValueStore] = None,
        *,
        capacity: int = HISTORY_CAPACITY,
        key: str = HISTORY_STORAGE_KEY,
    ) -> None:
        self._store = store
        self._capacity = max(1, capacity)
        self._key = key
        self._runs: Deque[TestRun] = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._runs)

    def runs(self) -> List[TestRun]:
        """Oldest first."""
        return list(self._runs)

    def latest(self) -> Optional[TestRun]:
        return self._runs[-1] if self._runs else None

    def get(self, index: int) -> TestRun:
        """Index into the history, oldest first; negative indexes count back."""
        return self.runs()[index]

    def load(self) -> List[TestRun]:
        self._runs.clear()
        if self._store is None:
            return []

        try:
            entries = self._store.get(self._key, [])
        except (OSError, ValueError) as exc:
            LOGGER.warning("Could not read run history: %s", exc)
            return []

        if not isinstance(entries, list):
            LOGGER.warning("Ignoring run history: expected a list, got %s", type(entries).__name__)
            return []

        for entry in entries:
            try:
                run = TestRun.from_dict(entry)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                LOGGER.warning("Dropping malformed history entry: %s", exc)
                continue
            self._runs.append(run)

        while len(self._runs) > self._capacity:
            self._runs.popleft()

        LOGGER.debug("Loaded %d run(s) from history", len(self._runs))
        return self.runs()

    def append(self, run: TestRun) -> None:
        self._runs.append(run)
        while len(self._runs) > self._capacity:
            evicted = self._runs.popleft()
            LOGGER.debug("Evicted %s run %s from history", evicted.mode, evicted.run_id)
        self._save()

    def clear(self) -> None:
        self._runs.clear()
        self._save()

    def _save(self) -> None:
        if self._store is None:
            return
        try:
            self._store.set(self._key, [run.as_dict() for run in self._runs])
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.error("Failed to save run history: %s", exc)
