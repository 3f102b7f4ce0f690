"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# BLE backends log every GATT notification at DEBUG.
BLE_LOGGERS = ("bleak", "dbus_fast", "bleak_winrt")
QUIET_LOGGERS = ("aiohttp.access", "asyncio")

LOG_FILE_BYTES = 2 * 1024 * 1024
LOG_FILE_BACKUPS = 3


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_ble: bool = False
) -> None:
    """Configure root logging for the bench.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO". Unknown names fall back to INFO.
    log_path:
        Optional path for a size-rotated log file kept alongside console output.
    log_ble:
        When true, BLE backend loggers follow the root level so GATT traffic is visible.
    """

    logging.captureWarnings(True)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    logging.basicConfig(level=_level(level), format=LOG_FORMAT)

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=LOG_FILE_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    ble_level = logging.NOTSET if log_ble else logging.WARNING
    for name in BLE_LOGGERS:
        logging.getLogger(name).setLevel(ble_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
