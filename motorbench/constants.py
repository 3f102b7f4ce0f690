"""Constants used across the motorbench package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "motorbench"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_DATA_DIR = Path.home() / f".{APP_NAME}"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / DEFAULT_CONFIG_FILENAME
DEFAULT_HISTORY_PATH = DEFAULT_DATA_DIR / "history.json"

# Nordic UART Service: RX is written by us, TX notifies us.
NUS_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_RX_CHARACTERISTIC_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
NUS_TX_CHARACTERISTIC_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"

APP_DISCOVERY_SERVICE_UUID = "f0e00001-7a2c-4e9b-a5cf-2b1a9d5ed001"
APP_INFO_CHARACTERISTIC_UUID = "f0e00002-7a2c-4e9b-a5cf-2b1a9d5ed001"

# DShot throttle range accepted by the ESC firmware.
THROTTLE_RAW_MIN = 48
THROTTLE_RAW_MAX = 2047

DEFAULT_INTER_COMMAND_DELAY_MS = 100
DEFAULT_WATCHDOG_GRACE_SECONDS = 2.0
DEFAULT_SAMPLE_INTERVAL_MS = 200
DEFAULT_STOP_RAMP_MS = 2500
DEFAULT_KV_SAMPLE_INTERVAL_MS = 100
DEFAULT_VERSION_REQUEST_DELAY_SECONDS = 1.0

HISTORY_CAPACITY = 10
HISTORY_STORAGE_KEY = "analyzeHistory"

# Ramps always issue RAMP_STEPS + 1 commands, endpoints included.
RAMP_STEPS = 25

IR_CURRENT_NOISE_FLOOR_A = 0.05
