"""Configuration loader for motorbench."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class DeviceConfig:
    scan_all_devices: bool = False
    device_name: Optional[str] = None
    scan_timeout_seconds: float = 10.0
    version_request_delay_seconds: float = constants.DEFAULT_VERSION_REQUEST_DELAY_SECONDS


@dataclass(slots=True)
class CommandConfig:
    inter_command_delay_ms: int = constants.DEFAULT_INTER_COMMAND_DELAY_MS

    @property
    def inter_command_delay_seconds(self) -> float:
        return self.inter_command_delay_ms / 1000.0


@dataclass(slots=True)
class WatchdogConfig:
    enabled: bool = True
    grace_seconds: float = constants.DEFAULT_WATCHDOG_GRACE_SECONDS


@dataclass(slots=True)
class SequencerConfig:
    sample_interval_ms: int = constants.DEFAULT_SAMPLE_INTERVAL_MS
    stop_ramp_ms: int = constants.DEFAULT_STOP_RAMP_MS
    kv_sample_interval_ms: int = constants.DEFAULT_KV_SAMPLE_INTERVAL_MS


@dataclass(slots=True)
class HistoryConfig:
    path: Path = constants.DEFAULT_HISTORY_PATH
    capacity: int = constants.HISTORY_CAPACITY


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_ble: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class BenchConfig:
    device: DeviceConfig
    commands: CommandConfig
    watchdog: WatchdogConfig
    sequencer: SequencerConfig
    history: HistoryConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def load_config(path: Optional[Path] = None) -> BenchConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "device": {
                "scan_all_devices": "false",
                "device_name": "",
                "scan_timeout_seconds": "10",
                "version_request_delay_seconds": str(
                    constants.DEFAULT_VERSION_REQUEST_DELAY_SECONDS
                ),
            },
            "commands": {
                "inter_command_delay_ms": str(constants.DEFAULT_INTER_COMMAND_DELAY_MS),
            },
            "watchdog": {
                "enabled": "true",
                "grace_seconds": str(constants.DEFAULT_WATCHDOG_GRACE_SECONDS),
            },
            "sequencer": {
                "sample_interval_ms": str(constants.DEFAULT_SAMPLE_INTERVAL_MS),
                "stop_ramp_ms": str(constants.DEFAULT_STOP_RAMP_MS),
                "kv_sample_interval_ms": str(constants.DEFAULT_KV_SAMPLE_INTERVAL_MS),
            },
            "history": {
                "path": str(constants.DEFAULT_HISTORY_PATH),
                "capacity": str(constants.HISTORY_CAPACITY),
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_ble": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    device = DeviceConfig(
        scan_all_devices=parser.getboolean("device", "scan_all_devices", fallback=False),
        device_name=_optional(parser.get("device", "device_name", fallback=None)),
        scan_timeout_seconds=max(
            1.0, parser.getfloat("device", "scan_timeout_seconds", fallback=10.0)
        ),
        version_request_delay_seconds=max(
            0.0,
            parser.getfloat(
                "device",
                "version_request_delay_seconds",
                fallback=constants.DEFAULT_VERSION_REQUEST_DELAY_SECONDS,
            ),
        ),
    )

    commands = CommandConfig(
        inter_command_delay_ms=max(
            0,
            parser.getint(
                "commands",
                "inter_command_delay_ms",
                fallback=constants.DEFAULT_INTER_COMMAND_DELAY_MS,
            ),
        ),
    )

    watchdog = WatchdogConfig(
        enabled=parser.getboolean("watchdog", "enabled", fallback=True),
        grace_seconds=max(
            0.1,
            parser.getfloat(
                "watchdog", "grace_seconds", fallback=constants.DEFAULT_WATCHDOG_GRACE_SECONDS
            ),
        ),
    )

    sequencer = SequencerConfig(
        sample_interval_ms=max(
            10,
            parser.getint(
                "sequencer", "sample_interval_ms", fallback=constants.DEFAULT_SAMPLE_INTERVAL_MS
            ),
        ),
        stop_ramp_ms=max(
            0,
            parser.getint("sequencer", "stop_ramp_ms", fallback=constants.DEFAULT_STOP_RAMP_MS),
        ),
        kv_sample_interval_ms=max(
            10,
            parser.getint(
                "sequencer",
                "kv_sample_interval_ms",
                fallback=constants.DEFAULT_KV_SAMPLE_INTERVAL_MS,
            ),
        ),
    )

    history = HistoryConfig(
        path=Path(
            parser.get("history", "path", fallback=str(constants.DEFAULT_HISTORY_PATH))
        ).expanduser(),
        capacity=max(
            1, parser.getint("history", "capacity", fallback=constants.HISTORY_CAPACITY)
        ),
    )

    log_path = _optional(parser.get("logging", "path", fallback=None))
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path).expanduser() if log_path else None,
        log_ble=parser.getboolean("logging", "log_ble", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=max(0, min(65535, parser.getint("health", "port", fallback=0))),
    )

    return BenchConfig(
        device=device,
        commands=commands,
        watchdog=watchdog,
        sequencer=sequencer,
        history=history,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )


def save_config(config: BenchConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
