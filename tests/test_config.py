from pathlib import Path

from motorbench import constants
from motorbench.config import load_config, save_config


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "motorbench.cfg"
    config = load_config(config_path)

    assert config.path == config_path
    assert config.device.scan_all_devices is False
    assert config.device.device_name is None
    assert config.device.scan_timeout_seconds == 10.0
    assert config.device.version_request_delay_seconds == 1.0
    assert config.commands.inter_command_delay_ms == 100
    assert config.commands.inter_command_delay_seconds == 0.1
    assert config.watchdog.enabled is True
    assert config.watchdog.grace_seconds == 2.0
    assert config.sequencer.sample_interval_ms == 200
    assert config.sequencer.stop_ramp_ms == 2500
    assert config.sequencer.kv_sample_interval_ms == 100
    assert config.history.path == constants.DEFAULT_HISTORY_PATH
    assert config.history.capacity == 10
    assert config.logging.level == "INFO"
    assert config.logging.path is None
    assert config.health.enabled is False
    assert config.health.port == 0


def test_load_config_overrides_defaults(tmp_path: Path) -> None:
    config_file = tmp_path / "motorbench.cfg"
    config_file.write_text(
        f"""
[device]
scan_all_devices = true
device_name = MotorBench-03

[commands]
inter_command_delay_ms = 50

[watchdog]
grace_seconds = 5

[history]
path = {tmp_path / "runs.json"}
capacity = 3

[logging]
level = DEBUG
path = {tmp_path / "bench.log"}

[health]
enabled = true
port = 8181
"""
    )

    config = load_config(config_file)

    assert config.device.scan_all_devices is True
    assert config.device.device_name == "MotorBench-03"
    assert config.commands.inter_command_delay_seconds == 0.05
    assert config.watchdog.grace_seconds == 5.0
    assert config.history.path == tmp_path / "runs.json"
    assert config.history.capacity == 3
    assert config.logging.level == "DEBUG"
    assert config.logging.path == tmp_path / "bench.log"
    assert config.health.enabled is True
    assert config.health.port == 8181


def test_out_of_range_values_are_clamped(tmp_path: Path) -> None:
    config_file = tmp_path / "motorbench.cfg"
    config_file.write_text(
        """
[commands]
inter_command_delay_ms = -20

[watchdog]
grace_seconds = 0

[sequencer]
sample_interval_ms = 1

[history]
capacity = 0

[health]
port = 70000
""".strip()
        + "\n",
        encoding="utf-8",
    )

    config = load_config(config_file)

    assert config.commands.inter_command_delay_ms == 0
    assert config.watchdog.grace_seconds == 0.1
    assert config.sequencer.sample_interval_ms == 10
    assert config.history.capacity == 1
    assert config.health.port == 65535


def test_save_config_round_trips(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "motorbench.cfg"
    config = load_config(config_path)
    config.raw.set("watchdog", "grace_seconds", "3.5")

    save_config(config)

    assert load_config(config_path).watchdog.grace_seconds == 3.5
